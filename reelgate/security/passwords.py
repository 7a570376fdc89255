"""Password hashing.

New hashes use scrypt and are self-describing::

    scrypt$ln=15,r=8,p=1$<salt b64url>$<key b64url>

Two older encodings still verify: the bare ``<salt hex>:<key hex>`` form
(fixed N=16384, r=8, p=1, 64-byte key) and ``pbkdf2_sha256$<iter>$<salt>$<digest>``.
"""

from __future__ import annotations

import asyncio
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass

from .encoding import b64url_decode, b64url_encode

SCHEME = "scrypt"
KEY_LENGTH = 32
SALT_BYTES = 16

LEGACY_N = 16384
LEGACY_R = 8
LEGACY_P = 1
LEGACY_KEY_LENGTH = 64

MAX_LOG2_N = 20


class PasswordHashError(RuntimeError):
    """The key-derivation function itself failed."""


@dataclass(frozen=True)
class ScryptParams:
    n: int = 2**15
    r: int = 8
    p: int = 1

    @property
    def log2_n(self) -> int:
        return self.n.bit_length() - 1


def _derive(password: str, salt: bytes, *, n: int, r: int, p: int, dklen: int) -> bytes:
    try:
        return hashlib.scrypt(
            password.encode("utf-8"),
            salt=salt,
            n=n,
            r=r,
            p=p,
            dklen=dklen,
            maxmem=max(64 * 1024 * 1024, 256 * n * r * p),
        )
    except (ValueError, MemoryError) as exc:
        raise PasswordHashError("scrypt key derivation failed") from exc


def hash_password(password: str, params: ScryptParams | None = None) -> str:
    """Hash a password with a fresh random salt."""
    if not password:
        raise ValueError("Password is required")
    params = params or ScryptParams()
    if params.n < 2 or params.n & (params.n - 1):
        raise ValueError("scrypt N must be a power of two")
    salt = secrets.token_bytes(SALT_BYTES)
    key = _derive(password, salt, n=params.n, r=params.r, p=params.p, dklen=KEY_LENGTH)
    return f"{SCHEME}$ln={params.log2_n},r={params.r},p={params.p}${b64url_encode(salt)}${b64url_encode(key)}"


def _parse_scrypt_params(raw: str) -> tuple[int, int, int]:
    fields = dict(item.split("=", 1) for item in raw.split(","))
    log2_n = int(fields["ln"])
    r = int(fields["r"])
    p = int(fields["p"])
    if not (1 <= log2_n <= MAX_LOG2_N) or not (1 <= r <= 32) or not (1 <= p <= 16):
        raise ValueError("scrypt parameters out of range")
    return 1 << log2_n, r, p


def _verify_scrypt(password: str, encoded: str) -> bool:
    try:
        _, raw_params, salt_b64, key_b64 = encoded.split("$", 3)
        n, r, p = _parse_scrypt_params(raw_params)
        salt = b64url_decode(salt_b64)
        expected = b64url_decode(key_b64)
    except (ValueError, KeyError, binascii.Error):
        return False
    if not salt or not expected:
        return False
    actual = _derive(password, salt, n=n, r=r, p=p, dklen=len(expected))
    return hmac.compare_digest(actual, expected)


def _verify_legacy_scrypt(password: str, encoded: str) -> bool:
    try:
        salt_hex, key_hex = encoded.split(":", 1)
        expected = binascii.unhexlify(key_hex)
    except (ValueError, binascii.Error):
        return False
    if not salt_hex or len(expected) != LEGACY_KEY_LENGTH:
        return False
    # Legacy hashes fed the hex salt string itself to the KDF.
    actual = _derive(
        password,
        salt_hex.encode("utf-8"),
        n=LEGACY_N,
        r=LEGACY_R,
        p=LEGACY_P,
        dklen=LEGACY_KEY_LENGTH,
    )
    return hmac.compare_digest(actual, expected)


def _verify_pbkdf2(password: str, encoded: str) -> bool:
    try:
        _, iterations_raw, salt_hex, digest_hex = encoded.split("$", 3)
        iterations = int(iterations_raw)
        salt = binascii.unhexlify(salt_hex.encode("ascii"))
        expected = binascii.unhexlify(digest_hex.encode("ascii"))
    except (ValueError, binascii.Error):
        return False
    if iterations <= 0:
        return False
    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual, expected)


def verify_password(password: str | None, encoded: str | None) -> bool:
    """Check a password against any supported encoding.

    Unparsable or missing input is a plain ``False``. A failure of the KDF
    itself raises :class:`PasswordHashError`.
    """
    if not password or not encoded:
        return False
    if encoded.startswith(f"{SCHEME}$"):
        return _verify_scrypt(password, encoded)
    if encoded.startswith("pbkdf2_sha256$"):
        return _verify_pbkdf2(password, encoded)
    if ":" in encoded and "$" not in encoded:
        return _verify_legacy_scrypt(password, encoded)
    return False


def needs_rehash(encoded: str | None, params: ScryptParams) -> bool:
    if not encoded or not encoded.startswith(f"{SCHEME}$"):
        return True
    try:
        n, r, p = _parse_scrypt_params(encoded.split("$", 3)[1])
    except (ValueError, KeyError, IndexError):
        return True
    return (n, r, p) != (params.n, params.r, params.p)


_dummy_hashes: dict[ScryptParams, str] = {}


def dummy_hash(params: ScryptParams) -> str:
    """A real hash of a random password, used to equalise unknown-user timing."""
    cached = _dummy_hashes.get(params)
    if cached is None:
        cached = hash_password(secrets.token_urlsafe(16), params)
        _dummy_hashes[params] = cached
    return cached


async def hash_password_async(password: str, params: ScryptParams | None = None) -> str:
    return await asyncio.to_thread(hash_password, password, params)


async def verify_password_async(password: str | None, encoded: str | None) -> bool:
    return await asyncio.to_thread(verify_password, password, encoded)
