"""Versioned AES-256-GCM encryption for secrets at rest.

Payload format: ``<version>:<nonce b64>:<ciphertext b64>:<tag b64>``.
Payloads written before versioning (``<nonce>:<ciphertext>:<tag>``) still
decrypt by trying every configured key.
"""

from __future__ import annotations

import binascii
import hashlib
import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import SecretIntegrityError
from .encoding import b64_decode, b64_encode

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class CipherKey:
    version: str
    key: bytes

    @classmethod
    def from_secret(cls, version: str, secret: str) -> CipherKey:
        version = (version or "").strip()
        if not version or ":" in version:
            raise ValueError("key version must be non-empty and must not contain ':'")
        if not secret:
            raise ValueError(f"secret for key version {version!r} is empty")
        return cls(version=version, key=hashlib.sha256(secret.encode("utf-8")).digest())

    def __repr__(self) -> str:
        return f"CipherKey(version={self.version!r})"


class SecretCipher:
    """Encrypts with the current key; decrypts with current or previous keys."""

    def __init__(self, current: CipherKey, previous: list[CipherKey] | None = None):
        self._current = current
        self._keys = [current, *(previous or [])]
        versions = [k.version for k in self._keys]
        if len(set(versions)) != len(versions):
            raise ValueError("cipher key versions must be unique")

    @classmethod
    def from_settings(cls, settings_obj) -> SecretCipher:
        if not settings_obj.secret_key:
            raise ValueError("secret_key is required to protect stored secrets")
        current = CipherKey.from_secret(settings_obj.secret_key_version, settings_obj.secret_key)
        previous = []
        if settings_obj.secret_key_previous:
            previous.append(
                CipherKey.from_secret(
                    settings_obj.secret_key_previous_version, settings_obj.secret_key_previous
                )
            )
        return cls(current, previous)

    @property
    def current_version(self) -> str:
        return self._current.version

    def encrypt(self, plaintext: bytes | str) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else bytes(plaintext)
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(self._current.key).encrypt(nonce, data, None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(
            [self._current.version, b64_encode(nonce), b64_encode(ciphertext), b64_encode(tag)]
        )

    def decrypt(self, payload: str) -> bytes:
        if not payload or not isinstance(payload, str):
            raise SecretIntegrityError("encrypted payload is empty")
        parts = payload.split(":")
        if len(parts) == 4:
            version, nonce_b64, ct_b64, tag_b64 = parts
        elif len(parts) == 3:
            version = None
            nonce_b64, ct_b64, tag_b64 = parts
        else:
            raise SecretIntegrityError("encrypted payload is malformed")

        try:
            nonce = b64_decode(nonce_b64)
            ciphertext = b64_decode(ct_b64)
            tag = b64_decode(tag_b64)
        except (ValueError, binascii.Error) as exc:
            raise SecretIntegrityError("encrypted payload is malformed") from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise SecretIntegrityError("encrypted payload is malformed")

        for key in self._candidates(version):
            try:
                return AESGCM(key.key).decrypt(nonce, ciphertext + tag, None)
            except InvalidTag:
                continue
        logger.warning("secret decryption failed for key version %r", version)
        raise SecretIntegrityError("encrypted payload failed authentication")

    def decrypt_text(self, payload: str) -> str:
        try:
            return self.decrypt(payload).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecretIntegrityError("decrypted secret is not valid text") from exc

    def _candidates(self, version: str | None) -> list[CipherKey]:
        matched = [k for k in self._keys if k.version == version]
        return matched + [k for k in self._keys if k.version != version]
