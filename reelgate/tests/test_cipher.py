"""Versioned secret encryption."""

from __future__ import annotations

import base64

import pytest

from reelgate.errors import SecretIntegrityError
from reelgate.security.cipher import CipherKey, SecretCipher
from reelgate.tests.helpers import make_settings


def _cipher(version: str = "2", secret: str = "current-secret", previous: list[CipherKey] | None = None):
    return SecretCipher(CipherKey.from_secret(version, secret), previous)


@pytest.mark.parametrize("plaintext", [b"", b"x", b"\x00\xff" * 50, "unicode ✓".encode()])
def test_roundtrip(plaintext):
    cipher = _cipher()
    payload = cipher.encrypt(plaintext)
    assert payload.startswith("2:")
    assert cipher.decrypt(payload) == plaintext


def test_nonce_is_fresh_per_call():
    cipher = _cipher()
    assert cipher.encrypt(b"same") != cipher.encrypt(b"same")


def _flip(segment: str, index: int) -> str:
    raw = bytearray(base64.b64decode(segment))
    raw[index % len(raw)] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


@pytest.mark.parametrize("part", [2, 3])
def test_bit_flip_fails(part):
    cipher = _cipher()
    parts = cipher.encrypt(b"top secret value").split(":")
    for index in (0, 5, -1):
        tampered = list(parts)
        tampered[part] = _flip(parts[part], index)
        with pytest.raises(SecretIntegrityError):
            cipher.decrypt(":".join(tampered))


def test_previous_key_still_decrypts():
    old = _cipher(version="1", secret="old-secret")
    payload = old.encrypt(b"rotated")
    rotated = _cipher(previous=[CipherKey.from_secret("1", "old-secret")])
    assert rotated.decrypt(payload) == b"rotated"


def test_unknown_version_falls_back_to_matching_key():
    old = _cipher(version="1", secret="old-secret")
    payload = old.encrypt(b"relabelled")
    relabelled = "9:" + payload.split(":", 1)[1]
    rotated = _cipher(previous=[CipherKey.from_secret("1", "old-secret")])
    assert rotated.decrypt(relabelled) == b"relabelled"


def test_unversioned_payload_decrypts():
    cipher = _cipher()
    unversioned = cipher.encrypt(b"legacy").split(":", 1)[1]
    assert cipher.decrypt(unversioned) == b"legacy"


def test_no_matching_key_is_fatal():
    payload = _cipher(secret="a-secret").encrypt(b"data")
    with pytest.raises(SecretIntegrityError):
        _cipher(secret="b-secret").decrypt(payload)


@pytest.mark.parametrize("payload", ["", "a:b", "1:!!:!!:!!", "1:AAAA:AAAA:AAAA"])
def test_malformed_payload_is_fatal(payload):
    with pytest.raises(SecretIntegrityError):
        _cipher().decrypt(payload)


def test_key_repr_hides_material():
    assert "current-secret" not in repr(CipherKey.from_secret("1", "current-secret"))


def test_from_settings_requires_key():
    with pytest.raises(ValueError):
        SecretCipher.from_settings(make_settings(secret_key=""))


def test_from_settings_loads_previous_key():
    settings_obj = make_settings(
        secret_key="new", secret_key_version="2", secret_key_previous="old", secret_key_previous_version="1"
    )
    payload = _cipher(version="1", secret="old").encrypt(b"kept")
    assert SecretCipher.from_settings(settings_obj).decrypt(payload) == b"kept"
