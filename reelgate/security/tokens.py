"""Signed session tokens.

Tokens are compact ``header.payload.signature`` strings signed with
HMAC-SHA256. They are stateless: a token that verifies is only trusted once
the session store confirms its ``jti`` is still active.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .encoding import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
MIN_KEY_BYTES = 32


@dataclass(frozen=True)
class SessionClaims:
    account_id: str
    username: str
    groups: tuple[str, ...]
    jti: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class Invalid:
    """Failed verification. ``reason`` is for server logs only."""

    reason: str

    def __bool__(self) -> bool:
        return False


def _json_segment(value: dict) -> str:
    return b64url_encode(json.dumps(value, separators=(",", ":"), sort_keys=True).encode("utf-8"))


class SessionSigner:
    def __init__(
        self,
        secret: str | bytes,
        *,
        clock_skew_seconds: int = 120,
        clock: Callable[[], float] = time.time,
    ):
        key = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
        if len(key) < MIN_KEY_BYTES:
            raise ValueError(f"session signing key must be at least {MIN_KEY_BYTES} bytes")
        self._key = key
        self._skew = max(0, int(clock_skew_seconds))
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return b64url_encode(digest)

    def issue(
        self,
        *,
        account_id: str,
        username: str,
        groups: Iterable[str],
        ttl_seconds: int,
        jti: str,
    ) -> str:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = int(self._clock())
        header = _json_segment({"alg": ALGORITHM, "typ": "JWT"})
        payload = _json_segment(
            {
                "sub": str(account_id),
                "username": username,
                "groups": list(groups),
                "jti": jti,
                "iat": now,
                "exp": now + int(ttl_seconds),
            }
        )
        signing_input = f"{header}.{payload}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str | None) -> SessionClaims | Invalid:
        result = self._verify(token)
        if isinstance(result, Invalid):
            logger.debug("session token rejected: %s", result.reason)
        return result

    def _verify(self, token: str | None) -> SessionClaims | Invalid:
        if not token or not isinstance(token, str):
            return Invalid("missing")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            return Invalid("malformed")
        header_b64, payload_b64, signature = parts

        try:
            header = json.loads(b64url_decode(header_b64))
        except (ValueError, UnicodeDecodeError):
            return Invalid("malformed header")
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            return Invalid("unexpected algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii", "replace")):
            return Invalid("bad signature")

        try:
            payload = json.loads(b64url_decode(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return Invalid("malformed payload")
        if not isinstance(payload, dict):
            return Invalid("malformed payload")

        sub = payload.get("sub")
        username = payload.get("username")
        jti = payload.get("jti")
        exp = payload.get("exp")
        iat = payload.get("iat", 0)
        groups = payload.get("groups", [])
        if not isinstance(sub, str) or not sub:
            return Invalid("missing sub")
        if not isinstance(username, str) or not username.strip():
            return Invalid("missing username")
        if not isinstance(jti, str) or not jti:
            return Invalid("missing jti")
        if isinstance(exp, bool) or not isinstance(exp, int):
            return Invalid("missing exp")
        if isinstance(iat, bool) or not isinstance(iat, int):
            return Invalid("bad iat")
        if not isinstance(groups, list) or not all(isinstance(g, str) for g in groups):
            return Invalid("bad groups")

        now = int(self._clock())
        if exp + self._skew <= now:
            return Invalid("expired")
        if iat - self._skew > now:
            return Invalid("issued in the future")

        return SessionClaims(
            account_id=sub,
            username=username,
            groups=tuple(groups),
            jti=jti,
            issued_at=iat,
            expires_at=exp,
        )
