"""ORM models."""

from .base import Base
from .auth import (
    Account,
    AuthSession,
    ExternalIdentity,
    HandshakeState,
    MfaSession,
    Setting,
    WebAuthnChallenge,
    WebAuthnCredential,
)

__all__ = [
    "Account",
    "AuthSession",
    "Base",
    "ExternalIdentity",
    "HandshakeState",
    "MfaSession",
    "Setting",
    "WebAuthnChallenge",
    "WebAuthnCredential",
]
