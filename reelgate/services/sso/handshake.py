"""Start and finish SSO handshakes.

``start_login`` records ``state -> {provider, purpose, bound account}`` in the
handshake store and hands back the provider redirect plus the values the
router puts in short-lived cookies. ``handle_callback`` requires both the
cookie and the stored record to agree with the returned ``state`` before any
network call is made; nothing is written to the accounts tables here.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from ...errors import InvalidChallenge
from ...security.encoding import b64url_encode
from .providers import ExternalProfile, ProviderAdapter
from .store import PURPOSE_LOGIN, HandshakeRecord

if TYPE_CHECKING:
    from ...context import AuthContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandshakeStart:
    redirect_url: str
    state: str
    code_verifier: str | None
    max_age: int


@dataclass(frozen=True)
class CallbackResult:
    record: HandshakeRecord
    profile: ExternalProfile


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def generate_pkce_pair() -> tuple[str, str]:
    """Return ``(verifier, S256 challenge)``."""
    verifier = secrets.token_urlsafe(64)
    challenge = b64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


def verify_state(expected: str | None, received: str | None) -> bool:
    if not expected or not received:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def get_provider(ctx: AuthContext, name: str | None) -> ProviderAdapter:
    provider = ctx.providers.get((name or "").strip().lower())
    if provider is None:
        raise InvalidChallenge("That sign-in method is not available.")
    return provider


async def start_login(
    ctx: AuthContext,
    provider: ProviderAdapter,
    *,
    return_to: str = "/",
    purpose: str = PURPOSE_LOGIN,
    account_id: str | None = None,
    login_hint: str | None = None,
) -> HandshakeStart:
    state = generate_state()
    nonce = secrets.token_urlsafe(24) if provider.uses_nonce else None
    verifier, challenge = generate_pkce_pair() if provider.supports_pkce else (None, None)

    async with ctx.http() as http:
        redirect_url = await provider.authorize_url(
            http,
            ctx.discovery_cache,
            state=state,
            nonce=nonce,
            code_challenge=challenge,
            login_hint=login_hint,
        )

    await ctx.handshakes.purge(ctx.settings.handshake_max_age_seconds)
    await ctx.handshakes.put(
        HandshakeRecord(
            state=state,
            provider=provider.name,
            purpose=purpose,
            account_id=account_id,
            nonce=nonce,
            login_hint=login_hint,
            return_to=return_to,
        )
    )
    logger.debug("started %s handshake for %s", provider.name, purpose)
    return HandshakeStart(
        redirect_url=redirect_url,
        state=state,
        code_verifier=verifier,
        max_age=ctx.settings.handshake_max_age_seconds,
    )


async def handle_callback(
    ctx: AuthContext,
    *,
    code: str | None,
    state: str | None,
    state_cookie: str | None,
    verifier_cookie: str | None,
) -> CallbackResult:
    """Validate the returned state and resolve the provider profile.

    Raises:
        InvalidChallenge: state missing, mismatched, unknown, consumed, or stale
        ProviderUnavailable: token exchange or profile fetch failed
        CredentialInvalid: the provider reported a denied authentication
    """
    if not verify_state(state_cookie, state):
        raise InvalidChallenge("Sign-in could not be verified. Please try again.")
    record = await ctx.handshakes.pop(state)
    if record is None:
        raise InvalidChallenge("Sign-in could not be verified. Please try again.")
    if not record.is_fresh(ctx.settings.handshake_max_age_seconds):
        raise InvalidChallenge("Sign-in took too long. Please try again.")
    if not code:
        raise InvalidChallenge("Sign-in was cancelled.")

    provider = get_provider(ctx, record.provider)
    if provider.supports_pkce and not verifier_cookie:
        raise InvalidChallenge("Sign-in could not be verified. Please try again.")

    async with ctx.http() as http:
        tokens = await provider.exchange_code(
            http,
            ctx.discovery_cache,
            code=code,
            code_verifier=verifier_cookie if provider.supports_pkce else None,
        )
        profile = await provider.fetch_profile(
            http,
            ctx.discovery_cache,
            tokens,
            nonce=record.nonce,
            login_hint=record.login_hint,
        )
    return CallbackResult(record=record, profile=profile)


async def end_session_url(ctx: AuthContext, *, post_logout_redirect_uri: str) -> str | None:
    """Provider logout URL for the OIDC provider, when it advertises one."""
    provider = ctx.providers.get("oidc")
    if provider is None:
        return None
    async with ctx.http() as http:
        eps = await provider.endpoints(http, ctx.discovery_cache)
    if not eps.end_session_url:
        return None
    separator = "&" if "?" in eps.end_session_url else "?"
    query = urlencode({"post_logout_redirect_uri": post_logout_redirect_uri, "client_id": provider.client_id})
    return f"{eps.end_session_url}{separator}{query}"
