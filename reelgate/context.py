"""Process-lifetime auth context.

Everything that outlives a single request (keys, counters, caches, the
handshake store, provider adapters) hangs off one ``AuthContext`` stored on
``app.state.auth``. Nothing here is module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import AuthSettings
from .security.cache import TTLCache
from .security.cipher import SecretCipher
from .security.cookies import CookieNames
from .security.passwords import ScryptParams
from .security.rate_limit import LockoutGuard, SlidingWindowRateLimiter
from .security.tokens import SessionSigner
from .services.accounts import AccountSnapshot
from .services.audit import AuditEmitter
from .services.sso.providers import ProviderAdapter, build_providers
from .services.sso.store import HandshakeStore, InMemoryHandshakeStore, SqlHandshakeStore

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    settings: AuthSettings
    signer: SessionSigner
    cipher: SecretCipher
    hasher_params: ScryptParams
    handshakes: HandshakeStore
    providers: dict[str, ProviderAdapter]
    audit: AuditEmitter = field(default_factory=AuditEmitter)
    rate_limiter: SlidingWindowRateLimiter = field(default_factory=SlidingWindowRateLimiter)
    lockouts: LockoutGuard = field(default_factory=LockoutGuard)
    account_cache: TTLCache[AccountSnapshot] = field(default_factory=lambda: TTLCache(30))
    settings_cache: TTLCache[str] = field(default_factory=lambda: TTLCache(30))
    discovery_cache: TTLCache = field(default_factory=lambda: TTLCache(600))
    http_client_factory: Callable[[], httpx.AsyncClient] | None = None

    @property
    def cookies(self) -> CookieNames:
        return CookieNames(self.settings.cookie_prefix)

    @classmethod
    def from_settings(
        cls,
        settings_obj: AuthSettings,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        handshakes: HandshakeStore | None = None,
        audit: AuditEmitter | None = None,
        hasher_params: ScryptParams | None = None,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> AuthContext:
        """Build the context, failing fast on missing or weak key material."""
        if not settings_obj.session_secret:
            raise ValueError("REELGATE_SESSION_SECRET is not set")
        if settings_obj.auth_debug:
            logging.getLogger("reelgate").setLevel(logging.DEBUG)
            logger.warning("verbose auth debug logging is enabled")

        if handshakes is None:
            handshakes = SqlHandshakeStore(session_factory) if session_factory else InMemoryHandshakeStore()
        return cls(
            settings=settings_obj,
            signer=SessionSigner(
                settings_obj.session_secret,
                clock_skew_seconds=settings_obj.session_clock_skew_seconds,
            ),
            cipher=SecretCipher.from_settings(settings_obj),
            hasher_params=hasher_params
            or ScryptParams(n=settings_obj.scrypt_n, r=settings_obj.scrypt_r, p=settings_obj.scrypt_p),
            handshakes=handshakes,
            providers=build_providers(settings_obj),
            audit=audit or AuditEmitter(),
            account_cache=TTLCache(settings_obj.account_cache_ttl_seconds),
            settings_cache=TTLCache(settings_obj.account_cache_ttl_seconds),
            discovery_cache=TTLCache(settings_obj.discovery_cache_ttl_seconds),
            http_client_factory=http_client_factory,
        )

    def http(self) -> httpx.AsyncClient:
        """Outbound client for provider calls, bounded by the provider timeout."""
        if self.http_client_factory is not None:
            return self.http_client_factory()
        return httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds)


def get_auth(request: Request) -> AuthContext:
    return request.app.state.auth
