"""Reelgate configuration via pydantic-settings."""

from __future__ import annotations

from enum import Enum
from urllib.parse import urlsplit

from pydantic import model_validator
from pydantic_settings import BaseSettings


class ProviderType(str, Enum):
    """Discriminator for the configured generic SSO provider."""

    OIDC = "oidc"
    DUO = "duo"


class AuthSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///reelgate.db"
    echo_sql: bool = False
    app_title: str = "Reelgate"
    app_base_url: str = "http://localhost:8000"
    auth_debug: bool = False

    # Comma-separated proxy addresses or CIDRs whose X-Forwarded-For is honoured.
    # Empty means the socket peer is always the client address.
    forwarded_allow_ips: str = ""

    # Cookies
    cookie_prefix: str = "reelgate"
    cookie_domain: str | None = None
    cookie_secure: bool | None = None

    # Session tokens + records
    session_secret: str = ""
    session_max_age_seconds: int = 60 * 60 * 24 * 30
    session_clock_skew_seconds: int = 120
    session_touch_interval_seconds: int = 60
    account_cache_ttl_seconds: int = 30

    # Secret cipher key material
    secret_key: str = ""
    secret_key_version: str = "1"
    secret_key_previous: str = ""
    secret_key_previous_version: str = "legacy"

    # Password hashing (scrypt)
    scrypt_n: int = 2**15
    scrypt_r: int = 8
    scrypt_p: int = 1

    # Rate limits + lockouts (seconds / counts)
    login_rate_window_seconds: int = 60
    login_rate_max: int = 10
    login_lockout_window_seconds: int = 15 * 60
    login_lockout_max: int = 5
    login_lockout_ban_seconds: int = 15 * 60
    mfa_rate_window_seconds: int = 60
    mfa_rate_max: int = 10
    mfa_lockout_window_seconds: int = 10 * 60
    mfa_lockout_max: int = 5
    mfa_lockout_ban_seconds: int = 10 * 60
    sso_rate_window_seconds: int = 60
    sso_login_rate_max: int = 20
    sso_callback_rate_max: int = 30
    webauthn_rate_window_seconds: int = 15 * 60
    webauthn_rate_max: int = 10

    # MFA
    mfa_required: bool = True
    mfa_verify_ttl_seconds: int = 5 * 60
    mfa_setup_ttl_seconds: int = 15 * 60
    mfa_max_attempts: int = 5
    totp_valid_window: int = 1
    totp_issuer: str = "Reelgate"

    # WebAuthn
    webauthn_rp_id: str | None = None
    webauthn_rp_name: str = "Reelgate"
    webauthn_challenge_ttl_seconds: int = 5 * 60

    # External handshakes
    handshake_max_age_seconds: int = 15 * 60
    discovery_cache_ttl_seconds: int = 10 * 60
    provider_timeout_seconds: float = 5.0

    # Generic OIDC / Duo provider
    oidc_provider_type: ProviderType = ProviderType.OIDC
    oidc_display_name: str = "SSO"
    oidc_issuer: str | None = None
    oidc_client_id: str | None = None
    oidc_client_secret: str | None = None
    oidc_redirect_uri: str | None = None
    oidc_authorization_url: str | None = None
    oidc_token_url: str | None = None
    oidc_userinfo_url: str | None = None
    oidc_jwks_url: str | None = None
    oidc_logout_url: str | None = None
    oidc_scopes: str = "openid profile email"
    oidc_username_claim: str = "preferred_username"
    oidc_email_claim: str = "email"
    oidc_groups_claim: str = "groups"
    oidc_match_by_email: bool = True
    oidc_match_by_username: bool = False
    oidc_allow_auto_create: bool = False
    oidc_sync_groups: bool = False
    duo_api_hostname: str | None = None

    # Google / GitHub
    google_client_id: str | None = None
    google_client_secret: str | None = None
    github_client_id: str | None = None
    github_client_secret: str | None = None

    # Seed administrator created on first start
    bootstrap_username: str = ""
    bootstrap_password: str = ""
    bootstrap_groups: str = "administrators,users"

    model_config = {"env_prefix": "REELGATE_", "env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _refuse_debug_in_production(self):
        if self.auth_debug and self.is_production:
            raise ValueError("auth_debug must not be enabled in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}

    @property
    def base_origin(self) -> str:
        parts = urlsplit(self.app_base_url.strip())
        return f"{parts.scheme}://{parts.netloc}".lower()

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.is_production or self.base_origin.startswith("https://")

    @property
    def rp_id(self) -> str:
        if self.webauthn_rp_id:
            return self.webauthn_rp_id
        return urlsplit(self.app_base_url.strip()).hostname or "localhost"

    @property
    def forwarded_allow_list(self) -> list[str]:
        return [h.strip() for h in self.forwarded_allow_ips.split(",") if h.strip()]

    @property
    def bootstrap_group_list(self) -> list[str]:
        return [g.strip().lower() for g in self.bootstrap_groups.split(",") if g.strip()]

    @property
    def oidc_configured(self) -> bool:
        if not (self.oidc_client_id and self.oidc_client_secret):
            return False
        if self.oidc_provider_type == ProviderType.DUO:
            return bool(self.duo_api_hostname)
        return bool(self.oidc_issuer or (self.oidc_authorization_url and self.oidc_token_url))

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def github_configured(self) -> bool:
        return bool(self.github_client_id and self.github_client_secret)


settings = AuthSettings()
