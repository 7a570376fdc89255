"""External sign-in provider adapters.

Each provider is one ``ProviderAdapter`` subclass exposing the same
capability contract (authorize URL, token URL, scopes, PKCE support). The
adapter set is chosen once from configuration by :func:`build_providers`;
call sites never branch on provider names.

Flow handled by every adapter:
1. Build the authorization URL (state, optional nonce, optional PKCE challenge)
2. Exchange the returned code for tokens
3. Turn the token response into an :class:`ExternalProfile`
"""

from __future__ import annotations

import abc
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt

from ...config import ProviderType
from ...errors import CredentialInvalid, ProviderUnavailable
from ...security.cache import TTLCache

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

GITHUB_AUTH_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_API_URL = "https://api.github.com"

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


class ProviderError(ProviderUnavailable):
    """Upstream provider failed or returned something unusable."""

    def __init__(self, message: str, error_code: str | None = None, details: dict | None = None):
        super().__init__()
        self.detail = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.detail


@dataclass(frozen=True)
class Endpoints:
    authorize_url: str
    token_url: str
    userinfo_url: str | None = None
    jwks_url: str | None = None
    issuer: str | None = None
    end_session_url: str | None = None


@dataclass
class ProviderTokens:
    """Token endpoint response."""

    access_token: str | None
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ExternalProfile:
    provider: str
    subject: str
    email: str | None = None
    email_verified: bool = False
    username: str | None = None
    groups: tuple[str, ...] = ()
    refresh_token: str | None = field(default=None, repr=False)


def _claim_is_true(value: Any) -> bool:
    # Some IdPs send booleans as strings.
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _parse_token_response(data: dict[str, Any]) -> ProviderTokens:
    if not isinstance(data, dict):
        raise ProviderError("Invalid token response", error_code="invalid_response")
    if data.get("error"):
        raise ProviderError(
            f"Token exchange rejected: {data.get('error')}",
            error_code=str(data.get("error")),
            details={k: data[k] for k in ("error", "error_description") if k in data},
        )
    access_token = data.get("access_token")
    id_token = data.get("id_token")
    if not access_token and not id_token:
        raise ProviderError(
            "Invalid token response: missing access_token",
            error_code="invalid_response",
            details={"response_keys": list(data.keys())},
        )
    expires_in = data.get("expires_in")
    return ProviderTokens(
        access_token=access_token,
        id_token=id_token,
        refresh_token=data.get("refresh_token"),
        token_type=data.get("token_type", "Bearer"),
        expires_in=int(expires_in) if isinstance(expires_in, (int, float, str)) and str(expires_in).isdigit() else None,
        scope=data.get("scope", ""),
        raw=data,
    )


async def _get_json(http: httpx.AsyncClient, url: str, **kwargs) -> Any:
    try:
        response = await http.get(url, **kwargs)
    except httpx.HTTPError as exc:
        raise ProviderError(f"Request to {url} failed", error_code="network_error") from exc
    if response.status_code != 200:
        raise ProviderError(f"{url} returned {response.status_code}", error_code="bad_status")
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"{url} returned invalid JSON", error_code="invalid_response") from exc


async def _post_token(http: httpx.AsyncClient, url: str, data: dict[str, str], headers: dict | None = None) -> ProviderTokens:
    try:
        response = await http.post(
            url,
            data=data,
            headers={"Accept": "application/json", **(headers or {})},
        )
    except httpx.HTTPError as exc:
        raise ProviderError("Token exchange failed", error_code="network_error") from exc

    if response.status_code != 200:
        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            error_data = {"raw_response": response.text[:500]}
        raise ProviderError(
            f"Token exchange failed: {response.status_code}",
            error_code=error_data.get("error", "exchange_failed") if isinstance(error_data, dict) else "exchange_failed",
            details=error_data if isinstance(error_data, dict) else {},
        )
    try:
        data_out = response.json()
    except ValueError as exc:
        raise ProviderError("Token exchange returned invalid JSON", error_code="invalid_response") from exc
    return _parse_token_response(data_out)


class ProviderAdapter(abc.ABC):
    name: str = ""
    display_name: str = ""
    supports_pkce: bool = False
    uses_nonce: bool = False
    requires_login_hint: bool = False
    default_scopes: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: tuple[str, ...] | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = tuple(scopes) if scopes else self.default_scopes

    @abc.abstractmethod
    async def endpoints(self, http: httpx.AsyncClient, cache: TTLCache) -> Endpoints:
        """Resolve authorization/token endpoints, fetching discovery if needed."""

    def extra_authorize_params(self) -> dict[str, str]:
        return {}

    async def authorize_url(
        self,
        http: httpx.AsyncClient,
        cache: TTLCache,
        *,
        state: str,
        nonce: str | None = None,
        code_challenge: str | None = None,
        login_hint: str | None = None,
    ) -> str:
        """Build the URL that starts the provider's consent screen.

        Args:
            state: Random value bound to the caller's browser
            nonce: Replay protection echoed back inside the id_token
            code_challenge: PKCE S256 challenge when the provider supports it
            login_hint: Username pre-filled at the provider
        """
        eps = await self.endpoints(http, cache)
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        if self.scopes:
            params["scope"] = " ".join(self.scopes)
        if nonce:
            params["nonce"] = nonce
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if login_hint:
            params["login_hint"] = login_hint
        params.update(self.extra_authorize_params())
        return f"{eps.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        http: httpx.AsyncClient,
        cache: TTLCache,
        *,
        code: str,
        code_verifier: str | None = None,
    ) -> ProviderTokens:
        """Exchange an authorization code for tokens.

        Raises:
            ProviderError: If the provider is unreachable or rejects the code
        """
        eps = await self.endpoints(http, cache)
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return await _post_token(http, eps.token_url, data)

    @abc.abstractmethod
    async def fetch_profile(
        self,
        http: httpx.AsyncClient,
        cache: TTLCache,
        tokens: ProviderTokens,
        *,
        nonce: str | None = None,
        login_hint: str | None = None,
    ) -> ExternalProfile:
        """Resolve the signed-in provider user."""


class OidcProvider(ProviderAdapter):
    """Generic OpenID Connect provider using issuer discovery."""

    name = "oidc"
    supports_pkce = True
    uses_nonce = True
    default_scopes = ("openid", "profile", "email")

    def __init__(self, settings_obj, *, redirect_uri: str):
        super().__init__(
            client_id=settings_obj.oidc_client_id,
            client_secret=settings_obj.oidc_client_secret,
            redirect_uri=redirect_uri,
            scopes=tuple(settings_obj.oidc_scopes.split()),
        )
        self.display_name = settings_obj.oidc_display_name
        self.issuer = (settings_obj.oidc_issuer or "").rstrip("/") or None
        self._overrides = {
            "authorization_endpoint": settings_obj.oidc_authorization_url,
            "token_endpoint": settings_obj.oidc_token_url,
            "userinfo_endpoint": settings_obj.oidc_userinfo_url,
            "jwks_uri": settings_obj.oidc_jwks_url,
            "end_session_endpoint": settings_obj.oidc_logout_url,
        }
        self.username_claim = settings_obj.oidc_username_claim
        self.email_claim = settings_obj.oidc_email_claim
        self.groups_claim = settings_obj.oidc_groups_claim

    async def _discovery(self, http: httpx.AsyncClient, cache: TTLCache) -> dict[str, Any]:
        if not self.issuer:
            return {}

        async def _load() -> dict[str, Any]:
            url = f"{self.issuer}/.well-known/openid-configuration"
            doc = await _get_json(http, url)
            if not isinstance(doc, dict):
                raise ProviderError("Discovery document is not an object", error_code="invalid_discovery")
            logger.info("fetched OIDC discovery document for %s", self.issuer)
            return doc

        return await cache.get_or_load(("discovery", self.issuer), _load)

    async def endpoints(self, http: httpx.AsyncClient, cache: TTLCache) -> Endpoints:
        doc = {} if all(self._overrides[k] for k in ("authorization_endpoint", "token_endpoint")) else None
        if doc is None:
            doc = await self._discovery(http, cache)
        merged = {**doc, **{k: v for k, v in self._overrides.items() if v}}
        if not merged.get("authorization_endpoint") or not merged.get("token_endpoint"):
            raise ProviderError("OIDC provider is missing endpoints", error_code="invalid_discovery")
        return Endpoints(
            authorize_url=merged["authorization_endpoint"],
            token_url=merged["token_endpoint"],
            userinfo_url=merged.get("userinfo_endpoint"),
            jwks_url=merged.get("jwks_uri"),
            issuer=merged.get("issuer") or self.issuer,
            end_session_url=merged.get("end_session_endpoint"),
        )

    async def _jwks(self, http: httpx.AsyncClient, cache: TTLCache, jwks_url: str) -> dict[str, Any]:
        async def _load() -> dict[str, Any]:
            keys = await _get_json(http, jwks_url)
            if not isinstance(keys, dict) or not isinstance(keys.get("keys"), list):
                raise ProviderError("JWKS document is malformed", error_code="invalid_jwks")
            return keys

        return await cache.get_or_load(("jwks", jwks_url), _load)

    def _verify_id_token(self, id_token: str, jwks: dict[str, Any], issuer: str | None, access_token: str | None) -> dict:
        try:
            header = jwt.get_unverified_header(id_token)
            algorithm = header.get("alg")
            if not algorithm or algorithm.lower() == "none" or algorithm.startswith("HS"):
                raise ProviderError("id_token uses an unsupported algorithm", error_code="invalid_id_token")
            return jwt.decode(
                id_token,
                jwks,
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=issuer,
                access_token=access_token,
                options={"verify_at_hash": bool(access_token)},
            )
        except JWTError as exc:
            raise ProviderError("id_token verification failed", error_code="invalid_id_token") from exc

    async def fetch_profile(
        self,
        http: httpx.AsyncClient,
        cache: TTLCache,
        tokens: ProviderTokens,
        *,
        nonce: str | None = None,
        login_hint: str | None = None,
    ) -> ExternalProfile:
        eps = await self.endpoints(http, cache)
        claims: dict[str, Any] = {}
        if tokens.id_token:
            if not eps.jwks_url:
                raise ProviderError("OIDC provider has no jwks_uri", error_code="invalid_discovery")
            jwks = await self._jwks(http, cache, eps.jwks_url)
            claims = self._verify_id_token(tokens.id_token, jwks, eps.issuer, tokens.access_token)
            if nonce and not secrets.compare_digest(str(claims.get("nonce", "")), nonce):
                raise ProviderError("id_token nonce mismatch", error_code="nonce_mismatch")

        if eps.userinfo_url and tokens.access_token:
            userinfo = await _get_json(
                http,
                eps.userinfo_url,
                headers={"Authorization": f"Bearer {tokens.access_token}"},
            )
            if isinstance(userinfo, dict):
                if claims.get("sub") and userinfo.get("sub") and userinfo["sub"] != claims["sub"]:
                    raise ProviderError("userinfo subject mismatch", error_code="subject_mismatch")
                claims = {**userinfo, **claims}

        subject = claims.get("sub")
        if not subject:
            raise ProviderError("OIDC response missing subject", error_code="missing_subject")

        raw_groups = claims.get(self.groups_claim) or []
        if isinstance(raw_groups, str):
            raw_groups = [g for g in raw_groups.replace(",", " ").split() if g]
        email = claims.get(self.email_claim)
        return ExternalProfile(
            provider=self.name,
            subject=str(subject),
            email=str(email).lower() if email else None,
            email_verified=_claim_is_true(claims.get("email_verified")),
            username=claims.get(self.username_claim) or None,
            groups=tuple(str(g).lower() for g in raw_groups if g),
            refresh_token=tokens.refresh_token,
        )


class GoogleProvider(ProviderAdapter):
    name = "google"
    display_name = "Google"
    supports_pkce = True
    default_scopes = ("openid", "email", "profile")

    async def endpoints(self, http: httpx.AsyncClient, cache: TTLCache) -> Endpoints:
        return Endpoints(
            authorize_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            userinfo_url=GOOGLE_USERINFO_URL,
        )

    def extra_authorize_params(self) -> dict[str, str]:
        return {"prompt": "select_account", "access_type": "online"}

    async def fetch_profile(self, http, cache, tokens, *, nonce=None, login_hint=None) -> ExternalProfile:
        userinfo = await _get_json(
            http,
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        if not isinstance(userinfo, dict) or not userinfo.get("sub"):
            raise ProviderError("Google profile missing subject", error_code="missing_subject")
        email = userinfo.get("email")
        return ExternalProfile(
            provider=self.name,
            subject=str(userinfo["sub"]),
            email=str(email).lower() if email else None,
            email_verified=_claim_is_true(userinfo.get("email_verified")),
            username=userinfo.get("name") or None,
        )


class GitHubProvider(ProviderAdapter):
    name = "github"
    display_name = "GitHub"
    default_scopes = ("read:user", "user:email")

    async def endpoints(self, http: httpx.AsyncClient, cache: TTLCache) -> Endpoints:
        return Endpoints(authorize_url=GITHUB_AUTH_URL, token_url=GITHUB_TOKEN_URL, userinfo_url=f"{GITHUB_API_URL}/user")

    async def exchange_code(self, http, cache, *, code, code_verifier=None) -> ProviderTokens:
        # GitHub takes neither grant_type nor a PKCE verifier.
        return await _post_token(
            http,
            GITHUB_TOKEN_URL,
            {
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
            },
        )

    async def fetch_profile(self, http, cache, tokens, *, nonce=None, login_hint=None) -> ExternalProfile:
        headers = {
            "Authorization": f"Bearer {tokens.access_token}",
            "Accept": "application/vnd.github+json",
        }
        user = await _get_json(http, f"{GITHUB_API_URL}/user", headers=headers)
        if not isinstance(user, dict) or user.get("id") is None:
            raise ProviderError("GitHub profile missing id", error_code="missing_subject")

        email = None
        verified = False
        emails = await _get_json(http, f"{GITHUB_API_URL}/user/emails", headers=headers)
        if isinstance(emails, list):
            primary = next((e for e in emails if isinstance(e, dict) and e.get("primary") and e.get("verified")), None)
            if primary:
                email, verified = primary.get("email"), True
        return ExternalProfile(
            provider=self.name,
            subject=str(user["id"]),
            email=str(email).lower() if email else None,
            email_verified=verified,
            username=user.get("login") or None,
        )


class DuoProvider(ProviderAdapter):
    """Duo Universal Prompt: OIDC-shaped, with HS512 signed request objects."""

    name = "duo"
    requires_login_hint = True
    default_scopes = ("openid",)

    def __init__(self, settings_obj, *, redirect_uri: str):
        super().__init__(
            client_id=settings_obj.oidc_client_id,
            client_secret=settings_obj.oidc_client_secret,
            redirect_uri=redirect_uri,
        )
        self.display_name = settings_obj.oidc_display_name
        self.api_host = (settings_obj.duo_api_hostname or "").strip().lower()

    async def endpoints(self, http: httpx.AsyncClient, cache: TTLCache) -> Endpoints:
        base = f"https://{self.api_host}/oauth/v1"
        return Endpoints(
            authorize_url=f"{base}/authorize",
            token_url=f"{base}/token",
            issuer=f"{base}/token",
        )

    def _sign(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self.client_secret, algorithm="HS512")

    async def authorize_url(self, http, cache, *, state, nonce=None, code_challenge=None, login_hint=None) -> str:
        if not login_hint:
            raise CredentialInvalid("Enter your Duo username to continue")
        eps = await self.endpoints(http, cache)
        now = int(time.time())
        request_jwt = self._sign(
            {
                "response_type": "code",
                "scope": " ".join(self.scopes),
                "exp": now + 300,
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "state": state,
                "duo_uname": login_hint,
                "iss": self.client_id,
                "aud": f"https://{self.api_host}",
                "use_duo_code_attribute": True,
            }
        )
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "request": request_jwt,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
        }
        return f"{eps.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, http, cache, *, code, code_verifier=None) -> ProviderTokens:
        eps = await self.endpoints(http, cache)
        now = int(time.time())
        assertion = self._sign(
            {
                "iss": self.client_id,
                "sub": self.client_id,
                "aud": eps.token_url,
                "exp": now + 300,
                "iat": now,
                "jti": secrets.token_urlsafe(24),
            }
        )
        return await _post_token(
            http,
            eps.token_url,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": assertion,
            },
        )

    async def fetch_profile(self, http, cache, tokens, *, nonce=None, login_hint=None) -> ExternalProfile:
        eps = await self.endpoints(http, cache)
        if not tokens.id_token:
            raise ProviderError("Duo response missing id_token", error_code="invalid_response")
        try:
            claims = jwt.decode(
                tokens.id_token,
                self.client_secret,
                algorithms=["HS512"],
                audience=self.client_id,
                issuer=eps.issuer,
                options={"verify_at_hash": False},
            )
        except JWTError as exc:
            raise ProviderError("Duo id_token verification failed", error_code="invalid_id_token") from exc

        preferred = str(claims.get("preferred_username") or "")
        if login_hint and preferred and preferred.lower() != login_hint.lower():
            raise ProviderError("Duo username mismatch", error_code="username_mismatch")
        result = (claims.get("auth_result") or {}).get("result")
        if result != "allow":
            raise CredentialInvalid("Duo authentication was denied")
        subject = claims.get("sub")
        if not subject:
            raise ProviderError("Duo response missing subject", error_code="missing_subject")

        context = claims.get("auth_context") or {}
        email = context.get("email") if isinstance(context, dict) else None
        if not email and login_hint and "@" in login_hint:
            email = login_hint
        return ExternalProfile(
            provider=self.name,
            subject=str(subject),
            email=str(email).lower() if email else None,
            email_verified=bool(email),
            username=preferred or login_hint,
        )


def build_providers(settings_obj) -> dict[str, ProviderAdapter]:
    """Instantiate one adapter per configured provider."""
    base = settings_obj.app_base_url.rstrip("/")
    providers: dict[str, ProviderAdapter] = {}
    if settings_obj.oidc_configured:
        redirect_uri = settings_obj.oidc_redirect_uri or f"{base}/sso/callback"
        if settings_obj.oidc_provider_type == ProviderType.DUO:
            adapter: ProviderAdapter = DuoProvider(settings_obj, redirect_uri=redirect_uri)
        else:
            adapter = OidcProvider(settings_obj, redirect_uri=redirect_uri)
        providers[adapter.name] = adapter
    if settings_obj.google_configured:
        providers["google"] = GoogleProvider(
            client_id=settings_obj.google_client_id,
            client_secret=settings_obj.google_client_secret,
            redirect_uri=f"{base}/sso/callback",
        )
    if settings_obj.github_configured:
        providers["github"] = GitHubProvider(
            client_id=settings_obj.github_client_id,
            client_secret=settings_obj.github_client_secret,
            redirect_uri=f"{base}/sso/callback",
        )
    return providers
