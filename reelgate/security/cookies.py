"""Cookie names and set/clear helpers.

Every cookie is path ``/``, SameSite=Lax, Secure when the deployment is
https or production, and scoped to ``cookie_domain`` only when one is set.
"""

from __future__ import annotations

from dataclasses import dataclass

from starlette.responses import Response


@dataclass(frozen=True)
class CookieNames:
    prefix: str

    @property
    def session(self) -> str:
        return f"{self.prefix}_session"

    @property
    def csrf(self) -> str:
        return f"{self.prefix}_csrf"

    @property
    def mfa_token(self) -> str:
        return f"{self.prefix}_mfa_token"

    @property
    def oauth_state(self) -> str:
        return f"{self.prefix}_oauth_state"

    @property
    def oauth_verifier(self) -> str:
        return f"{self.prefix}_oauth_verifier"

    @property
    def webauthn_challenge(self) -> str:
        return f"{self.prefix}_webauthn_challenge_id"

    def http_only(self) -> list[str]:
        return [
            self.session,
            self.mfa_token,
            self.oauth_state,
            self.oauth_verifier,
            self.webauthn_challenge,
        ]

    def handshake(self) -> list[str]:
        return [self.oauth_state, self.oauth_verifier]


def set_cookie(response: Response, settings_obj, name: str, value: str, *, max_age: int, http_only: bool = True):
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        httponly=http_only,
        secure=settings_obj.secure_cookies,
        samesite="lax",
        path="/",
        domain=settings_obj.cookie_domain or None,
    )


def clear_cookie(response: Response, settings_obj, name: str, *, http_only: bool = True):
    """Expire both the host-only and the domain-scoped variant of a cookie."""
    response.delete_cookie(
        name,
        path="/",
        secure=settings_obj.secure_cookies,
        httponly=http_only,
        samesite="lax",
    )
    if settings_obj.cookie_domain:
        response.delete_cookie(
            name,
            path="/",
            domain=settings_obj.cookie_domain,
            secure=settings_obj.secure_cookies,
            httponly=http_only,
            samesite="lax",
        )


def clear_auth_cookies(response: Response, settings_obj, names: CookieNames, *, include_csrf: bool = True):
    for name in names.http_only():
        clear_cookie(response, settings_obj, name)
    if include_csrf:
        clear_cookie(response, settings_obj, names.csrf, http_only=False)
