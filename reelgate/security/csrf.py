"""Double-submit CSRF protection.

A random token lives in a non-httpOnly cookie. Unsafe requests must echo it
in the ``X-CSRF-Token`` header (or a ``csrf_token`` form field for plain
HTML forms) and must come from the configured application origin.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from urllib.parse import urlsplit

from fastapi import Request
from starlette.responses import Response

from .cookies import CookieNames, set_cookie

logger = logging.getLogger(__name__)

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_HEADER = "x-csrf-token"
CSRF_FORM_FIELD = "csrf_token"
CSRF_COOKIE_MAX_AGE = 60 * 60 * 24


@dataclass(frozen=True)
class CsrfCheck:
    ok: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.ok


def new_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def _origin_of(url: str) -> str | None:
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}".lower()


def is_same_origin(request: Request, settings_obj) -> bool:
    """Origin header first, then Referer. Requests carrying neither pass."""
    expected = settings_obj.base_origin

    origin = request.headers.get("origin")
    if origin:
        if origin == "null":
            return False
        candidate = _origin_of(origin)
        return candidate == expected

    referer = request.headers.get("referer")
    if referer:
        candidate = _origin_of(referer)
        return candidate == expected

    return True


def check_csrf(request: Request, names: CookieNames, settings_obj, provided: str | None = None) -> CsrfCheck:
    if request.method.upper() in SAFE_METHODS:
        return CsrfCheck(ok=True)
    if not is_same_origin(request, settings_obj):
        return CsrfCheck(ok=False, reason="cross-origin request")

    cookie_token = request.cookies.get(names.csrf, "")
    header_token = provided if provided is not None else request.headers.get(CSRF_HEADER, "")
    if not cookie_token or not header_token:
        return CsrfCheck(ok=False, reason="missing token")
    if not hmac.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8")):
        return CsrfCheck(ok=False, reason="token mismatch")
    return CsrfCheck(ok=True)


async def require_csrf(request: Request, names: CookieNames, settings_obj) -> CsrfCheck:
    """Check the header, falling back to a form field on form posts."""
    provided = request.headers.get(CSRF_HEADER)
    if not provided:
        content_type = request.headers.get("content-type", "").lower()
        if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
            form = await request.form()
            provided = str(form.get(CSRF_FORM_FIELD, "") or "")
    result = check_csrf(request, names, settings_obj, provided or "")
    if not result:
        logger.debug("csrf rejected for %s %s: %s", request.method, request.url.path, result.reason)
    return result


def ensure_csrf_cookie(request: Request, response: Response, names: CookieNames, settings_obj) -> str:
    token = request.cookies.get(names.csrf, "")
    if token:
        return token
    token = new_csrf_token()
    set_cookie(response, settings_obj, names.csrf, token, max_age=CSRF_COOKIE_MAX_AGE, http_only=False)
    return token
