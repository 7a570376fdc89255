"""Authentication error taxonomy.

Every error carries the HTTP status and the public message that may be shown
to the caller. Internal detail belongs in server-side logs, never in
``public_message``.
"""

from __future__ import annotations


class AuthError(Exception):
    status_code = 400
    public_message = "Request could not be completed"

    def __init__(self, message: str | None = None, *, retry_after: int | None = None):
        super().__init__(message or self.public_message)
        if message:
            self.public_message = message
        self.retry_after = retry_after


class Unauthenticated(AuthError):
    status_code = 401
    public_message = "Authentication required"


class Forbidden(AuthError):
    status_code = 403
    public_message = "Forbidden"


class InvalidChallenge(AuthError):
    status_code = 400
    public_message = "This request has expired. Reload the page and try again."


class RateLimited(AuthError):
    status_code = 429
    public_message = "Too many requests. Please try again shortly."


class LockedOut(AuthError):
    status_code = 429
    public_message = "Too many failed attempts. This sign-in is temporarily locked."


class CredentialInvalid(AuthError):
    status_code = 401
    public_message = "Invalid username or password"


class ProviderUnavailable(AuthError):
    status_code = 502
    public_message = "The sign-in provider could not be reached. Please try again."


class SecretIntegrityError(Exception):
    """An encrypted secret failed authentication or could not be decoded."""
