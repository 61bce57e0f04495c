"""
core/errors.py -- Typed error taxonomy for the authentication service.

Every failure a service can report to a caller is one of these classes. Each
class carries a stable machine-readable code and the HTTP status the API layer
should answer with; api/main.py registers a single handler for the base class
and renders {"success": false, "error": {"code", "message"}}.

Token failures deliberately share one class and one generic message: the
caller cannot tell a bad signature from an expired token [T1]. Second-factor
failures (InvalidCode, InvalidOrUsed) use distinct codes so a client can tell
"your session is gone" apart from "your code was wrong".

SigningKeyError is not an AuthServiceError. It is raised during startup when
the signing key is unusable and must abort the process rather than turn into
a 500 on every request.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from __future__ import annotations


class AuthServiceError(Exception):
    """Base class for errors that map to a structured HTTP response."""

    status_code: int = 400
    code: str = "validation_error"
    default_message: str = "Request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(AuthServiceError):
    """Malformed or missing input (400)."""

    status_code = 400
    code = "validation_error"
    default_message = "Request validation failed."


class NotFound(AuthServiceError):
    """Unknown identity or resource (404)."""

    status_code = 404
    code = "not_found"
    default_message = "Not found."


class Conflict(AuthServiceError):
    """State conflict surfaced as a descriptive 400."""

    status_code = 400
    code = "conflict"
    default_message = "The request conflicts with the current state."


class MFAAlreadyEnabled(Conflict):
    code = "mfa_already_enabled"
    default_message = "MFA is already enabled. Disable it first to reconfigure."


class InvalidToken(AuthServiceError):
    """Missing, malformed, expired, revoked or wrongly signed token (401) [T1]."""

    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidCredentials(AuthServiceError):
    """Wrong email or password. One message for both to avoid enumeration."""

    status_code = 401
    code = "bad_credentials"
    default_message = "Invalid email or password."


class InvalidCode(AuthServiceError):
    """Wrong time-based one-time code (401)."""

    status_code = 401
    code = "invalid_code"
    default_message = "Invalid authentication code."


class InvalidOrUsed(AuthServiceError):
    """Backup code unknown or already consumed (401)."""

    status_code = 401
    code = "invalid_or_used"
    default_message = "Backup code is invalid or has already been used."


class Forbidden(AuthServiceError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class AccountLocked(AuthServiceError):
    """Too many consecutive failed logins (403)."""

    status_code = 403
    code = "account_locked"
    default_message = "Account is temporarily locked."


class StoreUnavailable(AuthServiceError):
    """A persistence call failed. Retryable for reads (503)."""

    status_code = 503
    code = "unavailable"
    default_message = "Service temporarily unavailable. Please retry."


class StoreTimeout(StoreUnavailable):
    """A persistence call exceeded its time budget."""

    code = "timeout"
    default_message = "The request timed out. Please retry."


class SigningKeyError(RuntimeError):
    """The token signing key is missing or unusable. Fatal at startup."""
