from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable failure kinds carried by every service error."""

    INVALID_CREDENTIALS = "InvalidCredentials"
    EXPIRED = "Expired"
    MALFORMED = "Malformed"
    SIGNATURE_INVALID = "SignatureInvalid"
    SESSION_COMPROMISED = "SessionCompromised"
    NOT_FOUND = "NotFound"
    ATTEMPTS_EXHAUSTED = "AttemptsExhausted"
    CHANNEL_UNAVAILABLE = "ChannelUnavailable"
    IDENTITY_CONFLICT = "IdentityConflict"
    NOT_ENABLED = "NotEnabled"
    INVALID_CODE = "InvalidCode"
    MISMATCH = "Mismatch"
    REFRESH_CONFLICT = "RefreshConflict"
    CONFLICT = "Conflict"
    VALIDATION = "Validation"
    FORBIDDEN = "Forbidden"
    ID_GENERATION_FAILED = "IdGenerationFailed"


class ServiceError(Exception):
    """Base class for auth-core exceptions.

    Each subclass pins a ``kind`` from :class:`ErrorKind`, a stable ``error_code``
    and the HTTP ``status_code`` a controller would normally pick for it:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)
    """

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input rejected before any credential check (400)."""
    kind = ErrorKind.VALIDATION
    status_code = 400
    error_code = "validation_error"


class InvalidCredentialsError(ServiceError):
    """Password, session or token does not authenticate (401)."""
    kind = ErrorKind.INVALID_CREDENTIALS
    status_code = 401
    error_code = "unauthorized"


class ExpiredError(InvalidCredentialsError):
    """Credential or code outlived its expiry (401)."""
    kind = ErrorKind.EXPIRED
    error_code = "expired"


class TokenExpiredError(ExpiredError):
    pass


class MalformedTokenError(InvalidCredentialsError):
    kind = ErrorKind.MALFORMED
    error_code = "malformed_token"


class SignatureInvalidError(InvalidCredentialsError):
    kind = ErrorKind.SIGNATURE_INVALID
    error_code = "signature_invalid"


class SessionCompromisedError(InvalidCredentialsError):
    """Refresh token reuse detected; the session is already revoked (401)."""
    kind = ErrorKind.SESSION_COMPROMISED
    error_code = "session_compromised"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No live record for the request (404)."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    error_code = "not_found"


class NotEnabledError(ServiceError):
    """Two-factor authentication is not enabled for the user (400)."""
    kind = ErrorKind.NOT_ENABLED
    status_code = 400
    error_code = "two_factor_not_enabled"


class InvalidCodeError(ServiceError):
    """TOTP or recovery code did not validate (401)."""
    kind = ErrorKind.INVALID_CODE
    status_code = 401
    error_code = "invalid_code"


class OTPMismatchError(ServiceError):
    """One-time code did not match; attempts remain (400)."""
    kind = ErrorKind.MISMATCH
    status_code = 400
    error_code = "code_mismatch"


class AttemptsExhaustedError(ServiceError):
    """The last allowed attempt was spent (429)."""
    kind = ErrorKind.ATTEMPTS_EXHAUSTED
    status_code = 429
    error_code = "rate_limited"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate email or username (409)."""
    kind = ErrorKind.CONFLICT
    status_code = 409
    error_code = "conflict"


class IdentityConflictError(ConflictError):
    kind = ErrorKind.IDENTITY_CONFLICT
    error_code = "identity_conflict"


class RefreshConflictError(ConflictError):
    """A concurrent refresh won the rotation; retry with the winner's token (409)."""
    kind = ErrorKind.REFRESH_CONFLICT
    error_code = "refresh_conflict"


class ChannelUnavailableError(ServiceError):
    """Notifier refused the message (503)."""
    kind = ErrorKind.CHANNEL_UNAVAILABLE
    status_code = 503
    error_code = "channel_unavailable"


class IdGenerationError(ServiceError):
    """Unique id generation ran out of attempts (500)."""
    kind = ErrorKind.ID_GENERATION_FAILED
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "ExpiredError",
    "TokenExpiredError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "SessionCompromisedError",
    "ForbiddenError",
    "NotFoundError",
    "NotEnabledError",
    "InvalidCodeError",
    "OTPMismatchError",
    "AttemptsExhaustedError",
    "ConflictError",
    "IdentityConflictError",
    "RefreshConflictError",
    "ChannelUnavailableError",
    "IdGenerationError",
]
