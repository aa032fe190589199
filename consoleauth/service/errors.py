from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that is surfaced in the response envelope.
    """

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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Operation conflicts with the current state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentials(AuthenticationError):
    """Wrong email or password. The message never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountBlocked(ForbiddenError):
    error_code = "account_blocked"

    def __init__(self, message: str = "account is blocked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFARequired(ForbiddenError):
    """Password accepted; a TOTP or backup code must accompany the next attempt."""
    error_code = "mfa_required"

    def __init__(self, message: str = "two-factor code required", **kwargs) -> None:
        kwargs.setdefault("detail", {"requires2FA": True})
        super().__init__(message, **kwargs)


class InvalidMFACode(AuthenticationError):
    """Bad TOTP code and bad backup code are deliberately indistinguishable."""
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "invalid two-factor code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordRotationRequired(ForbiddenError):
    error_code = "password_rotation_required"

    def __init__(
        self,
        message: str = "password change required",
        *,
        rotation_ticket: Optional[str] = None,
        **kwargs,
    ) -> None:
        detail = {"requiresPasswordChange": True}
        if rotation_ticket:
            detail["rotationTicket"] = rotation_ticket
        kwargs.setdefault("detail", detail)
        super().__init__(message, **kwargs)
        self.rotation_ticket = rotation_ticket


class WeakPassword(ValidationError):
    error_code = "weak_password"

    def __init__(self, violations: list[str], message: Optional[str] = None) -> None:
        super().__init__(
            message or "password does not meet complexity requirements",
            detail={"violations": list(violations)},
        )
        self.violations = list(violations)


class SecretFormatInvalid(ValidationError):
    error_code = "secret_format_invalid"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentials",
    "AccountBlocked",
    "MFARequired",
    "InvalidMFACode",
    "PasswordRotationRequired",
    "WeakPassword",
    "SecretFormatInvalid",
]
