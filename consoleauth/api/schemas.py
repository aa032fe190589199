from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from consoleauth.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_credentials",
    "account_blocked",
    "mfa_required",
    "invalid_mfa_code",
    "password_rotation_required",
    "weak_password",
    "secret_format_invalid",
})

_USERNAME_RE = re.compile(r"^[\w .@-]+$")


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _clean_username(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("username must not be blank")
    if not _USERNAME_RE.match(normalized):
        raise ValueError("username contains unsupported characters")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginRequest(_CamelModel):
    """Login body. ``email`` and ``password`` arrive obfuscated."""

    email: str = Field(..., min_length=1, max_length=2048)
    password: str = Field(..., min_length=1, max_length=4096)
    secret_code: Optional[str] = Field(default=None, alias="secretCode", max_length=256)
    totp_code: Optional[str] = Field(default=None, max_length=32)

    @field_validator("totp_code", "secret_code")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class LoginResponse(_CamelModel):
    id: str
    username: str
    email: str
    role: str
    session_proof: str = Field(..., alias="sessionProof")
    expires_at: datetime = Field(..., alias="expiresAt")


class PasswordChangeRequest(_CamelModel):
    """Complexity is enforced by the password policy, not here."""

    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=128)
    new_password: str = Field(..., alias="newPassword", min_length=1, max_length=128)


class PasswordChangedResponse(_CamelModel):
    status: str = "changed"
    requires_login: bool = Field(True, alias="requiresLogin")


class ProfileUpdateRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return _clean_username(value)


class AdminProfile(_CamelModel):
    id: str
    username: str
    email: str
    role: str
    two_factor_enabled: bool = Field(..., alias="twoFactorEnabled")
    backup_codes_remaining: int = Field(..., alias="backupCodesRemaining")
    last_login_at: Optional[datetime] = Field(None, alias="lastLoginAt")


class MFASetupRequest(_CamelModel):
    custom_secret: Optional[str] = Field(default=None, alias="customSecret", max_length=256)


class MFASetupResponse(_CamelModel):
    qr_code: str = Field(..., alias="qrCode")
    secret: str
    provisioning_uri: str = Field(..., alias="provisioningUri")


class MFACodeRequest(BaseModel):
    totp_code: str = Field(..., min_length=1, max_length=32)


class MFADisableRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)
    totp_code: str = Field(..., min_length=1, max_length=32)


class BackupCodesResponse(_CamelModel):
    backup_codes: List[str] = Field(..., alias="backupCodes")


class BackupCodeStatusResponse(BaseModel):
    codes: List[str]
    remaining: int


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AdminCreateRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    username: Optional[str] = Field(default=None, min_length=1, max_length=64)
    role: str = Field(default="admin", pattern="^(admin|super_admin)$")

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise ValueError("invalid email address")
        return normalized

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _clean_username(value)


class AdminBlockRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AdminSummary(_CamelModel):
    id: str = Field(..., alias="_id")
    username: str
    email: str
    role: str
    is_active: bool = Field(..., alias="isActive")
    two_factor_enabled: bool = Field(..., alias="twoFactorEnabled")
    must_change_password: bool = Field(..., alias="mustChangePassword")
    last_login_at: Optional[datetime] = Field(None, alias="lastLoginAt")
    created_at: datetime = Field(..., alias="createdAt")


class TemporaryPasswordResponse(_CamelModel):
    temporary_password: str = Field(..., alias="temporaryPassword")
    requires_password_change: bool = Field(True, alias="requiresPasswordChange")
