"""
API request and response models for the FlightSchool REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in gateway/models.py, which
own the internal representation. Route handlers map between the two.

Wire names are camelCase (csrfToken, pendingAuthId, lastSix, ...) via field
aliases; Python attribute names stay snake_case. Request models accept either.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from gateway.api_keys import DurationType
from gateway.models import Role

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/v1/auth/login. token is the optional 6-digit MFA code."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    # Untyped so a malformed code reaches the 6-digit check (400), not validation (422).
    token: Optional[Any] = None


class MfaVerifyLoginRequest(BaseModel):
    """Body for POST /api/v1/auth/mfa/verify-login."""

    model_config = ConfigDict(populate_by_name=True)

    pending_auth_id: str = Field(alias="pendingAuthId", min_length=1, max_length=128)
    token: Optional[Any] = None


class LoginResponse(BaseModel):
    """Successful login: session token plus the CSRF value also set as a cookie."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    token: str
    csrf_token: str = Field(alias="csrfToken")


class MfaRequiredResponse(BaseModel):
    """401 body when the password was right but a second factor is outstanding."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str = "MFA verification required"
    pending_auth_id: str = Field(alias="pendingAuthId")


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    csrf_token: str = Field(alias="csrfToken")
    expires_at: datetime = Field(alias="expiresAt")


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: int = Field(alias="userId")
    email: str
    role: Role
    school_id: Optional[int] = Field(default=None, alias="schoolId")
    student_id: Optional[int] = Field(default=None, alias="studentId")
    instructor_id: Optional[int] = Field(default=None, alias="instructorId")
    mfa_enabled: bool = Field(alias="mfaEnabled")


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# MFA management
# ---------------------------------------------------------------------------


class MfaCodeRequest(BaseModel):
    """Body carrying a 6-digit code. Format is checked by the MFA flow (400)."""

    token: Optional[Any] = None


class MfaSetupResponse(BaseModel):
    """Returned once by POST /api/v1/auth/mfa/setup. The secret is never shown again."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    secret: str
    otpauth_url: str = Field(alias="otpauthUrl")


class MfaStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool
    verified: bool


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyGenerateRequest(BaseModel):
    """Body for POST /api/v1/api-keys/generate. Without a duration the key never expires."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    label: str = Field(min_length=1, max_length=100)
    duration_value: Optional[int] = Field(default=None, alias="durationValue", gt=0, le=3650)
    duration_type: Optional[DurationType] = Field(default=None, alias="durationType")


class ApiKeyGenerateResponse(BaseModel):
    """The only representation that ever carries the plaintext key."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    api_key: str = Field(alias="apiKey")
    id: int
    last_six: str = Field(alias="lastSix")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class ApiKeyResponse(BaseModel):
    """Listing row. Exposes lastSix only, never the key or its digest."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    label: str
    last_six: str = Field(alias="lastSix")
    is_active: bool = Field(alias="isActive")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")
    last_used_at: Optional[datetime] = Field(default=None, alias="lastUsedAt")


# ---------------------------------------------------------------------------
# Schools and students
# ---------------------------------------------------------------------------


class SchoolResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class StudentResponse(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    school_id: int = Field(alias="schoolId")
    user_id: int = Field(alias="userId")
    name: str


class StudentUpdate(BaseModel):
    """Body for PUT /api/v1/schools/{school_id}/students/{student_id}."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
