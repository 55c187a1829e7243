"""
API request and response models for the identity service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models accept extra keys and ignore them; admin flags are additionally
stripped by auth.accounts before anything is persisted. Required-field checks
for usernames are left to the workflow so they surface as invalid_field rather
than a generic validation error.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(max_length=255)
    password: str = Field(max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)
    name: str = Field(default="", max_length=255)
    title: str = Field(default="", max_length=255)
    tags: list[str] = Field(default_factory=list, max_length=50)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{user_id}. The tag list replaces the stored set."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    username: Optional[str] = Field(default=None, max_length=255)
    name: str = Field(default="", max_length=255)
    title: str = Field(default="", max_length=255)
    tags: list[str] = Field(default_factory=list, max_length=50)


class PasswordChange(BaseModel):
    password: str = Field(max_length=255)


class ForgotRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, max_length=255)


class ResetRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    token: Optional[str] = Field(default=None, max_length=128)
    password: Optional[str] = Field(default=None, max_length=255)


class FindProfileRequest(BaseModel):
    """Request body for POST /api/v1/auth/find (find-your-profile flow)."""

    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    linked_id: Optional[str] = Field(default=None, alias="id", max_length=64)
    h: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str


class SuccessResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    redirect_url: Optional[str] = Field(default=None, serialization_alias="redirectURL")


class TokenCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    expires_at: str


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    name: str
    title: str
    tags: list[str]
    is_admin: bool
    is_agency_admin: bool
    federated: bool
    created_at: str


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

    status: str = "healthy"
    version: str
    components: dict[str, str]
