"""
Pydantic models for input validation and output serialization.

Security features:
- Email addresses validated with email-validator
- Identity-provider uid length bounded and stripped
- Admin key accepted under its legacy camelCase name
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


def clean_uid(v: str) -> str:
    """Strip an identity-provider uid and reject blank or control-character values."""
    v = v.strip()
    if not v:
        raise ValueError("UID must not be blank")
    if any(ord(c) < 32 for c in v):
        raise ValueError("UID contains invalid control characters")
    return v


class UserLoginRequest(BaseModel):
    """
    Request model for account login / signup.

    The identity provider has already authenticated the user; ``uid`` is its
    stable user id and doubles as the account credential.

    ``idToken`` is still accepted because existing web clients send it, but
    it is ignored: the server does not verify provider tokens, and the uid
    hash check is the only credential.
    """

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr = Field(..., description="Account email address")
    uid: str = Field(..., min_length=1, max_length=128, description="Identity provider user id")
    id_token: Optional[str] = Field(
        default=None,
        alias="idToken",
        description="Identity provider token; accepted for client compatibility and ignored",
    )

    @field_validator("uid")
    @classmethod
    def validate_uid(cls, v: str) -> str:
        return clean_uid(v)


class UserLoginResponse(BaseModel):
    success: bool = True
    user_id: int
    api_key: str
    message: Optional[str] = None


class ApiKeyCreatedResponse(BaseModel):
    success: bool = True
    message: str = "API key created successfully"
    api_key: str
    id: int


class AdminLoginRequest(BaseModel):
    """Admin login payload; accepts ``adminKey`` or ``admin_key``."""

    model_config = ConfigDict(populate_by_name=True)

    admin_key: Optional[str] = Field(default=None, alias="adminKey")


class AdminLoginResponse(BaseModel):
    success: bool = True
    message: str = "Authentication successful"
    uid: str
    email: str
    session_token: str = Field(..., serialization_alias="sessionToken")
    expires_at: str


class QuotaStatus(BaseModel):
    """Quota state after the current request was admitted."""
    key_id: int
    daily_limit: int
    requests_remaining: int = Field(..., ge=0)
    reset_time: str


class ApiKeySummary(BaseModel):
    id: int
    user_id: Optional[int] = None
    api_key: str
    is_active: bool
    daily_limit: int
    created_at: str


class ApiKeyListResponse(BaseModel):
    keys: List[ApiKeySummary]
    total: int


class EmailVerificationRequest(BaseModel):
    """
    Identity-provider callback after sign-up or email confirmation.

    Registers the account when it does not exist yet and records the
    provider's verification status.
    """

    model_config = ConfigDict(populate_by_name=True)

    email: EmailStr
    uid: str = Field(..., min_length=1, max_length=128)
    email_verified: bool = Field(default=False, alias="emailVerified")

    @field_validator("uid")
    @classmethod
    def validate_uid(cls, v: str) -> str:
        return clean_uid(v)


class EmailVerificationResponse(BaseModel):
    success: bool = True
    message: str
    user_id: int
    is_verified: bool
    can_create_api_keys: bool


class CastMember(BaseModel):
    name: str
    role: Optional[str] = None


class MovieOut(BaseModel):
    id: int
    title: str
    year: Optional[int] = None
    runtime: Optional[int] = None
    rating: Optional[float] = None
    director: Optional[str] = None
    plot: Optional[str] = None
    poster_url: Optional[str] = None
    genres: List[str] = []
    cast: List[CastMember] = []


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
    has_next: bool
    has_prev: bool


class MovieListResponse(BaseModel):
    movies: List[MovieOut]
    pagination: Pagination


class YearRange(BaseModel):
    min: Optional[int] = None
    max: Optional[int] = None


class CatalogStatsResponse(BaseModel):
    movies_total: int
    genres_total: int
    cast_total: int
    year_range: YearRange
