"""Request and response schemas for auth endpoints."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from src.identity.services.auth.models import TokenResponse, User, normalize_email


class RegisterRequest(BaseModel):
    """Email/password registration payload."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: str | None = Field(None, max_length=100)
    last_name: str | None = Field(None, max_length=100)

    @field_validator("email", mode="after")
    @classmethod
    def normalize(cls, value: str) -> str:
        return normalize_email(value)


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    """Public view of a user; never exposes the password hash."""

    id: UUID
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    picture_url: str | None = None
    auth_provider: str
    email_verified: bool
    role: str
    last_login_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls.model_validate(user.model_dump(exclude={"password_hash", "provider_id"}))


class AuthResponse(BaseModel):
    """
    Successful sign-in or registration.

    Example:
        {
            "message": "Google login successful",
            "user": {"id": "...", "email": "a@example.com", ...},
            "token": {"access_token": "...", "refresh_token": "...", ...}
        }
    """

    message: str
    user: UserResponse
    token: TokenResponse


class ErrorResponse(BaseModel):
    """Structured error body returned for every failure."""

    code: str
    message: str
    details: object | None = None
