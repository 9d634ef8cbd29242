"""Data models for identities, users and session tokens."""

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def normalize_email(email: str | None) -> str:
    """Lower-case and trim an email address; ``None`` becomes ``""``."""
    return (email or "").strip().lower()


class AuthProvider(str, Enum):
    """How a user account authenticates."""

    EMAIL = "email"
    GOOGLE = "google"
    APPLE = "apple"


class ExternalProfile(BaseModel):
    """
    Normalized identity assertion from an OAuth provider.

    Produced once per callback and folded into a ``User``; never stored.

    Attributes:
        provider: Provider that asserted the identity
        provider_subject_id: Provider's stable subject identifier (``sub``)
        email: Lower-cased, trimmed email or ``""`` when the provider sent none
        email_verified: Whether the provider vouches for the email
        first_name: Given name or ``""``
        last_name: Family name or ``""``
        picture_url: Avatar URL or ``""``
    """

    provider: AuthProvider
    provider_subject_id: str
    email: str = ""
    email_verified: bool = False
    first_name: str = ""
    last_name: str = ""
    picture_url: str = ""

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str:
        return normalize_email(value)


class User(BaseModel):
    """
    Local user record.

    Owned by the user store; mutated by identity reconciliation and password
    login. ``password_hash`` is only set for ``email`` accounts.
    """

    id: UUID = Field(default_factory=uuid4)
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    picture_url: str | None = None
    auth_provider: str = AuthProvider.EMAIL.value
    provider_id: str | None = None
    email_verified: bool = False
    role: str = "user"
    password_hash: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TokenClaims(BaseModel):
    """Claims carried by issued access and refresh tokens."""

    user_id: UUID
    email: str = ""
    role: str
    iss: str
    sub: str
    iat: int
    exp: int
    jti: str | None = None


class TokenResponse(BaseModel):
    """Access/refresh token pair returned to clients."""

    access_token: str
    refresh_token: str = ""
    token_type: str = "Bearer"
    expires_at: datetime
