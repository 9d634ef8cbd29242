"""User persistence contract and its Supabase implementation."""

import logging
from typing import Any, Protocol
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

from src.identity.config import settings
from src.identity.services.auth.exceptions import ConflictError, UserNotFoundError
from src.identity.services.auth.models import User, normalize_email, utcnow
from src.identity.services.database.connection import get_supabase_admin_client

logger = logging.getLogger(__name__)

# PostgreSQL unique_violation
UNIQUE_VIOLATION = "23505"


class UserStore(Protocol):
    """
    Storage operations needed by reconciliation and password accounts.

    ``find_*`` raise ``UserNotFoundError`` when nothing matches; ``create`` and
    ``update`` raise ``ConflictError`` when a uniqueness constraint (email or
    provider identity) is violated.
    """

    async def find_by_provider_identity(self, provider: str, subject_id: str) -> User: ...

    async def find_by_email(self, email: str) -> User: ...

    async def find_by_id(self, user_id: UUID) -> User: ...

    async def create(self, user: User) -> User: ...

    async def update(self, user: User) -> User: ...


class SupabaseUserStore:
    """
    ``UserStore`` over the Supabase ``users`` table.

    Expects unique indexes on ``lower(email)`` and ``(auth_provider, provider_id)``.
    """

    def __init__(self, client: Client | None = None, table: str | None = None) -> None:
        """
        Initialize the store.

        Args:
            client: Supabase client (uses the service-role client if None)
            table: Users table name (default from settings)
        """
        self.client = client or get_supabase_admin_client()
        self.table = table or settings.users_table

    async def find_by_provider_identity(self, provider: str, subject_id: str) -> User:
        response = (
            self.client.table(self.table)
            .select("*")
            .eq("auth_provider", provider)
            .eq("provider_id", subject_id)
            .limit(1)
            .execute()
        )
        return self._single(response.data, f"{provider}:{subject_id}")

    async def find_by_email(self, email: str) -> User:
        normalized = normalize_email(email)
        response = (
            self.client.table(self.table).select("*").eq("email", normalized).limit(1).execute()
        )
        return self._single(response.data, normalized)

    async def find_by_id(self, user_id: UUID) -> User:
        response = self.client.table(self.table).select("*").eq("id", str(user_id)).execute()
        return self._single(response.data, str(user_id))

    async def create(self, user: User) -> User:
        try:
            response = self.client.table(self.table).insert(self._to_row(user)).execute()
        except PostgrestAPIError as e:
            raise self._translate(e, "create") from e
        return User.model_validate(response.data[0]) if response.data else user

    async def update(self, user: User) -> User:
        user.updated_at = utcnow()
        try:
            response = (
                self.client.table(self.table)
                .update(self._to_row(user))
                .eq("id", str(user.id))
                .execute()
            )
        except PostgrestAPIError as e:
            raise self._translate(e, "update") from e
        if not response.data:
            raise UserNotFoundError(str(user.id))
        return User.model_validate(response.data[0])

    @staticmethod
    def _single(rows: list[dict[str, Any]] | None, lookup: str) -> User:
        if not rows:
            raise UserNotFoundError(lookup)
        return User.model_validate(rows[0])

    @staticmethod
    def _to_row(user: User) -> dict[str, Any]:
        row = user.model_dump(mode="json")
        if row.get("email"):
            row["email"] = normalize_email(row["email"])
        return row

    @staticmethod
    def _translate(error: PostgrestAPIError, operation: str) -> Exception:
        if error.code != UNIQUE_VIOLATION:
            logger.error(
                f"User {operation} failed: {error.message}",
                extra={"error_type": "user_store_error", "pg_code": error.code},
            )
            return error

        detail = f"{error.message or ''} {error.details or ''}".lower()
        if "email" in detail:
            return ConflictError("User with this email already exists.")
        if "provider" in detail:
            return ConflictError("This social account is already linked to a user.")
        return ConflictError("User with this email or provider ID already exists.")
