"""Database connection and user persistence."""

from src.identity.services.database.connection import get_supabase_admin_client
from src.identity.services.database.user_store import SupabaseUserStore, UserStore

__all__ = [
    "get_supabase_admin_client",
    "SupabaseUserStore",
    "UserStore",
]
