"""Tests for identity reconciliation."""

from unittest.mock import AsyncMock

import pytest

from src.identity.services.auth.exceptions import (
    ConflictError,
    InternalError,
    ProviderConflictError,
)
from src.identity.services.auth.models import AuthProvider, ExternalProfile, User
from src.identity.services.auth.reconciliation import IdentityReconciler, merge_profile


def _google_profile(**overrides) -> ExternalProfile:
    data = {
        "provider": AuthProvider.GOOGLE,
        "provider_subject_id": "google-sub-1",
        "email": "Jane@Example.com",
        "email_verified": True,
        "first_name": "Jane",
        "last_name": "Doe",
        "picture_url": "https://example.com/jane.png",
    }
    data.update(overrides)
    return ExternalProfile(**data)


@pytest.fixture
def reconciler(user_store) -> IdentityReconciler:
    return IdentityReconciler(user_store)


@pytest.mark.asyncio
class TestIdentityReconciler:
    """Tests for IdentityReconciler class."""

    async def test_creates_new_user(self, reconciler, user_store):
        user, was_created = await reconciler.reconcile(_google_profile())

        assert was_created is True
        assert user.email == "jane@example.com"
        assert user.auth_provider == "google"
        assert user.provider_id == "google-sub-1"
        assert user.email_verified is True
        assert user.role == "user"
        assert user.last_login_at is not None
        assert len(user_store.users) == 1

    async def test_repeat_login_is_idempotent(self, reconciler, user_store):
        """Test the same (provider, subject) never creates a second user."""
        first, _ = await reconciler.reconcile(_google_profile())
        second, was_created = await reconciler.reconcile(_google_profile())

        assert was_created is False
        assert second.id == first.id
        assert second.created_at == first.created_at
        assert second.last_login_at >= first.last_login_at
        assert len(user_store.users) == 1

    async def test_repeat_login_refreshes_non_empty_fields_only(self, reconciler):
        await reconciler.reconcile(_google_profile())

        user, _ = await reconciler.reconcile(
            _google_profile(first_name="Janet", last_name="", picture_url="")
        )

        assert user.first_name == "Janet"
        assert user.last_name == "Doe"
        assert user.picture_url == "https://example.com/jane.png"

    async def test_unverified_email_never_links(self, reconciler, user_store):
        """Test an unverified email creates a separate user instead of linking."""
        existing = await user_store.create(User(email="jane@example.com", auth_provider="email"))

        with pytest.raises(ConflictError):
            # The store still enforces email uniqueness on the new user.
            await reconciler.reconcile(_google_profile(email_verified=False))

        stored = await user_store.find_by_id(existing.id)
        assert stored.auth_provider == "email"
        assert stored.provider_id is None

    async def test_unverified_email_without_collision_creates_user(self, reconciler, user_store):
        user, was_created = await reconciler.reconcile(
            _google_profile(email="new@example.com", email_verified=False)
        )

        assert was_created is True
        assert user.email_verified is False

    async def test_repeat_login_ignores_unverified_email_change(self, reconciler, user_store):
        """Test a known subject cannot swap in an unverified email under the verified flag."""
        first, _ = await reconciler.reconcile(_google_profile(email="a@x.com"))

        user, was_created = await reconciler.reconcile(
            _google_profile(email="attacker@evil.com", email_verified=False)
        )

        assert was_created is False
        stored = await user_store.find_by_id(first.id)
        for record in (user, stored):
            assert record.email == "a@x.com"
            assert record.email_verified is True

    async def test_repeat_login_adopts_verified_email_change(self, reconciler, user_store):
        first, _ = await reconciler.reconcile(_google_profile(email="a@x.com"))

        user, _ = await reconciler.reconcile(_google_profile(email="b@x.com"))

        assert user.id == first.id
        assert user.email == "b@x.com"
        assert user.email_verified is True

    async def test_verified_email_links_email_account(self, reconciler, user_store):
        """Test a verified email adopts the identity onto an email/password account."""
        existing = await user_store.create(
            User(email="jane@example.com", auth_provider="email", password_hash="hash")
        )

        user, was_created = await reconciler.reconcile(_google_profile())

        assert was_created is False
        assert user.id == existing.id
        assert user.auth_provider == "google"
        assert user.provider_id == "google-sub-1"
        assert user.password_hash == "hash"
        assert len(user_store.users) == 1

    async def test_verified_email_owned_by_other_provider_conflicts(self, reconciler, user_store):
        """Test the same verified email already owned by Apple cannot be linked to Google."""
        await user_store.create(
            User(email="jane@example.com", auth_provider="apple", provider_id="apple-sub")
        )

        with pytest.raises(ProviderConflictError):
            await reconciler.reconcile(_google_profile())

    async def test_same_provider_different_subject_conflicts(self, reconciler, user_store):
        await user_store.create(
            User(email="jane@example.com", auth_provider="google", provider_id="google-sub-OLD")
        )

        with pytest.raises(ProviderConflictError, match="different user ID"):
            await reconciler.reconcile(_google_profile())

    async def test_store_conflict_passes_through(self, reconciler, user_store):
        """Test a uniqueness race surfaces as ConflictError, not InternalError."""
        user_store.create = AsyncMock(side_effect=ConflictError("User with this email already exists."))

        with pytest.raises(ConflictError) as exc_info:
            await reconciler.reconcile(_google_profile(email="race@example.com"))
        assert not isinstance(exc_info.value, InternalError)

    async def test_unexpected_store_error_is_internal(self, reconciler, user_store):
        user_store.fail_with = RuntimeError("connection reset")

        with pytest.raises(InternalError):
            await reconciler.reconcile(_google_profile())

    async def test_default_role_applied(self, user_store):
        reconciler = IdentityReconciler(user_store, default_role="member")

        user, _ = await reconciler.reconcile(_google_profile())

        assert user.role == "member"


class TestMergeProfile:
    """Tests for merge_profile."""

    def test_never_regresses_email_verified(self):
        user = User(email="jane@example.com", email_verified=True)

        merge_profile(user, _google_profile(email_verified=False))

        assert user.email_verified is True

    def test_raises_email_verified(self):
        user = User(email="jane@example.com", email_verified=False)

        merge_profile(user, _google_profile())

        assert user.email_verified is True

    def test_unverified_email_does_not_replace_stored(self):
        user = User(email="jane@example.com", email_verified=True)

        merge_profile(user, _google_profile(email="other@example.com", email_verified=False))

        assert user.email == "jane@example.com"
        assert user.email_verified is True

    def test_unverified_email_fills_missing_email_as_unverified(self):
        user = User(email_verified=True)

        merge_profile(user, _google_profile(email="other@example.com", email_verified=False))

        assert user.email == "other@example.com"
        assert user.email_verified is False

    def test_empty_values_do_not_overwrite(self):
        user = User(email="old@example.com", first_name="Old", picture_url="https://x/p.png")
        before = user.updated_at

        merge_profile(user, _google_profile(email="", first_name="", picture_url=""))

        assert user.email == "old@example.com"
        assert user.first_name == "Old"
        assert user.picture_url == "https://x/p.png"
        assert user.updated_at == before
