"""Matching external identities to local user records."""

import logging

from src.identity.services.auth.exceptions import (
    APIError,
    InternalError,
    ProviderConflictError,
    UserNotFoundError,
)
from src.identity.services.auth.models import (
    AuthProvider,
    ExternalProfile,
    User,
    normalize_email,
    utcnow,
)
from src.identity.services.database.user_store import UserStore

logger = logging.getLogger(__name__)


def merge_profile(user: User, profile: ExternalProfile) -> None:
    """
    Refresh mutable profile fields from a provider profile, in place.

    Only non-empty incoming values overwrite. An email replaces the stored one
    only when the provider verified it, and ``email_verified`` always describes
    the stored address: raised on a verified match, never regressed.
    """
    if profile.email and profile.email_verified:
        user.email = profile.email
        user.email_verified = True
    elif profile.email and not user.email:
        user.email = profile.email
        user.email_verified = False
    if profile.first_name:
        user.first_name = profile.first_name
    if profile.last_name:
        user.last_name = profile.last_name
    if profile.picture_url:
        user.picture_url = profile.picture_url


class IdentityReconciler:
    """
    Finds, links or creates the local user for an external profile.

    Precedence:
    1. Exact (provider, subject) match
    2. Verified-email link onto an ``email`` account or an account of the same
       provider without a different subject
    3. New user

    Unverified emails never link accounts. Uniqueness races surface from the
    store as ``ConflictError`` and are passed through.
    """

    def __init__(self, user_store: UserStore, default_role: str = "user"):
        self.user_store = user_store
        self.default_role = default_role

    async def reconcile(self, profile: ExternalProfile) -> tuple[User, bool]:
        """
        Resolve a profile to a user.

        Args:
            profile: Normalized provider profile

        Returns:
            (user, was_created)

        Raises:
            ProviderConflictError: Email already owned by another external identity
            ConflictError: Store uniqueness violation (concurrent registration)
            InternalError: Any other store failure
        """
        logger.info(
            "Processing OAuth user profile",
            extra={
                "provider": profile.provider.value,
                "provider_id": profile.provider_subject_id,
                "email": profile.email,
            },
        )
        try:
            return await self._reconcile(profile)
        except APIError:
            raise
        except Exception as e:
            logger.error(
                f"Unexpected error reconciling OAuth profile: {e}",
                exc_info=True,
                extra={"provider": profile.provider.value},
            )
            raise InternalError("Failed to process user account.") from e

    async def _reconcile(self, profile: ExternalProfile) -> tuple[User, bool]:
        provider = profile.provider.value

        try:
            user = await self.user_store.find_by_provider_identity(
                provider, profile.provider_subject_id
            )
        except UserNotFoundError:
            pass
        else:
            logger.info("OAuth user found by provider ID", extra={"user_id": str(user.id)})
            merge_profile(user, profile)
            user.last_login_at = utcnow()
            return await self.user_store.update(user), False

        if profile.email and profile.email_verified:
            linked = await self._link_by_email(profile)
            if linked is not None:
                return linked, False

        return await self._create(profile), True

    async def _link_by_email(self, profile: ExternalProfile) -> User | None:
        provider = profile.provider.value
        logger.info("Attempting to link OAuth account by verified email", extra={"email": profile.email})

        try:
            user = await self.user_store.find_by_email(normalize_email(profile.email))
        except UserNotFoundError:
            return None

        if user.auth_provider not in (AuthProvider.EMAIL.value, provider):
            logger.warning(
                "User found by email but already linked to a different OAuth provider",
                extra={
                    "user_id": str(user.id),
                    "existing_provider": user.auth_provider,
                    "new_provider": provider,
                },
            )
            raise ProviderConflictError(
                f"This email is already associated with an account using {user.auth_provider}. "
                f"Cannot link {provider}."
            )

        if user.auth_provider == provider and user.provider_id != profile.provider_subject_id:
            logger.warning(
                "User found by email, same provider, but different provider ID",
                extra={"user_id": str(user.id), "new_provider_id": profile.provider_subject_id},
            )
            raise ProviderConflictError(
                f"This email is already linked to a {provider} account with a different user ID."
            )

        logger.info(
            "Linking OAuth identity to existing email user",
            extra={"user_id": str(user.id), "provider": provider},
        )
        user.auth_provider = provider
        user.provider_id = profile.provider_subject_id
        merge_profile(user, profile)
        user.last_login_at = utcnow()
        return await self.user_store.update(user)

    async def _create(self, profile: ExternalProfile) -> User:
        logger.info(
            "Creating new user from OAuth profile",
            extra={"provider": profile.provider.value, "email": profile.email},
        )
        now = utcnow()
        user = User(
            email=normalize_email(profile.email) or None,
            first_name=profile.first_name or None,
            last_name=profile.last_name or None,
            picture_url=profile.picture_url or None,
            auth_provider=profile.provider.value,
            provider_id=profile.provider_subject_id,
            email_verified=profile.email_verified,
            role=self.default_role,
            last_login_at=now,
            created_at=now,
            updated_at=now,
        )
        created = await self.user_store.create(user)
        logger.info("New OAuth user created successfully", extra={"user_id": str(created.id)})
        return created
