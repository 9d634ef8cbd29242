"""Email/password accounts and session refresh."""

import logging

from src.identity.services.analytics.posthog import PostHogService
from src.identity.services.auth.exceptions import (
    APIError,
    ConflictError,
    InternalError,
    UnauthorizedError,
    UserNotFoundError,
)
from src.identity.services.auth.models import (
    AuthProvider,
    TokenResponse,
    User,
    normalize_email,
    utcnow,
)
from src.identity.services.auth.passwords import hash_password, verify_password
from src.identity.services.auth.tokens import TokenService
from src.identity.services.database.user_store import UserStore

logger = logging.getLogger(__name__)


class AccountService:
    """Registration, password login, refresh and logout."""

    def __init__(
        self,
        user_store: UserStore,
        token_service: TokenService,
        analytics: PostHogService | None = None,
    ):
        self.user_store = user_store
        self.token_service = token_service
        self.analytics = analytics or PostHogService()

    async def register(
        self,
        email: str,
        password: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> tuple[User, TokenResponse]:
        """
        Create an ``email`` account and sign it in.

        Raises:
            ConflictError: Email already registered (any provider)
            InternalError: Store failure
        """
        normalized = normalize_email(email)
        try:
            await self.user_store.find_by_email(normalized)
        except UserNotFoundError:
            pass
        except Exception as e:
            logger.error(f"Failed to check existing user by email: {e}", exc_info=True)
            raise InternalError("Registration failed due to an internal error.") from e
        else:
            raise ConflictError("User with this email already exists.")

        now = utcnow()
        user = User(
            email=normalized,
            first_name=first_name or None,
            last_name=last_name or None,
            auth_provider=AuthProvider.EMAIL.value,
            password_hash=hash_password(password),
            last_login_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            user = await self.user_store.create(user)
        except APIError:
            raise
        except Exception as e:
            logger.error(f"Failed to create user: {e}", exc_info=True, extra={"email": normalized})
            raise InternalError("Could not create user account.") from e

        tokens = self.token_service.issue_token_pair(user)
        logger.info("User registered successfully", extra={"user_id": str(user.id)})
        self.analytics.capture(distinct_id=str(user.id), event="user_registered")
        return user, tokens

    async def login(self, email: str, password: str) -> tuple[User, TokenResponse]:
        """
        Sign in with email and password.

        Raises:
            UnauthorizedError: Unknown email, wrong password, or no password set
        """
        normalized = normalize_email(email)
        try:
            user = await self.user_store.find_by_email(normalized)
        except UserNotFoundError:
            logger.info("User not found during login", extra={"email": normalized})
            raise UnauthorizedError("Invalid email or password.")
        except Exception as e:
            logger.error(f"Error finding user by email during login: {e}", exc_info=True)
            raise InternalError("Login failed due to an internal error.") from e

        if not user.password_hash:
            logger.warning(
                "Password login attempted on an account without a password",
                extra={"user_id": str(user.id), "auth_provider": user.auth_provider},
            )
            raise UnauthorizedError("Login with email/password not configured for this account.")

        if not verify_password(password, user.password_hash):
            logger.warning("Invalid password attempt", extra={"user_id": str(user.id)})
            raise UnauthorizedError("Invalid email or password.")

        user.last_login_at = utcnow()
        try:
            user = await self.user_store.update(user)
        except Exception as e:
            logger.error(
                f"Failed to update last login time: {e}", extra={"user_id": str(user.id)}
            )

        tokens = self.token_service.issue_token_pair(user)
        self.analytics.capture(distinct_id=str(user.id), event="user_logged_in")
        return user, tokens

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Exchange a refresh token for a new access token.

        The refresh token itself is returned unchanged.

        Raises:
            TokenInvalidError: Invalid, expired or revoked refresh token
            UnauthorizedError: User no longer exists
        """
        claims = await self.token_service.parse_refresh_token(refresh_token)
        try:
            user = await self.user_store.find_by_id(claims.user_id)
        except UserNotFoundError:
            logger.error(
                "User not found for valid refresh token claims",
                extra={"user_id": str(claims.user_id)},
            )
            raise UnauthorizedError("User associated with refresh token not found.")
        except Exception as e:
            logger.error(f"Error loading user during refresh: {e}", exc_info=True)
            raise InternalError("Could not refresh token.") from e

        access_token, expires_at = self.token_service.issue_access_token(user)
        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="Bearer",
            expires_at=expires_at,
        )

    async def logout(self, refresh_token: str) -> None:
        """Revoke a refresh token."""
        await self.token_service.revoke_refresh_token(refresh_token)
