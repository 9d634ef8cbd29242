"""Google and Apple sign-in flows: login URLs, callbacks, and token issuance."""

import hmac
import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ValidationError

from src.identity.config import Settings
from src.identity.services.analytics.posthog import PostHogService
from src.identity.services.auth.exceptions import (
    APIError,
    BadRequestError,
    CodeExchangeFailedError,
    InternalError,
    MissingSubjectError,
    ProfileFetchFailedError,
    StateMismatchError,
)
from src.identity.services.auth.id_token import AppleIDTokenVerifier, parse_claim_bool
from src.identity.services.auth.models import (
    AuthProvider,
    ExternalProfile,
    TokenResponse,
    User,
    normalize_email,
)
from src.identity.services.auth.oauth_cookies import OAuthCookieSession
from src.identity.services.auth.reconciliation import IdentityReconciler
from src.identity.services.auth.secure_random import generate_random_token
from src.identity.services.auth.tokens import TokenService

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_SCOPES = "openid profile email"

APPLE_AUTH_URL = "https://appleid.apple.com/auth/authorize"
APPLE_SCOPES = "name email"

STATE_BYTES = 32
NONCE_BYTES = 32


class AppleUserName(BaseModel):
    firstName: str = ""
    lastName: str = ""


class AppleUserForm(BaseModel):
    """One-time user blob Apple posts on the first authorization only."""

    name: AppleUserName = AppleUserName()
    email: str = ""


class OAuthService:
    """
    Drives the Google and Apple sign-in flows end to end.

    Login: generate state (and nonce for Apple), store them in single-use
    cookies, return the provider authorization URL.

    Callback: consume the cookies, check state before any upstream call,
    acquire the identity (Google code exchange + userinfo, Apple ``id_token``
    verification), reconcile it to a local user and issue session tokens.
    The flow's cookies are cleared whatever the outcome.
    """

    def __init__(
        self,
        settings: Settings,
        reconciler: IdentityReconciler,
        token_service: TokenService,
        apple_verifier: AppleIDTokenVerifier,
        http_client: httpx.AsyncClient | None = None,
        analytics: PostHogService | None = None,
        google_token_url: str = GOOGLE_TOKEN_URL,
        google_userinfo_url: str = GOOGLE_USERINFO_URL,
    ):
        self.settings = settings
        self.reconciler = reconciler
        self.token_service = token_service
        self.apple_verifier = apple_verifier
        self.analytics = analytics or PostHogService()
        self.google_token_url = google_token_url
        self.google_userinfo_url = google_userinfo_url
        self._http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.oauth_http_timeout_seconds)
        )

    async def close(self) -> None:
        await self._http_client.aclose()

    # Login URLs

    def get_google_login_url(self, cookies: OAuthCookieSession) -> str:
        """Issue a state cookie and build Google's authorization URL."""
        state = generate_random_token(STATE_BYTES)
        cookies.issue(self.settings.oauth_state_cookie_name, state)

        params = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        logger.info("Generated Google login URL")
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def get_apple_login_url(self, cookies: OAuthCookieSession) -> str:
        """Issue state and nonce cookies and build Apple's authorization URL."""
        state = generate_random_token(STATE_BYTES)
        nonce = generate_random_token(NONCE_BYTES)
        cookies.issue(self.settings.oauth_state_cookie_name, state)
        cookies.issue(self.settings.oauth_nonce_cookie_name, nonce)

        params = {
            "client_id": self.settings.apple_client_id,
            "redirect_uri": self.settings.apple_redirect_uri,
            "response_type": "code id_token",
            "scope": APPLE_SCOPES,
            "response_mode": "form_post",
            "state": state,
            "nonce": nonce,
        }
        logger.info("Generated Apple login URL")
        return f"{APPLE_AUTH_URL}?{urlencode(params)}"

    # Callbacks

    async def handle_google_callback(
        self, cookies: OAuthCookieSession, code: str, state: str
    ) -> tuple[User, TokenResponse]:
        """
        Complete a Google sign-in.

        Raises:
            StateMismatchError: Missing or different state cookie
            CodeExchangeFailedError: Token endpoint rejected the code
            ProfileFetchFailedError: Userinfo endpoint failed
            MissingSubjectError: Profile has no ``sub``
            ConflictError: Email already bound to another identity
        """
        try:
            self._check_state(cookies, state, AuthProvider.GOOGLE)
            access_token = await self._exchange_google_code(code)
            userinfo = await self._fetch_google_userinfo(access_token)
            profile = self._build_profile(
                AuthProvider.GOOGLE,
                subject=userinfo.get("sub"),
                email=userinfo.get("email"),
                email_verified=parse_claim_bool(userinfo.get("email_verified")),
                first_name=userinfo.get("given_name"),
                last_name=userinfo.get("family_name"),
                picture_url=userinfo.get("picture"),
            )
            return await self._complete_login(profile)
        except APIError as e:
            self._capture_failure(AuthProvider.GOOGLE, e)
            raise
        finally:
            cookies.discard(self.settings.oauth_state_cookie_name)

    async def handle_apple_callback(
        self,
        cookies: OAuthCookieSession,
        code: str,
        id_token: str,
        state: str,
        user_json: str = "",
    ) -> tuple[User, TokenResponse]:
        """
        Complete a Sign in with Apple.

        ``code`` is accepted for completeness; identity comes from ``id_token``.

        Raises:
            StateMismatchError: Missing or different state cookie
            BadRequestError: Nonce cookie missing
            UnauthorizedError: ``id_token`` failed verification (incl. nonce mismatch)
            KeySetUnavailableError: Apple's keys could not be fetched
            MissingSubjectError: Token has no ``sub``
            ConflictError: Email already bound to another identity
        """
        try:
            self._check_state(cookies, state, AuthProvider.APPLE)

            stored_nonce = cookies.pop(self.settings.oauth_nonce_cookie_name)
            if not stored_nonce:
                logger.error("Stored OAuth nonce missing for Apple callback")
                raise BadRequestError("Invalid session or nonce missing.")

            claims = await self.apple_verifier.verify_apple_id_token(
                id_token, self.settings.apple_client_id, stored_nonce
            )
            logger.info("Apple ID token successfully validated", extra={"sub": claims.sub})

            first_name = last_name = ""
            email = claims.email
            if user_json:
                form = self._parse_apple_user(user_json)
                if form is not None:
                    first_name = form.name.firstName
                    last_name = form.name.lastName
                    if not email and form.email:
                        email = form.email

            profile = self._build_profile(
                AuthProvider.APPLE,
                subject=claims.sub,
                email=email,
                email_verified=claims.email_verified,
                first_name=first_name,
                last_name=last_name,
            )
            return await self._complete_login(profile)
        except APIError as e:
            self._capture_failure(AuthProvider.APPLE, e)
            raise
        finally:
            cookies.discard(
                self.settings.oauth_state_cookie_name, self.settings.oauth_nonce_cookie_name
            )

    # Helpers

    def _check_state(
        self, cookies: OAuthCookieSession, state: str, provider: AuthProvider
    ) -> None:
        stored_state = cookies.pop(self.settings.oauth_state_cookie_name)
        if not stored_state:
            logger.error(f"Stored OAuth state missing for {provider.value} callback")
            raise StateMismatchError("Invalid session or state mismatch.")
        if not hmac.compare_digest(stored_state.encode(), (state or "").encode()):
            logger.error(f"{provider.value} OAuth state mismatch")
            raise StateMismatchError()

    async def _exchange_google_code(self, code: str) -> str:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": self.settings.google_redirect_uri,
        }
        try:
            response = await self._http_client.post(
                self.google_token_url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Google token request failed: {type(e).__name__}", exc_info=True)
            raise CodeExchangeFailedError("Could not exchange Google auth code.") from e

        if not response.is_success:
            logger.error(
                "Failed to exchange Google auth code for token",
                extra={"status": response.status_code},
            )
            raise CodeExchangeFailedError(
                f"Google token endpoint returned status {response.status_code}."
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise CodeExchangeFailedError("Received invalid token from Google.") from e

        if not self._is_usable_token(token_data):
            logger.error("Google token received is invalid")
            raise CodeExchangeFailedError("Received invalid token from Google.")
        return token_data["access_token"]

    @staticmethod
    def _is_usable_token(token_data: Any) -> bool:
        if not isinstance(token_data, dict) or not token_data.get("access_token"):
            return False
        token_type = token_data.get("token_type")
        if token_type and str(token_type).lower() != "bearer":
            return False
        expires_in = token_data.get("expires_in")
        if expires_in is not None:
            try:
                return int(expires_in) > 0
            except (TypeError, ValueError):
                return False
        return True

    async def _fetch_google_userinfo(self, access_token: str) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                self.google_userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch user info from Google: {type(e).__name__}", exc_info=True)
            raise ProfileFetchFailedError("Could not fetch user info from Google.") from e

        if response.status_code != 200:
            logger.error(
                "Google user info request failed",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            raise ProfileFetchFailedError(
                f"Google returned status {response.status_code} for user info."
            )

        try:
            userinfo = response.json()
        except ValueError as e:
            logger.error(f"Failed to decode Google user info: {e}")
            raise InternalError("Could not process Google user information.") from e
        if not isinstance(userinfo, dict):
            raise InternalError("Could not process Google user information.")
        return userinfo

    @staticmethod
    def _parse_apple_user(user_json: str) -> AppleUserForm | None:
        try:
            return AppleUserForm.model_validate_json(user_json)
        except ValidationError as e:
            logger.warning(f"Failed to parse Apple user form data JSON: {e.error_count()} errors")
            return None

    @staticmethod
    def _build_profile(
        provider: AuthProvider,
        subject: Any,
        email: Any,
        email_verified: bool,
        first_name: Any = "",
        last_name: Any = "",
        picture_url: Any = "",
    ) -> ExternalProfile:
        if not subject or not isinstance(subject, str):
            logger.error(f"{provider.value} user subject (provider ID) is missing")
            raise MissingSubjectError(f"Missing user identifier from {provider.value}.")

        return ExternalProfile(
            provider=provider,
            provider_subject_id=subject,
            email=normalize_email(email if isinstance(email, str) else ""),
            email_verified=email_verified,
            first_name=first_name if isinstance(first_name, str) else "",
            last_name=last_name if isinstance(last_name, str) else "",
            picture_url=picture_url if isinstance(picture_url, str) else "",
        )

    async def _complete_login(self, profile: ExternalProfile) -> tuple[User, TokenResponse]:
        user, was_created = await self.reconciler.reconcile(profile)
        tokens = self.token_service.issue_token_pair(user)

        logger.info(
            f"{profile.provider.value} OAuth login successful",
            extra={"user_id": str(user.id), "email": user.email, "was_created": was_created},
        )
        self.analytics.capture(
            distinct_id=str(user.id),
            event="oauth_login_succeeded",
            properties={"provider": profile.provider.value, "was_created": was_created},
        )
        return user, tokens

    def _capture_failure(self, provider: AuthProvider, error: APIError) -> None:
        self.analytics.capture(
            distinct_id="anonymous",
            event="oauth_login_failed",
            properties={"provider": provider.value, "error": error.code},
        )
