"""API handlers for sign-in, registration and session endpoints."""

import logging

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from src.identity.features.auth.schemas import (
    AuthResponse,
    ErrorResponse,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    RegisterRequest,
    UserResponse,
)
from src.identity.services.auth.dependencies import (
    AuthServices,
    get_auth_services,
    get_current_user,
)
from src.identity.services.auth.exceptions import (
    APIError,
    BadRequestError,
    InternalError,
    UnauthorizedError,
)
from src.identity.services.auth.models import TokenClaims, TokenResponse, User
from src.identity.services.auth.oauth_cookies import OAuthCookieSession
from src.identity.services.rate_limiter import (
    credentials_rate_limit,
    oauth_rate_limit,
    session_rate_limit,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/auth",
    tags=["auth"],
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)


def _auth_body(message: str, user: User, tokens: TokenResponse) -> dict:
    return AuthResponse(
        message=message, user=UserResponse.from_user(user), token=tokens
    ).model_dump(mode="json")


def _callback_error(error: Exception, cookies: OAuthCookieSession) -> JSONResponse:
    """Render a callback failure; the flow's cookies are cleared on it too."""
    if not isinstance(error, APIError):
        logger.error(f"Unexpected error in OAuth callback: {error}", exc_info=True)
        error = InternalError()
    response = JSONResponse(status_code=error.status_code, content=error.to_dict())
    return cookies.apply(response)


# Google


@router.get("/google/login", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
@oauth_rate_limit
async def google_login(
    request: Request,
    services: AuthServices = Depends(get_auth_services),
) -> RedirectResponse:
    """Redirect the browser to Google's consent screen."""
    cookies = OAuthCookieSession(request, services.settings)
    url = services.oauth_service.get_google_login_url(cookies)
    response = RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    return cookies.apply(response)


@router.get("/google/callback", response_model=AuthResponse)
@oauth_rate_limit
async def google_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    services: AuthServices = Depends(get_auth_services),
) -> Response:
    """
    Complete a Google sign-in.

    Query params mirror Google's redirect: ``code`` and ``state`` on success,
    ``error`` (and optionally ``error_description``) when the user declined.

    Raises:
        UnauthorizedError: 401 if Google reported an error
        BadRequestError: 400 if code or state is missing, or state mismatches
        ServiceUnavailableError: 503 if Google's endpoints failed
        ConflictError: 409 if the email belongs to another sign-in method
    """
    settings = services.settings
    cookies = OAuthCookieSession(request, settings)

    try:
        if error:
            logger.error(
                "Google OAuth error received",
                extra={"error": error, "description": error_description},
            )
            raise UnauthorizedError(
                error_description or error, message="Google authentication failed."
            )
        if not code or not state:
            raise BadRequestError("Missing code or state parameter.")

        user, tokens = await services.oauth_service.handle_google_callback(cookies, code, state)
    except Exception as e:
        cookies.discard(settings.oauth_state_cookie_name)
        return _callback_error(e, cookies)

    response = JSONResponse(content=_auth_body("Google login successful", user, tokens))
    return cookies.apply(response)


# Apple


@router.get("/apple/login", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
@oauth_rate_limit
async def apple_login(
    request: Request,
    services: AuthServices = Depends(get_auth_services),
) -> RedirectResponse:
    """Redirect the browser to Sign in with Apple."""
    cookies = OAuthCookieSession(request, services.settings)
    url = services.oauth_service.get_apple_login_url(cookies)
    response = RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    return cookies.apply(response)


@router.post("/apple/callback", response_model=AuthResponse)
@oauth_rate_limit
async def apple_callback(
    request: Request,
    code: str | None = Form(None),
    id_token: str | None = Form(None),
    state: str | None = Form(None),
    user: str | None = Form(None),
    error: str | None = Form(None),
    services: AuthServices = Depends(get_auth_services),
) -> Response:
    """
    Complete a Sign in with Apple (``response_mode=form_post``).

    ``user`` is the JSON blob Apple sends on the first authorization only.

    Raises:
        UnauthorizedError: 401 if Apple reported an error or the id_token
            failed verification (including nonce mismatch)
        BadRequestError: 400 if id_token or state is missing, or state mismatches
        ServiceUnavailableError: 503 if Apple's signing keys are unavailable
        ConflictError: 409 if the email belongs to another sign-in method
    """
    settings = services.settings
    cookies = OAuthCookieSession(request, settings)

    try:
        if error:
            logger.error("Apple OAuth error received", extra={"error": error})
            raise UnauthorizedError(error, message="Apple authentication failed.")
        if not id_token or not state:
            raise BadRequestError("Missing id_token or state parameter.")

        signed_in, tokens = await services.oauth_service.handle_apple_callback(
            cookies, code or "", id_token, state, user or ""
        )
    except Exception as e:
        cookies.discard(settings.oauth_state_cookie_name, settings.oauth_nonce_cookie_name)
        return _callback_error(e, cookies)

    response = JSONResponse(content=_auth_body("Apple login successful", signed_in, tokens))
    return cookies.apply(response)


# Email/password and session


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@credentials_rate_limit
async def register(
    request: Request,
    payload: RegisterRequest,
    services: AuthServices = Depends(get_auth_services),
) -> AuthResponse:
    """
    Create an email/password account and sign it in.

    Raises:
        ConflictError: 409 if the email is already registered
    """
    user, tokens = await services.account_service.register(
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )
    return AuthResponse(
        message="User registered successfully",
        user=UserResponse.from_user(user),
        token=tokens,
    )


@router.post("/login", response_model=AuthResponse)
@credentials_rate_limit
async def login(
    request: Request,
    payload: LoginRequest,
    services: AuthServices = Depends(get_auth_services),
) -> AuthResponse:
    """
    Sign in with email and password.

    Raises:
        UnauthorizedError: 401 for unknown email or wrong password
    """
    user, tokens = await services.account_service.login(payload.email, payload.password)
    return AuthResponse(
        message="Login successful", user=UserResponse.from_user(user), token=tokens
    )


@router.post("/refresh-token", response_model=TokenResponse)
@session_rate_limit
async def refresh_token(
    request: Request,
    payload: RefreshTokenRequest,
    services: AuthServices = Depends(get_auth_services),
) -> TokenResponse:
    """
    Exchange a refresh token for a new access token.

    Raises:
        UnauthorizedError: 401 if the refresh token is invalid, expired or revoked
    """
    return await services.account_service.refresh(payload.refresh_token)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
@session_rate_limit
async def logout(
    request: Request,
    payload: LogoutRequest,
    services: AuthServices = Depends(get_auth_services),
) -> Response:
    """
    Revoke a refresh token.

    Raises:
        UnauthorizedError: 401 if the refresh token is already invalid
    """
    await services.account_service.logout(payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=TokenClaims)
@session_rate_limit
async def me(
    request: Request,
    current_user: TokenClaims = Depends(get_current_user),
) -> TokenClaims:
    """
    Return the claims of the caller's access token.

    Raises:
        UnauthorizedError: 401 if the bearer token is missing, invalid or expired
    """
    return current_user
