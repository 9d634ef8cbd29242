"""Issuance and validation of HMAC-signed access and refresh tokens."""

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import jwt
from jose.exceptions import JWTError
from pydantic import ValidationError

from src.identity.services.auth.blocklist import TokenBlocklist
from src.identity.services.auth.exceptions import InternalError, TokenInvalidError
from src.identity.services.auth.models import TokenClaims, TokenResponse, User

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "HS256"


class TokenService:
    """
    Mints and validates session tokens.

    Access and refresh tokens share a claim shape but use distinct issuers, so
    a refresh token is rejected where an access token is expected and vice
    versa. Validation failures are deliberately indistinguishable to callers.

    Attributes:
        secret_key: Shared HMAC secret
        issuer: Access token issuer; refresh tokens use ``{issuer}_refresh``
        access_ttl: Access token lifetime
        refresh_ttl: Refresh token lifetime
        blocklist: Revocation store checked for refresh tokens
    """

    def __init__(
        self,
        secret_key: str,
        blocklist: TokenBlocklist,
        issuer: str = "identity_api",
        access_ttl: timedelta = timedelta(minutes=60),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.secret_key = secret_key
        self.blocklist = blocklist
        self.issuer = issuer
        self.refresh_issuer = f"{issuer}_refresh"
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_access_token(self, user: User) -> tuple[str, datetime]:
        """
        Sign an access token for a user.

        Returns:
            (token, expires_at)

        Raises:
            InternalError: If signing fails
        """
        return self._issue(user, self.issuer, self.access_ttl, with_jti=False)

    def issue_refresh_token(self, user: User) -> tuple[str, datetime]:
        """Sign a refresh token carrying a unique ``jti`` for revocation."""
        return self._issue(user, self.refresh_issuer, self.refresh_ttl, with_jti=True)

    def issue_token_pair(self, user: User) -> TokenResponse:
        """
        Issue an access token and, best effort, a refresh token.

        A refresh-token failure is logged and yields an empty refresh token;
        an access-token failure propagates.
        """
        access_token, expires_at = self.issue_access_token(user)

        refresh_token = ""
        try:
            refresh_token, _ = self.issue_refresh_token(user)
        except InternalError:
            logger.error(
                "Failed to generate refresh token, continuing with access token only",
                extra={"user_id": str(user.id)},
            )

        return TokenResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            token_type="Bearer",
            expires_at=expires_at,
        )

    def validate_token(self, token: str) -> TokenClaims:
        """
        Validate an access token.

        Raises:
            TokenInvalidError: On any signature, expiry, issuer or claim problem
        """
        return self._decode(token, self.issuer)

    async def parse_refresh_token(self, token: str) -> TokenClaims:
        """
        Validate a refresh token and check it has not been revoked.

        Raises:
            TokenInvalidError: If invalid, expired, or revoked
        """
        claims = self._decode(token, self.refresh_issuer)
        if not claims.jti:
            raise TokenInvalidError()
        if await self.blocklist.is_revoked(claims.jti):
            logger.warning("Revoked refresh token presented", extra={"jti": claims.jti})
            raise TokenInvalidError()
        return claims

    async def revoke_refresh_token(self, token: str) -> None:
        """Blocklist a valid refresh token until it would have expired."""
        claims = await self.parse_refresh_token(token)
        until = datetime.fromtimestamp(claims.exp, tz=timezone.utc)
        await self.blocklist.revoke(claims.jti, until)

    def _issue(
        self, user: User, issuer: str, ttl: timedelta, with_jti: bool
    ) -> tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + ttl
        claims = {
            "user_id": str(user.id),
            "email": user.email or "",
            "role": user.role,
            "iss": issuer,
            "sub": str(user.id),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        if with_jti:
            claims["jti"] = str(uuid4())

        try:
            token = jwt.encode(claims, self.secret_key, algorithm=SIGNING_ALGORITHM)
        except JWTError as e:
            logger.error(f"Failed to sign token: {e}", extra={"issuer": issuer})
            raise InternalError("Could not sign token.") from e
        return token, expires_at

    def _decode(self, token: str, issuer: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[SIGNING_ALGORITHM],
                issuer=issuer,
                options={"require_exp": True, "require_iat": True, "require_sub": True},
            )
            return TokenClaims.model_validate(payload)
        except (JWTError, ValidationError) as e:
            # Do not reveal whether the token was expired or tampered with.
            logger.info(f"Token validation failed: {type(e).__name__}")
            raise TokenInvalidError() from e
