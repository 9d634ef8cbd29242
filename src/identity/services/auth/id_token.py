"""Verification of provider-signed identity tokens against a cached JWKS."""

import hmac
import logging
import time
from typing import Any

from jose import jws, jwt
from jose.exceptions import ExpiredSignatureError, JWSError, JWTClaimsError, JWTError
from pydantic import BaseModel, ConfigDict, field_validator

from src.identity.services.auth.exceptions import (
    ClaimsInvalidError,
    InvalidSignatureError,
    MalformedTokenError,
    NonceMismatchError,
    UnknownSigningKeyError,
)
from src.identity.services.auth.jwks import ALLOWED_ALGORITHMS, JWKSCache, SigningKey

logger = logging.getLogger(__name__)

APPLE_ISSUER = "https://appleid.apple.com"


def parse_claim_bool(value: Any) -> bool:
    """Normalize a provider boolean claim that may arrive as ``"true"``/``"false"``."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class IdentityTokenVerifier:
    """
    Verifies compact-serialized identity tokens signed by an external provider.

    Only asymmetric RSA and EC algorithms are accepted. The key is selected by
    the header ``kid`` and must declare the same algorithm as the header, so a
    token cannot pick a weaker algorithm than the key was published for.

    Attributes:
        jwks_cache: Key cache for the provider's signing keys
        issuer: Expected ``iss`` claim
        leeway: Clock skew tolerance in seconds (default: 60)
    """

    def __init__(self, jwks_cache: JWKSCache, issuer: str, leeway: int = 60):
        self.jwks_cache = jwks_cache
        self.issuer = issuer
        self.leeway = leeway

    async def verify_identity_token(
        self,
        token: str,
        expected_audience: str,
        expected_nonce: str | None,
    ) -> dict[str, Any]:
        """
        Verify an identity token and return its claims.

        Performs the following validations:
        1. Parse the header without verification and extract ``kid``
        2. Look up the signing key (one forced refresh on unknown ``kid``)
        3. Verify the signature with the key's declared algorithm
        4. Validate issuer, audience, ``iat`` and ``exp`` with leeway
        5. Compare ``nonce`` with the session nonce (skipped when
           ``expected_nonce`` is None)

        Args:
            token: Compact JWS string
            expected_audience: Client ID the token must be issued to
            expected_nonce: Nonce bound to the login session

        Returns:
            Full claim set, including provider extension claims

        Raises:
            MalformedTokenError: Unparseable token or missing ``kid``
            UnknownSigningKeyError: ``kid`` not in the key set
            KeySetUnavailableError: Key set could not be fetched
            InvalidSignatureError: Signature or algorithm check failed
            ClaimsInvalidError: Issuer, audience or validity window mismatch
            NonceMismatchError: Nonce differs from the session nonce
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            logger.warning(f"Identity token header could not be parsed: {e}")
            raise MalformedTokenError("Token could not be parsed.") from e

        kid = header.get("kid")
        if not kid:
            raise MalformedTokenError("Token header missing 'kid' (key ID).")

        signing_key = await self._find_signing_key(kid)
        self._verify_signature(token, header, signing_key)
        claims = self._validate_claims(token, signing_key, expected_audience)

        if expected_nonce is not None:
            token_nonce = claims.get("nonce")
            if not isinstance(token_nonce, str) or not hmac.compare_digest(
                token_nonce.encode(), expected_nonce.encode()
            ):
                logger.warning(
                    "Identity token nonce mismatch",
                    extra={"error_type": "nonce_mismatch", "kid": kid, "sub": claims.get("sub")},
                )
                raise NonceMismatchError("Token nonce does not match the login session.")

        logger.debug(
            "Identity token verified successfully",
            extra={"sub": claims.get("sub"), "kid": kid, "iss": self.issuer},
        )
        return claims

    async def _find_signing_key(self, kid: str) -> SigningKey:
        key_set = await self.jwks_cache.get_keys()
        signing_key = key_set.get(kid)
        if signing_key is None:
            logger.warning(
                f"Key ID '{kid}' not found in cache, refreshing JWKS",
                extra={"kid": kid, "cached_kids": list(key_set.keys)},
            )
            key_set = await self.jwks_cache.get_keys(force_refresh=True)
            signing_key = key_set.get(kid)

        if signing_key is None:
            raise UnknownSigningKeyError(f"Key ID '{kid}' not found in the provider key set.")
        return signing_key

    def _verify_signature(self, token: str, header: dict[str, Any], signing_key: SigningKey) -> None:
        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            raise InvalidSignatureError(f"Signing algorithm {alg!r} is not accepted.")
        if alg != signing_key.algorithm:
            raise InvalidSignatureError(
                f"Token algorithm {alg} does not match key algorithm {signing_key.algorithm}."
            )

        try:
            jws.verify(token, signing_key.key, algorithms=[signing_key.algorithm])
        except JWSError as e:
            logger.warning(
                f"Identity token signature verification failed: {e}",
                extra={"error_type": "invalid_signature", "kid": signing_key.kid},
            )
            raise InvalidSignatureError("Token signature verification failed.") from e

    def _validate_claims(
        self, token: str, signing_key: SigningKey, expected_audience: str
    ) -> dict[str, Any]:
        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=[signing_key.algorithm],
                audience=expected_audience,
                issuer=self.issuer,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iat": True,
                    "verify_aud": True,
                    "verify_iss": True,
                    "verify_at_hash": False,
                    "require_aud": True,
                    "require_iss": True,
                    "require_exp": True,
                    "require_iat": True,
                    "leeway": self.leeway,
                },
            )
        except ExpiredSignatureError as e:
            raise ClaimsInvalidError("Token has expired.") from e
        except JWTClaimsError as e:
            raise ClaimsInvalidError(f"Token claims rejected: {e}") from e
        except JWTError as e:
            raise ClaimsInvalidError(f"Token claims could not be validated: {e}") from e

        if claims["iat"] > time.time() + self.leeway:
            raise ClaimsInvalidError("Token was issued in the future.")
        return claims


class AppleIDTokenClaims(BaseModel):
    """Verified claims of a Sign in with Apple identity token."""

    model_config = ConfigDict(extra="allow")

    sub: str = ""
    email: str = ""
    email_verified: bool = False
    is_private_email: bool = False
    nonce: str = ""
    aud: str | list[str] = ""
    iss: str = ""
    iat: int = 0
    exp: int = 0
    auth_time: int | None = None

    @field_validator("email_verified", "is_private_email", mode="before")
    @classmethod
    def _string_bool(cls, value: Any) -> bool:
        return parse_claim_bool(value)

    @field_validator("email", mode="before")
    @classmethod
    def _empty_email(cls, value: Any) -> str:
        return value or ""


class AppleIDTokenVerifier(IdentityTokenVerifier):
    """Identity token verifier bound to Apple's issuer."""

    def __init__(self, jwks_cache: JWKSCache, leeway: int = 60):
        super().__init__(jwks_cache, issuer=APPLE_ISSUER, leeway=leeway)

    async def verify_apple_id_token(
        self, token: str, client_id: str, expected_nonce: str
    ) -> AppleIDTokenClaims:
        """
        Verify an Apple ``id_token`` and normalize its claims.

        Apple encodes ``email_verified`` and ``is_private_email`` as strings;
        they are returned as booleans.
        """
        claims = await self.verify_identity_token(token, client_id, expected_nonce)
        return AppleIDTokenClaims.model_validate(claims)
