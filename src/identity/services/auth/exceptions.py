"""Error taxonomy for authentication, identity verification and token issuance.

Every error raised to callers is an ``APIError`` subclass that carries its
transport status and a stable machine-readable ``code``. Handlers translate
them to HTTP responses 1:1 and never invent new classifications.
"""

from typing import Any


class APIError(Exception):
    """Base class for all classified errors."""

    status_code: int = 500
    code: str = "INTERNAL_SERVER_ERROR"
    message: str = "An unexpected error occurred on the server."

    def __init__(
        self,
        details: Any = None,
        *,
        message: str | None = None,
        code: str | None = None,
    ) -> None:
        self.details = details
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(str(details) if details is not None else self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render the structured error body ``{code, message, details}``."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


# Error kinds


class BadRequestError(APIError):
    """Missing or malformed request parameters."""

    status_code = 400
    code = "BAD_REQUEST"
    message = "The request is invalid."


class UnauthorizedError(APIError):
    """Authentication failed or was not provided."""

    status_code = 401
    code = "UNAUTHORIZED"
    message = "Authentication is required and has failed or has not yet been provided."


class ConflictError(APIError):
    """Email or provider identity already bound elsewhere."""

    status_code = 409
    code = "CONFLICT"
    message = "A conflict occurred with the current state of the resource."


class ServiceUnavailableError(APIError):
    """An upstream provider call failed or timed out."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    message = "The server is currently unable to handle the request."


class InternalError(APIError):
    """Unexpected failure (signing, persistence unrelated to uniqueness)."""

    status_code = 500
    code = "INTERNAL_SERVER_ERROR"
    message = "An unexpected error occurred on the server."


# OAuth flow


class StateMismatchError(BadRequestError):
    """Callback state is missing or differs from the stored state (CSRF)."""

    code = "STATE_MISMATCH"
    message = "OAuth state mismatch. Possible CSRF attack."


class MissingSubjectError(BadRequestError):
    """Provider profile carries no subject identifier."""

    code = "MISSING_SUBJECT"
    message = "Missing user identifier from provider."


class CodeExchangeFailedError(ServiceUnavailableError):
    """Authorization code could not be exchanged for an access token."""

    code = "CODE_EXCHANGE_FAILED"
    message = "Could not exchange the authorization code."


class ProfileFetchFailedError(ServiceUnavailableError):
    """Provider userinfo endpoint did not return a profile."""

    code = "PROFILE_FETCH_FAILED"
    message = "Could not fetch user info from the provider."


# Identity token verification


class KeySetUnavailableError(ServiceUnavailableError):
    """Signing key set could not be fetched (provider outage)."""

    code = "KEY_SET_UNAVAILABLE"
    message = "Identity provider signing keys are unavailable."


class MalformedTokenError(UnauthorizedError):
    """Identity token could not be parsed or has no key identifier."""

    code = "MALFORMED_TOKEN"
    message = "Identity token is malformed."


class UnknownSigningKeyError(UnauthorizedError):
    """Token names a key identifier absent from the key set (likely rotation)."""

    code = "UNKNOWN_SIGNING_KEY"
    message = "Identity token was signed with an unknown key."


class InvalidSignatureError(UnauthorizedError):
    """Token signature does not verify against the matched key."""

    code = "INVALID_SIGNATURE"
    message = "Identity token signature is invalid."


class ClaimsInvalidError(UnauthorizedError):
    """Issuer, audience or validity window check failed."""

    code = "CLAIMS_INVALID"
    message = "Identity token claims are invalid."


class NonceMismatchError(UnauthorizedError):
    """Token nonce differs from the nonce bound to the login session."""

    code = "NONCE_MISMATCH"
    message = "Identity token nonce mismatch."


# Reconciliation and session tokens


class ProviderConflictError(ConflictError):
    """Email is already owned by a different external identity."""

    code = "PROVIDER_CONFLICT"
    message = "This email is already associated with a different sign-in method."


class TokenInvalidError(UnauthorizedError):
    """Session token is expired, tampered with or malformed."""

    code = "TOKEN_INVALID"
    message = "Invalid or expired token."


class UserNotFoundError(Exception):
    """Raised by the user store when a lookup matches no record."""

    pass
