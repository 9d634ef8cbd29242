"""Cryptographically secure random values for OAuth state and nonce."""

import logging
import secrets

from src.identity.services.auth.exceptions import InternalError

logger = logging.getLogger(__name__)


def generate_random_token(byte_length: int = 32) -> str:
    """
    Generate a URL-safe random string from the OS CSPRNG.

    Args:
        byte_length: Bytes of entropy; the encoded string is longer

    Returns:
        URL-safe base64 string without padding

    Raises:
        ValueError: If byte_length is not positive
        InternalError: If the entropy source fails
    """
    if byte_length <= 0:
        raise ValueError("byte_length must be positive")

    try:
        return secrets.token_urlsafe(byte_length)
    except (OSError, NotImplementedError) as e:
        logger.critical(f"Entropy source failure: {e}", exc_info=True)
        raise InternalError("Could not generate a secure random value.") from e
