"""Authentication utilities for API endpoints."""

import secrets

from fastapi import Header, HTTPException, status

from linkharbor.config import get_settings
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)


async def verify_api_token(
    authorization: str | None = Header(default=None),
) -> None:
    """Verify the bearer token on mutating endpoints.

    When no ``LINKHARBOR_API_TOKEN`` is configured the API is open, which is
    meant for local use only.

    Args:
        authorization: The Authorization header containing the Bearer token.

    Raises:
        HTTPException: If the token is missing or does not match.
    """
    expected = get_settings().api_token
    if expected is None:
        logger.debug("No API token configured, skipping auth")
        return

    if not authorization:
        logger.warning("Missing authorization header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
        )

    if not authorization.startswith("Bearer "):
        logger.warning("Invalid authorization header format")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
        )

    token = authorization[7:]  # Remove "Bearer " prefix
    if not secrets.compare_digest(token, expected):
        logger.warning("Invalid API token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
        )
