"""
Authentication dependencies
"""

import logging
from typing import Optional

from fastapi import Header

from auth_utils import decode_jwt, extract_bearer_token
from utils.errors import AuthenticationError

logger = logging.getLogger(__name__)


# Dependency for protected routes
async def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> dict:
    """
    Dependency function to get the current authenticated user.

    The bearer token is always signature-verified against the identity
    provider's secret; an undecodable, unsigned or expired token is a 401.

    Returns:
        {"id": <user id>, "email": <email or "">}
    """
    token = extract_bearer_token(authorization)
    if not token:
        raise AuthenticationError("Access token required")

    try:
        payload = decode_jwt(token)
    except ValueError as e:
        logger.error(f"Token verification unavailable: {e}")
        raise AuthenticationError("Authentication is not configured") from e

    if not payload:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token payload")

    return {
        "id": str(user_id),
        "email": payload.get("email") or "",
    }
