"""
Authentication utilities: bearer token verification
"""

import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import settings

# Supabase access tokens are HS256-signed with the project's JWT secret
ALGORITHM = "HS256"


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token part of an `Authorization: Bearer <token>` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def decode_jwt(token: str) -> Optional[dict]:
    """
    Verify a token's signature, expiry and audience.
    Returns the claims, or None if the token is invalid or expired.
    """
    if not settings.supabase_jwt_secret:
        raise ValueError("SUPABASE_JWT_SECRET is not set. Cannot verify tokens.")

    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[ALGORITHM],
            audience=settings.jwt_audience,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def create_jwt(user_id: str, email: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    """
    Mint a token shaped like the identity provider's access tokens.
    Used by tests and local tooling; production tokens come from the provider.
    """
    if not settings.supabase_jwt_secret:
        raise ValueError("SUPABASE_JWT_SECRET is not set. Cannot create JWT token.")

    payload = {
        "sub": user_id,
        "email": email,
        "aud": settings.jwt_audience,
        "role": "authenticated",
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    return jwt.encode(payload, settings.supabase_jwt_secret, algorithm=ALGORITHM)
