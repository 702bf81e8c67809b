"""
Auth utilities for the StoryTime API.

Validates Supabase-issued JWTs and extracts the caller's identity.
There is no fallback: a request without a verifiable Bearer token is
rejected with 401.
"""
from dataclasses import dataclass
from typing import Optional
import logging

import jwt
from fastapi import Request

from storytime.core.errors import AuthenticationError

logger = logging.getLogger("storytime")


@dataclass(frozen=True)
class AuthenticatedUser:
    """Verified caller identity."""
    user_id: str
    email: Optional[str] = None


def verify_supabase_jwt(token: str, secret: Optional[str], audience: Optional[str] = "authenticated") -> AuthenticatedUser:
    """
    Verify a Supabase access token and extract the user.

    Args:
        token: JWT from Authorization header (Bearer {token})
        secret: Project JWT secret (HS256)
        audience: Expected `aud` claim

    Returns:
        AuthenticatedUser built from the 'sub' and 'email' claims

    Raises:
        AuthenticationError: Invalid, expired or unverifiable token
    """
    if not secret:
        logger.error("SUPABASE_JWT_SECRET not configured; rejecting authenticated request")
        raise AuthenticationError("Unauthorized: authentication is not configured.")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(audience)},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Unauthorized: token expired.")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Unauthorized: invalid token.")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Unauthorized: token has no subject.")

    return AuthenticatedUser(user_id=user_id, email=payload.get("email"))


async def get_current_user(request: Request) -> AuthenticatedUser:
    """
    FastAPI dependency: the verified user behind the request.

    Raises:
        AuthenticationError 401: Missing or invalid Bearer token
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Unauthorized: User not authenticated.")

    settings_obj = request.app.state.settings
    return verify_supabase_jwt(
        auth_header[7:],
        settings_obj.SUPABASE_JWT_SECRET,
        settings_obj.SUPABASE_JWT_AUDIENCE,
    )
