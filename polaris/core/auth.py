"""
Auth utilities for the Polaris API.

Validates HS256 session JWTs from the auth provider and extracts the
user id ('sub') and email claims. When AUTH_HEADER_FALLBACK is enabled,
X-User-Id / X-User-Email headers are trusted instead (tests, internal callers).
Routes decide what to do with an anonymous request.
"""
from dataclasses import dataclass
from typing import Optional

import jwt
import logging
from fastapi import Request

from polaris.core.config import settings
from polaris.core.errors import UnauthorizedError

logger = logging.getLogger("polaris")


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


def verify_session_jwt(token: str, secret: Optional[str] = None) -> Optional[AuthenticatedUser]:
    """
    Verify a session JWT and extract the caller.

    Args:
        token: JWT from Authorization header (Bearer {token})
        secret: Signing secret (defaults to AUTH_JWT_SECRET)

    Returns:
        AuthenticatedUser, or None if no secret is configured

    Raises:
        UnauthorizedError: Invalid or expired token
    """
    key = secret or settings.AUTH_JWT_SECRET
    if not key:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    return AuthenticatedUser(user_id=str(user_id), email=payload.get("email"))


def get_optional_user(request: Request) -> Optional[AuthenticatedUser]:
    """
    Resolve the caller from the request.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id / X-User-Email headers (only with AUTH_HEADER_FALLBACK)
    3. None (anonymous)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user = verify_session_jwt(auth_header[7:])
        if user:
            return user

    if settings.AUTH_HEADER_FALLBACK:
        user_id = request.headers.get("X-User-Id")
        if user_id:
            return AuthenticatedUser(user_id=user_id, email=request.headers.get("X-User-Email"))

    return None


def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the authenticated caller, or 401."""
    user = get_optional_user(request)
    if user is None:
        raise UnauthorizedError("Authentication required")
    return user
