"""
Authentication for REST requests and socket handshakes.

Tokens are issued by the user service; this service only verifies them.
"""

from fastapi import Header, HTTPException, Security
from fastapi.security import APIKeyHeader
from jose import JWTError, jwt
from typing import Optional
import logging

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


class AuthUser:
    """Authenticated user information"""
    def __init__(self, user_id: str, name: Optional[str] = None):
        self.user_id = user_id
        self.name = name


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be verified"""


def decode_token(token: str) -> AuthUser:
    """
    Decode and verify a JWT.

    Accepts either a standard `sub` claim or the `userId` claim the user
    service puts in mobile-client tokens.

    Raises:
        InvalidTokenError: If the token is missing, malformed or expired
    """
    # SECURITY: JWT_SECRET must be configured - fail closed, never open
    if not settings.JWT_SECRET:
        logger.critical("JWT_SECRET not configured. Rejecting all tokens.")
        raise InvalidTokenError("Authentication system unavailable")

    if not token:
        raise InvalidTokenError("Missing token")

    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
    except JWTError as e:
        raise InvalidTokenError(f"Invalid or expired token: {str(e)}")

    user_id = payload.get("sub") or payload.get("userId")
    if not user_id:
        raise InvalidTokenError("Invalid token payload")

    return AuthUser(user_id=str(user_id), name=payload.get("name"))


async def verify_token(authorization: Optional[str] = Header(None)) -> AuthUser:
    """
    Verify JWT token from Authorization header.

    Args:
        authorization: Authorization header (Bearer <token>)

    Returns:
        AuthUser with user information

    Raises:
        HTTPException: If token is invalid or missing
    """
    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization header"
        )

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(
            status_code=401,
            detail="Invalid authorization header format"
        )

    if scheme.lower() != "bearer":
        raise HTTPException(
            status_code=401,
            detail="Invalid authentication scheme. Use Bearer token."
        )

    try:
        return decode_token(token)
    except InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=str(e))


api_key_header = APIKeyHeader(name="X-Internal-Api-Key", auto_error=False)


def verify_internal_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """
    Checks the internal API key used by the task/offer service.
    """
    if settings.INTERNAL_API_KEY and api_key == settings.INTERNAL_API_KEY:
        return api_key
    raise HTTPException(
        status_code=401,
        detail="Invalid or missing Internal API Key",
    )
