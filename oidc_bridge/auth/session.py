"""
JWT Session Management Module
==============================

Handles creation and verification of the application session JWTs issued
after a successful OIDC login, and the FastAPI dependencies that read them
back for admin endpoints.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Header, HTTPException, Request, status
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ..config import Settings
from ..models import SessionToken, User

logger = logging.getLogger(__name__)


# =============================================================================
# Capabilities
# =============================================================================

ROLE_CAPABILITIES: Dict[str, set] = {
    "admin": {"settings:update"},
}


class JWTSessionError(Exception):
    """Base exception for JWT session errors"""


# =============================================================================
# Token Creation
# =============================================================================

def create_session_jwt(claims: Dict[str, Any], settings: Settings) -> SessionToken:
    """
    Create a session JWT with the provided claims.

    Args:
        claims: Claims to include. Must contain 'sub' and 'email'.
        settings: Settings providing secret, algorithm, issuer and expiry

    Returns:
        SessionToken with the encoded JWT and its expiry

    Raises:
        JWTSessionError: If required claims are missing
    """
    if "sub" not in claims:
        raise JWTSessionError("Missing required claim: 'sub' (subject/user ID)")
    if "email" not in claims:
        raise JWTSessionError("Missing required claim: 'email'")

    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=settings.SESSION_JWT_EXPIRY_MINUTES)
    payload = dict(claims)
    payload.update({
        "iat": now,
        "exp": expires,
        "iss": settings.JWT_ISSUER,
    })

    token = jwt.encode(payload, settings.SESSION_JWT_SECRET, algorithm=settings.SESSION_JWT_ALGORITHM)

    logger.debug(
        "Created session JWT",
        extra={
            "user_id": payload.get("sub"),
            "expires_in_minutes": settings.SESSION_JWT_EXPIRY_MINUTES,
        },
    )
    return SessionToken(token=token, expires=expires)


# =============================================================================
# Token Verification
# =============================================================================

def verify_session_jwt(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Verify and decode a session JWT.

    Returns:
        Dictionary containing the decoded claims

    Raises:
        HTTPException: 401 when the token is missing, expired or invalid
    """
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No authentication token provided",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return jwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
            options={"require": ["exp", "iat", "sub", "email"]},
        )
    except ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def extract_token_from_header(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        HTTPException: If header is missing or its format is invalid
    """
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected: 'Bearer <token>'",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return parts[1]


# =============================================================================
# Session Minters
# =============================================================================

class SessionMinter(ABC):
    """Turns a resolved local user into an application session token."""

    @abstractmethod
    def mint_token(self, user: User) -> SessionToken:
        ...

    @abstractmethod
    def verify_token(self, token: str) -> Dict[str, Any]:
        ...


class JwtSessionMinter(SessionMinter):
    def __init__(self, settings: Settings):
        self._settings = settings

    def mint_token(self, user: User) -> SessionToken:
        return create_session_jwt(
            {
                "sub": str(user.id),
                "email": user.email,
                "name": user.name,
                "roles": list(user.roles),
            },
            self._settings,
        )

    def verify_token(self, token: str) -> Dict[str, Any]:
        return verify_session_jwt(token, self._settings)


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Dict[str, Any]:
    """
    FastAPI dependency to extract and verify the session JWT from a request.

    Raises:
        HTTPException: If authentication fails
    """
    token = extract_token_from_header(authorization)
    minter: SessionMinter = request.app.state.session_minter
    return minter.verify_token(token)


def has_capability(claims: Dict[str, Any], capability: str) -> bool:
    for role in claims.get("roles") or []:
        if capability in ROLE_CAPABILITIES.get(role, set()):
            return True
    return False


def require_capability(capability: str) -> Callable:
    """
    Build a dependency that admits only users whose roles grant ``capability``.

    Usage:
        @router.put("/config")
        async def update(user: dict = Depends(require_capability("settings:update"))):
            ...
    """
    async def dependency(
        request: Request,
        authorization: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        claims = await get_current_user(request, authorization)
        if not has_capability(claims, capability):
            logger.warning(
                "Permission denied",
                extra={"user_id": claims.get("sub"), "capability": capability},
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission denied: {capability}",
            )
        return claims

    return dependency


__all__ = [
    "ROLE_CAPABILITIES",
    "JWTSessionError",
    "create_session_jwt",
    "verify_session_jwt",
    "extract_token_from_header",
    "SessionMinter",
    "JwtSessionMinter",
    "get_current_user",
    "has_capability",
    "require_capability",
]
