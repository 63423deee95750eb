"""
Authentication Security Middleware
Bearer JWT issuing and verification plus role guards for the HTTP API
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from config import Config
from database import get_db
from models import User, UserRole
from utils.exception_handler import NotAuthenticatedError, NotAuthorizedError

logger = logging.getLogger(__name__)


def create_access_token(user_id: int, role: Optional[str] = None, expires_minutes: Optional[int] = None) -> str:
    """Issue a signed token; ``sub`` carries the user id"""
    if not Config.JWT_SECRET:
        raise NotAuthenticatedError("Authentication is not configured")
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or Config.JWT_EXPIRE_MINUTES),
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, Config.JWT_SECRET, algorithm=Config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    if not Config.JWT_SECRET:
        raise NotAuthenticatedError("Not authorized, no token")
    try:
        return jwt.decode(token, Config.JWT_SECRET, algorithms=[Config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise NotAuthenticatedError("Not authorized, token expired")
    except jwt.InvalidTokenError:
        raise NotAuthenticatedError("Not authorized, token failed")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise NotAuthenticatedError("Not authorized, no token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise NotAuthenticatedError("Not authorized, no token")
    return token.strip()


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """FastAPI dependency resolving the active user behind the bearer token"""
    claims = decode_access_token(_bearer_token(authorization))
    try:
        user_id = int(claims.get("sub"))
    except (TypeError, ValueError):
        raise NotAuthenticatedError("Not authorized, token failed")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning(f"🔒 AUTH_REJECTED: token for unknown or inactive user {user_id}")
        raise NotAuthenticatedError("Not authorized, user not found")
    return user


def require_roles(*roles: str) -> Callable[..., User]:
    """Dependency factory: 403 unless the user holds one of ``roles``"""
    allowed = {r.value if isinstance(r, UserRole) else r for r in roles}

    def _dependency(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning(f"🚫 ROLE_DENIED: user {user.id} role {user.role} needs one of {sorted(allowed)}")
            raise NotAuthorizedError(f"User role {user.role} is not authorized to access this route")
        return user

    return _dependency


require_admin = require_roles(UserRole.ADMIN)
require_vendor = require_roles(UserRole.VENDOR, UserRole.ADMIN)
