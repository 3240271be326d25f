"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.

Access checks produce a tagged decision (Authorized | Unauthenticated |
Forbidden) that is evaluated once per request and mapped to 200/401/403.
"""

import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole, UserStatus
from shared.utils.dates import as_utc, utcnow
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)

STAFF_ROLES = (UserRole.ADMIN, UserRole.SUPPORT, UserRole.MODERATOR)


# ── Decisions ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Authorized:
    user: User


@dataclass(frozen=True)
class Unauthenticated:
    reason: str = "Authentication required"


@dataclass(frozen=True)
class Forbidden:
    role: Optional[str]
    reason: str = "Insufficient permissions"


AuthDecision = Union[Authorized, Unauthenticated, Forbidden]


def is_suspended(user: User) -> bool:
    if user.status == UserStatus.SUSPENDED:
        return True
    return user.banned_until is not None and as_utc(user.banned_until) > utcnow()


def authorize(user: Optional[User], allowed_roles: Iterable[UserRole] = ()) -> AuthDecision:
    """
    Decide access for an optional user against a role allowlist.
    An empty allowlist admits any signed-in, non-suspended user.
    """
    if user is None:
        return Unauthenticated()
    if is_suspended(user):
        return Forbidden(role=UserRole(user.role).value, reason="User account is suspended")
    roles = tuple(allowed_roles)
    if roles and UserRole(user.role) not in roles:
        return Forbidden(
            role=UserRole(user.role).value,
            reason=f"Required role: {[r.value for r in roles]}",
        )
    return Authorized(user)


def enforce(decision: AuthDecision) -> User:
    """Map a decision onto the HTTP response."""
    if isinstance(decision, Authorized):
        return decision.user
    if isinstance(decision, Unauthenticated):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=decision.reason,
            headers={"WWW-Authenticate": "Bearer"},
        )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.reason)


# ── Token → User ──────────────────────────────────────────────

async def _resolve_user(
    credentials: Optional[HTTPAuthorizationCredentials],
    db: AsyncSession,
    redis,
) -> Union[User, Unauthenticated]:
    if not credentials:
        return Unauthenticated()

    try:
        payload = verify_access_token(credentials.credentials)
        user_id = uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        return Unauthenticated("Invalid or expired token")

    # Revoked on logout
    jti = payload.get("jti")
    if jti and await RedisCache(redis).is_token_revoked(jti):
        return Unauthenticated("Token has been revoked")

    user = await db.scalar(select(User).where(User.id == user_id))
    if not user:
        return Unauthenticated("User not found")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> User:
    """Signed-in user of any role; 401 without a valid token, 403 when suspended."""
    resolved = await _resolve_user(credentials, db, redis)
    if isinstance(resolved, Unauthenticated):
        return enforce(resolved)
    return enforce(authorize(resolved))


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
) -> Optional[User]:
    """Returns current user if authenticated, None otherwise. For public endpoints."""
    resolved = await _resolve_user(credentials, db, redis)
    return None if isinstance(resolved, Unauthenticated) else resolved


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        user: Optional[User] = Depends(get_optional_user),
    ) -> User:
        return enforce(authorize(user, self.roles))


def is_owner_or_admin(user: User, owner_id) -> bool:
    return user.role == UserRole.ADMIN or str(user.id) == str(owner_id)


# Convenience role dependencies
require_traveler = RoleRequired(UserRole.TRAVELER, UserRole.ADMIN)
require_guide = RoleRequired(UserRole.GUIDE, UserRole.ADMIN)
require_staff = RoleRequired(*STAFF_ROLES)
require_admin = RoleRequired(UserRole.ADMIN)
