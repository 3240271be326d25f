"""
services/auth/router.py
Demo sign-in for development and review environments.
Implements: pick or create a demo user → JWT issue → Me → Logout
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import get_current_user, security
from shared.models.models import TravelerProfile, User, UserRole
from shared.schemas.schemas import (
    DemoLoginRequest,
    DemoUsersResponse,
    MessageResponse,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import create_access_token, get_token_remaining_ttl, verify_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


# ── Helpers ───────────────────────────────────────────────────

def _require_demo_auth() -> None:
    # Prototype sign-in never runs in production, whatever the flag says
    if not settings.DEMO_AUTH_ENABLED or settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Demo sign-in is disabled")


def _issue_token(user: User) -> TokenResponse:
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
    )
    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


# ── Endpoints ─────────────────────────────────────────────────

@router.get(
    "/demo-users",
    response_model=DemoUsersResponse,
    dependencies=[Depends(_require_demo_auth)],
    summary="List users available for demo sign-in",
)
async def list_demo_users(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).order_by(User.display_name.asc()))
    grouped = {UserRole.TRAVELER: [], UserRole.GUIDE: [], UserRole.ADMIN: []}
    for user in result.scalars():
        role = UserRole(user.role)
        if role in grouped:
            grouped[role].append(UserResponse.model_validate(user))

    return DemoUsersResponse(
        travelers=grouped[UserRole.TRAVELER],
        guides=grouped[UserRole.GUIDE],
        admins=grouped[UserRole.ADMIN],
    )


@router.post(
    "/demo-login",
    response_model=TokenResponse,
    dependencies=[Depends(_require_demo_auth)],
    summary="Sign in as a demo user",
)
async def demo_login(data: DemoLoginRequest, db: AsyncSession = Depends(get_db)):
    """
    With userId: sign in as that existing user.
    Without: create a fresh user with the given role and display name.
    New travelers get an empty traveler profile.
    """
    if data.user_id:
        user = await db.scalar(select(User).where(User.id == data.user_id))
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        logger.info(f"Demo login as existing user {user.id} ({user.role})")
        return _issue_token(user)

    display_name = (data.display_name or "").strip()
    if not display_name:
        raise HTTPException(status_code=400, detail="displayName is required for new users")

    role = UserRole(data.role)
    user = User(display_name=display_name, role=role)
    db.add(user)
    await db.flush()

    if role == UserRole.TRAVELER:
        db.add(TravelerProfile(uid=user.id, display_name=display_name))

    await db.commit()
    logger.info(f"Demo user created: {user.id} ({role.value})")
    return _issue_token(user)


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    current_user: User = Depends(get_current_user),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
):
    """Add the presented access token to the Redis deny-list until it expires."""
    if credentials:
        try:
            payload = verify_access_token(credentials.credentials)
        except JWTError:
            payload = {}
        jti = payload.get("jti")
        ttl = get_token_remaining_ttl(payload) if payload else 0
        if jti and ttl > 0:
            await RedisCache(redis).revoke_token(jti, ttl)

    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    """Returns the authenticated user's account."""
    return UserResponse.model_validate(current_user)
