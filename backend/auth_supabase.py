"""
Supabase authentication module
Token verification, identity lookup and the dashboard access gate
"""
import logging
from enum import Enum
from typing import Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from supabase import AuthApiError

from backend.config import get_settings
from backend.db_models import Profile
from backend.db_supabase import get_supabase_admin

logger = logging.getLogger(__name__)

# HTTP Bearer token
security = HTTPBearer()


class User(BaseModel):
    id: str
    email: str = ""
    email_verified: bool = False
    created_at: Optional[str] = None


class AccessDecision(str, Enum):
    """Where the dashboard guard sends the user"""
    GRANTED = "granted"
    VERIFY_EMAIL = "verify_email"
    SUBSCRIBE = "subscribe"


def _user_from_payload(user_data: dict) -> User:
    return User(
        id=user_data["id"],
        email=user_data.get("email") or "",
        email_verified=bool(user_data.get("email_confirmed_at")),
        created_at=user_data.get("created_at"),
    )


# ========== Authentication functions ==========

async def verify_token(token: str) -> User:
    """Verify token and return user information

    Use Supabase REST API to directly verify token
    """
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_anon_key:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Supabase configuration not set",
        )

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                f"{settings.supabase_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": settings.supabase_anon_key,
                },
            )
    except httpx.HTTPError as e:
        logger.error("❌ HTTP request error while verifying token: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token verification failed: Unable to connect to authentication service",
        )

    if response.status_code != 200:
        logger.warning("❌ Supabase auth returned status code %s", response.status_code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token verification failed: Invalid token or token expired",
        )

    user_data = response.json()
    if not user_data or not user_data.get("id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token verification failed: User does not exist",
        )
    return _user_from_payload(user_data)


async def get_auth_user(user_id: str) -> Optional[User]:
    """Look a user up by id with the admin API, None when unknown"""
    supabase = get_supabase_admin()
    try:
        response = supabase.auth.admin.get_user_by_id(user_id)
    except AuthApiError as e:
        # Raised for unknown ids and malformed uuids alike
        logger.info("🔍 Supabase has no user %s: %s", user_id, e)
        return None
    user = getattr(response, "user", None)
    if user is None:
        return None
    return User(
        id=user.id,
        email=user.email or "",
        email_verified=bool(getattr(user, "email_confirmed_at", None)),
        created_at=str(user.created_at) if getattr(user, "created_at", None) else None,
    )


# ========== Dependencies: Get current user ==========

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """Get current logged in user (dependency)"""
    return await verify_token(credentials.credentials)


async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    """Get current active user"""
    return current_user


def require_same_user(current_user: User, uid: str) -> None:
    """Callers may only act on their own profile"""
    if current_user.id != uid:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# ========== Dashboard guard ==========

def evaluate_access(user: User, profile: Optional[Profile], verification_exceptions: tuple[str, ...] = ()) -> AccessDecision:
    """Decide whether the user may open the dashboard

    Unverified emails go to email verification (except listed addresses), users
    without an active subscription go to the subscribe page.
    """
    if not user.email_verified and user.email.lower() not in verification_exceptions:
        return AccessDecision.VERIFY_EMAIL
    if profile is None or not profile.subscription.is_active:
        return AccessDecision.SUBSCRIBE
    return AccessDecision.GRANTED
