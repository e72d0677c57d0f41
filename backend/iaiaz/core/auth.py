"""Authentication module for Supabase JWT verification.

This module handles:
1. JWT token verification (HS256, signed with the Supabase project secret)
2. User provisioning on first authentication, with welcome credits
3. FastAPI dependency injection for protected routes
"""

import logging
from typing import Optional
from dataclasses import dataclass

from dotenv import load_dotenv
load_dotenv()  # Load .env before reading environment variables

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .model_catalog import catalog
from ..db.database import get_db
from ..db.models import UserModel
from ..db.repository import UserRepository

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)

DEV_USER_ID = "dev_user"


@dataclass
class AuthUser:
    """Represents a verified Supabase user."""
    id: str
    email: str
    display_name: Optional[str] = None


def verify_token(token: str) -> Optional[AuthUser]:
    """
    Verify a Supabase JWT token and extract user information.

    Args:
        token: JWT token from Authorization header

    Returns:
        AuthUser if valid, None otherwise
    """
    settings = get_settings()

    if not settings.auth_enabled:
        return None

    try:
        payload = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience=settings.supabase_jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token has expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT token: {e}")
        return None

    user_id = payload.get("sub")
    if not user_id:
        logger.warning("JWT token missing 'sub' claim")
        return None

    metadata = payload.get("user_metadata") or {}
    display_name = metadata.get("display_name") or metadata.get("full_name") or metadata.get("name")

    return AuthUser(
        id=user_id,
        email=payload.get("email") or f"{user_id}@users.iaiaz.com",  # Fallback if no email
        display_name=display_name,
    )


async def get_or_create_user(
    auth_user: AuthUser,
    db: AsyncSession,
) -> UserModel:
    """
    Get existing user or create a new one with the welcome credit grant.

    Args:
        auth_user: Verified token data
        db: Database session

    Returns:
        UserModel from database
    """
    users = UserRepository(db)
    user = await users.get(auth_user.id)

    if user:
        return await users.update_profile(user, auth_user.email, auth_user.display_name)

    welcome_credits = await catalog.get_free_credits(db)
    try:
        return await users.create(
            auth_user.id,
            auth_user.email,
            auth_user.display_name,
            welcome_credits=welcome_credits,
        )
    except IntegrityError:
        # Two first requests raced to create the profile
        await db.rollback()
        user = await users.get(auth_user.id)
        if user is None:
            raise
        return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> UserModel:
    """
    FastAPI dependency to get the current authenticated user.

    Verifies the JWT token from Authorization header and returns the user.
    Creates user in database on first authentication.

    Raises:
        HTTPException 401 if not authenticated
    """
    settings = get_settings()

    if not settings.auth_enabled:
        # Development mode: authentication disabled
        logger.warning("Authentication disabled - using development user")
        user = await get_or_create_user(
            AuthUser(id=DEV_USER_ID, email="dev@example.com", display_name="Development User"),
            db,
        )
        request.state.user_id = user.id
        return user

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    auth_user = verify_token(credentials.credentials)

    if not auth_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await get_or_create_user(auth_user, db)
    request.state.user_id = user.id
    return user


async def get_admin_user(
    user: UserModel = Depends(get_current_user),
) -> UserModel:
    """
    FastAPI dependency to get the current admin user.

    Requires the user to be authenticated AND have is_admin=True.

    Raises:
        HTTPException 403 if user is not an admin
    """
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
