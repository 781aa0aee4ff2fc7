"""
User feature routes.
"""
from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import get_db
from app.features.users.models import User, UserRole
from app.features.users.schemas import UserCreate, UserPublic, UserResponse, UserRoleUpdate, UserUpdate
from app.features.users.dependencies import get_current_user, get_current_owner_user
from app.features.permissions.dependencies import get_evaluator
from app.features.permissions.evaluator import PermissionEvaluator
from app.utils import get_logger


log = get_logger(__name__)
router = APIRouter(tags=["users"])


@router.get("/me", response_model=UserResponse)
async def get_current_user_profile(
    user: Annotated[User, Depends(get_current_user)]
):
    """Get current authenticated user's profile."""
    return user


@router.patch("/me", response_model=UserResponse)
async def update_current_user_profile(
    update_data: UserUpdate,
    user: Annotated[User, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Update current user's profile."""
    if update_data.name is not None:
        user.name = update_data.name

    await db.commit()
    await db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserPublic)
async def get_user_by_id(
    user_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    _user: Annotated[User, Depends(get_current_user)]
):
    """Get public user profile by ID."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    return user


@router.get("/", response_model=list[UserPublic])
async def list_users(
    db: Annotated[AsyncSession, Depends(get_db)],
    _user: Annotated[User, Depends(get_current_user)],
    skip: int = 0,
    limit: int = 50
):
    """List all active users (public info only)."""
    result = await db.execute(
        select(User)
        .where(User.is_active.is_(True))
        .order_by(User.name)
        .offset(skip)
        .limit(limit)
    )
    return result.scalars().all()


# Owner-only routes
@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    owner: Annotated[User, Depends(get_current_owner_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Create a console account (owner only). There can be only one OWNER."""
    user = User(email=user_data.email, name=user_data.name, role=user_data.role)
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered or an owner already exists"
        )
    await db.refresh(user)
    log.info("User %s created %s with role %s", owner.id, user.id, user.role.value)
    return user


@router.patch("/{user_id}/role", response_model=UserResponse)
async def change_user_role(
    user_id: str,
    role_update: UserRoleUpdate,
    owner: Annotated[User, Depends(get_current_owner_user)],
    db: Annotated[AsyncSession, Depends(get_db)],
    evaluator: Annotated[PermissionEvaluator, Depends(get_evaluator)]
):
    """Change a user's static role (owner only). Ownership cannot be transferred here."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if user.id == owner.id or role_update.role == UserRole.OWNER:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Owner role cannot be assigned or removed"
        )

    user.role = role_update.role
    await db.commit()
    await db.refresh(user)

    await evaluator.invalidate_user(user.id)
    log.info("Owner changed role of %s to %s", user.id, user.role.value)
    return user
