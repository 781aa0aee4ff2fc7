"""
Pydantic schemas for user-related requests and responses.
"""
from datetime import datetime
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from app.features.users.models import UserRole


class UserBase(BaseModel):
    """Base user schema with common fields."""
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)


class UserCreate(UserBase):
    """Schema for creating a console user."""
    role: UserRole = UserRole.USER


class UserUpdate(BaseModel):
    """Schema for updating profile information."""
    name: str | None = Field(None, min_length=1, max_length=255)


class UserRoleUpdate(BaseModel):
    role: UserRole


class UserResponse(UserBase):
    """Schema for user responses."""
    id: str
    role: UserRole
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserPublic(BaseModel):
    """Public user information (limited fields)."""
    id: str
    name: str

    model_config = ConfigDict(from_attributes=True)
