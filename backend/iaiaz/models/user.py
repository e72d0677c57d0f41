"""Pydantic models for user profiles."""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class UserProfile(BaseModel):
    """The authenticated user's profile."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    display_name: Optional[str] = None
    birthdate: Optional[date] = None
    is_admin: bool = False
    credits_balance: float
    credit_preference: str
    created_at: datetime


class UserProfileUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    birthdate: Optional[date] = None
