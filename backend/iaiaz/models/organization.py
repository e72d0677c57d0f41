"""Pydantic models for organizations, classes, invites and families."""

from datetime import date
from typing import Literal, Optional
from pydantic import BaseModel, EmailStr, Field

OrgType = Literal["school", "business", "training_center"]
MemberRole = Literal["owner", "admin", "teacher", "student"]
SupervisionMode = Literal["guided", "trusted", "adult"]


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    type: OrgType = "school"
    contact_email: Optional[EmailStr] = None


class OrganizationSettingsUpdate(BaseModel):
    """Organization-wide settings. A missing key is left unchanged."""
    allowed_models: Optional[list[str]] = None
    daily_limit_per_student: Optional[float] = Field(default=None, ge=0)
    weekly_limit_per_student: Optional[float] = Field(default=None, ge=0)
    monthly_limit_per_student: Optional[float] = Field(default=None, ge=0)


class FamilyCreate(BaseModel):
    family_name: str = Field(..., min_length=1, max_length=200)
    child_count: int
    extra_parent_count: int = 0


class MemberRoleUpdate(BaseModel):
    role: MemberRole


class AllocateRequest(BaseModel):
    member_id: str
    amount: float = Field(..., gt=0)


class ChildAllocation(BaseModel):
    child_user_id: str
    amount: float = Field(..., gt=0)


class FamilyTransferRequest(BaseModel):
    allocations: list[ChildAllocation] = Field(..., min_length=1)


class InviteCreate(BaseModel):
    email: EmailStr
    role: MemberRole = "student"
    credit_amount: float = Field(default=0.0, ge=0)
    class_id: Optional[str] = None
    birthdate: Optional[date] = Field(default=None, description="Required for family children")


class JoinRequest(BaseModel):
    token: str


class ClassCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    allowed_models: Optional[list[str]] = None


class ClassUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    allowed_models: Optional[list[str]] = None
    status: Optional[Literal["active", "closed"]] = None


class ClassAssignRequest(BaseModel):
    member_id: str
    class_id: Optional[str] = Field(default=None, description="None to unassign")


class BulkAllocateRequest(BaseModel):
    amount_each: float = Field(..., gt=0)


class ParentalControlsUpdate(BaseModel):
    supervision_mode: Optional[SupervisionMode] = None
    daily_time_limit_minutes: Optional[int] = Field(default=None, ge=0)
    daily_credit_limit: Optional[float] = Field(default=None, ge=0)
    cumulative_credits: Optional[bool] = None
    quiet_hours_start: Optional[str] = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    quiet_hours_end: Optional[str] = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class CreditRequestCreate(BaseModel):
    amount: float = Field(..., gt=0, le=100)
    reason: Optional[str] = Field(default=None, max_length=500)


class CreditRequestReview(BaseModel):
    approve: bool
