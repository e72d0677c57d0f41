"""Pydantic models for the credit system."""

from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, Field

from ..core.credits import CreditPreference


class TransactionType(str, Enum):
    """Types of personal credit transactions."""
    INITIAL_GRANT = "initial_grant"  # New user signup
    PURCHASE = "purchase"  # Stripe credit purchase
    USAGE = "usage"  # AI usage
    REFUND = "refund"
    ADMIN_GRANT = "admin_grant"  # Manual admin adjustment
    ADMIN_DEBIT = "admin_debit"
    TRANSFER_IN = "transfer_in"  # From an organization pool
    TRANSFER_OUT = "transfer_out"  # To an organization pool
    FAMILY_ALLOCATION = "family_allocation"  # From a parent's family pool


class LimitInfo(BaseModel):
    """Usage against one per-student spending limit."""
    period: str = Field(..., description="daily, weekly or monthly")
    limit: float
    used: float
    remaining: float
    resets_at: datetime


class CreditsResponse(BaseModel):
    """Which balance the user spends from, and both balances."""
    source: str = Field(..., description="personal or organization")
    balance: float = Field(..., description="Balance of the active source (EUR)")
    effective_balance: float = Field(..., description="Spendable now, limits included (EUR)")
    preference: CreditPreference
    personal_balance: float
    org_balance: Optional[float] = None
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    member_id: Optional[str] = None
    role: Optional[str] = None
    is_trainer: bool = False
    limits: list[LimitInfo] = Field(default_factory=list)
    min_balance_warning: float = Field(default=0.5, description="Low balance threshold (EUR)")


class CreditTransaction(BaseModel):
    """A single credit transaction record."""
    id: str = Field(..., description="Transaction ID")
    amount: float = Field(..., description="EUR amount (positive=grant, negative=usage)")
    type: TransactionType = Field(..., description="Transaction type")
    description: Optional[str] = Field(default=None, description="Human-readable description")
    balance_after: float = Field(..., description="Balance after this transaction")
    created_at: datetime = Field(..., description="Transaction timestamp")


class PreferenceUpdate(BaseModel):
    """Request body for changing the credit preference."""
    preference: CreditPreference


class CheckoutRequest(BaseModel):
    """Personal credit purchase: a pack or a custom amount."""
    pack_id: Optional[str] = Field(default=None, description="starter, regular or power")
    custom_amount: Optional[int] = Field(default=None, ge=1, le=100, description="Custom amount in EUR")


class OrgCheckoutRequest(BaseModel):
    """Organization credit purchase."""
    amount: int = Field(..., ge=10, le=5000, description="Amount in EUR")


class FamilySubscriptionRequest(BaseModel):
    """Monthly family plan, priced per child."""
    child_count: int = Field(..., ge=1, le=6)


class TransferRequest(BaseModel):
    """Move credits between the personal balance and an organization."""
    direction: Literal["to_org", "to_personal"]
    amount: float = Field(..., gt=0)
