"""Pydantic models for the admin API."""

from typing import Literal, Optional
from pydantic import BaseModel, Field


class ModelCreate(BaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=200)
    provider: Literal["anthropic", "openai", "google", "mistral"]
    input_price: float = Field(..., ge=0, description="Per million input tokens")
    output_price: float = Field(..., ge=0, description="Per million output tokens")
    description: Optional[str] = None
    category: str = "balanced"
    is_recommended: bool = False
    max_tokens: int = Field(default=4096, gt=0)
    rate_limit_tier: Optional[Literal["economy", "standard", "premium"]] = None
    capabilities: dict = Field(default_factory=dict)
    system_role: Optional[str] = None
    display_order: int = 100
    co2_per_million_tokens: float = Field(default=0.5, ge=0)


class ModelUpdate(BaseModel):
    name: Optional[str] = None
    input_price: Optional[float] = Field(default=None, ge=0)
    output_price: Optional[float] = Field(default=None, ge=0)
    description: Optional[str] = None
    category: Optional[str] = None
    is_recommended: Optional[bool] = None
    is_active: Optional[bool] = None
    max_tokens: Optional[int] = Field(default=None, gt=0)
    rate_limit_tier: Optional[Literal["economy", "standard", "premium"]] = None
    capabilities: Optional[dict] = None
    system_role: Optional[str] = None
    display_order: Optional[int] = None
    co2_per_million_tokens: Optional[float] = Field(default=None, ge=0)


class SettingUpdate(BaseModel):
    value: dict
    description: Optional[str] = None


class CreditAdjustment(BaseModel):
    """Positive amount grants, negative amount debits."""
    amount: float
    reason: str = Field(..., min_length=3, max_length=500)


class BudgetUpdate(BaseModel):
    monthly_budget_eur: Optional[float] = Field(default=None, ge=0)
    alert_threshold_50: Optional[bool] = None
    alert_threshold_75: Optional[bool] = None
    alert_threshold_90: Optional[bool] = None
    alert_threshold_100: Optional[bool] = None
    notes: Optional[str] = None
    manual_balance: Optional[float] = None
