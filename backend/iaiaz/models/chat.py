"""Pydantic models for chat and conversations."""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

MAX_TITLE_LENGTH = 200
MAX_MESSAGE_LENGTH = 100_000  # characters


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Request body for a chat turn."""
    message: str = Field(..., max_length=MAX_MESSAGE_LENGTH)
    model: str = Field(..., description="Catalogue model id")
    conversation_id: Optional[str] = Field(default=None, description="Continue an existing conversation")
    messages: Optional[list[ChatMessage]] = Field(
        default=None,
        description="Earlier turns, used when no conversation_id is given",
    )


class CostEstimateRequest(BaseModel):
    """Text typed so far, priced before it is sent."""
    text: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    model: str


class CostEstimateResponse(BaseModel):
    model: str
    input_tokens: int
    output_tokens: int
    estimated_cost: float
    default_pricing: bool = Field(..., description="True when the model is unknown and default prices were used")


class RateLimitInfo(BaseModel):
    tier: str
    limit: int
    remaining: int
    reset_at: datetime


class ChatResponse(BaseModel):
    content: str
    model: str
    conversation_id: str
    tokens_input: int
    tokens_output: int
    cost: float = Field(..., description="Charged amount in EUR")
    co2_grams: float
    credit_source: Optional[str] = None
    remaining_balance: Optional[float] = None
    rate_limit: RateLimitInfo


class MessageResponse(BaseModel):
    id: str
    role: str
    content: str
    model: Optional[str] = None
    tokens_input: int = 0
    tokens_output: int = 0
    cost: float = 0.0
    created_at: datetime


class ConversationResponse(BaseModel):
    id: str
    title: str
    model: str
    created_at: datetime
    updated_at: datetime
    messages: Optional[list[MessageResponse]] = None


class ConversationRename(BaseModel):
    title: str = Field(..., min_length=1, max_length=MAX_TITLE_LENGTH)
