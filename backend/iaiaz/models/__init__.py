"""Request and response models for the iaiaz API."""

from .chat import ChatRequest, ChatResponse, ConversationResponse, ConversationRename
from .credits import (
    CheckoutRequest,
    CreditsResponse,
    CreditTransaction,
    OrgCheckoutRequest,
    PreferenceUpdate,
    TransferRequest,
)

__all__ = [
    "ChatRequest",
    "ChatResponse",
    "ConversationResponse",
    "ConversationRename",
    "CheckoutRequest",
    "CreditsResponse",
    "CreditTransaction",
    "OrgCheckoutRequest",
    "PreferenceUpdate",
    "TransferRequest",
]
