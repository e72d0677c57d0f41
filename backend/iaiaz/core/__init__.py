"""Core business logic: pricing, credits, rate limits and analytics."""

from .config import get_settings

__all__ = [
    "get_settings",
]
