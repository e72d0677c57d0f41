"""Admin audit logging."""

import logging
from enum import Enum
from typing import Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .security import get_client_ip
from ..db.repository import AuditRepository

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    USER_CREDITS_ADJUSTED = "user_credits_adjusted"
    ORG_CREDITS_ADJUSTED = "org_credits_adjusted"
    MODEL_CREATED = "model_created"
    MODEL_UPDATED = "model_updated"
    MODEL_DEACTIVATED = "model_deactivated"
    SETTING_UPDATED = "setting_updated"
    BUDGET_UPDATED = "budget_updated"
    ALERT_ACKNOWLEDGED = "alert_acknowledged"


async def log_admin_action(
    db: AsyncSession,
    admin_id: str,
    action: AuditAction,
    request: Optional[Request] = None,
    target_user_id: Optional[str] = None,
    target_organization_id: Optional[str] = None,
    details: Optional[dict] = None,
) -> None:
    """Record an admin action. Failures are logged, never raised."""
    try:
        await AuditRepository(db).create(
            admin_id=admin_id,
            action=action.value,
            target_user_id=target_user_id,
            target_organization_id=target_organization_id,
            details=details,
            ip_address=get_client_ip(request) if request else None,
            user_agent=request.headers.get("user-agent") if request else None,
        )
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to write audit log for {action.value} by {admin_id}: {e}")
