"""Admin API routes for the model catalogue, settings, users, organizations and budgets."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.analytics import GROUP_BY_OPTIONS, group_income
from ..core.audit import AuditAction, log_admin_action
from ..core.auth import get_admin_user
from ..core.budgets import budget_overview, evaluate_budgets
from ..core.model_catalog import catalog
from ..core.rate_limits import infer_tier
from ..core.security import limiter
from ..db.database import get_db
from ..db.models import UserModel
from ..db.repository import (
    AdminRepository,
    AuditRepository,
    CreditRepository,
    ModelRepository,
    OrganizationRepository,
    ProviderBudgetRepository,
    SettingsRepository,
    UsageRepository,
    UserRepository,
)
from ..models.admin import BudgetUpdate, CreditAdjustment, ModelCreate, ModelUpdate, SettingUpdate

router = APIRouter(prefix="/admin", tags=["admin"])
logger = logging.getLogger(__name__)


def _model_dict(model) -> dict:
    return {
        "id": model.id,
        "name": model.name,
        "provider": model.provider,
        "input_price": model.input_price,
        "output_price": model.output_price,
        "description": model.description,
        "category": model.category,
        "is_recommended": model.is_recommended,
        "is_active": model.is_active,
        "max_tokens": model.max_tokens,
        "rate_limit_tier": model.rate_limit_tier,
        "capabilities": model.capabilities or {},
        "system_role": model.system_role,
        "display_order": model.display_order,
        "co2_per_million_tokens": model.co2_per_million_tokens,
        "updated_at": model.updated_at,
    }


def _alert_dict(alert) -> dict:
    return {
        "id": alert.id,
        "provider": alert.provider,
        "threshold": alert.threshold,
        "period": alert.period,
        "spend_eur": alert.spend_eur,
        "budget_eur": alert.budget_eur,
        "acknowledged": alert.acknowledged,
        "acknowledged_by": alert.acknowledged_by,
        "acknowledged_at": alert.acknowledged_at,
        "created_at": alert.created_at,
    }


# ============ Model Catalogue ============


@router.get("/models")
async def list_models(
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Every model, active or not, with raw provider prices."""
    return {"models": [_model_dict(m) for m in await ModelRepository(db).list_all()]}


@router.post("/models")
@limiter.limit("30/minute")
async def create_model(
    request: Request,
    body: ModelCreate,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    admin_id = admin.id
    repo = ModelRepository(db)
    if await repo.get(body.id):
        raise HTTPException(status_code=400, detail=f"Model {body.id} already exists")

    fields = body.model_dump()
    fields["rate_limit_tier"] = body.rate_limit_tier or infer_tier(body.id)
    model = await repo.create(**fields)
    catalog.invalidate()

    await log_admin_action(db, admin_id, AuditAction.MODEL_CREATED, request, details={"model_id": model.id})
    return _model_dict(model)


@router.patch("/models/{model_id}")
@limiter.limit("30/minute")
async def update_model(
    request: Request,
    model_id: str,
    body: ModelUpdate,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    admin_id = admin.id
    # description and system_role may be cleared explicitly
    fields = {
        k: v for k, v in body.model_dump(exclude_unset=True).items()
        if v is not None or k in ("description", "system_role")
    }
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    model = await ModelRepository(db).update(model_id, fields)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")
    catalog.invalidate()
    result = _model_dict(model)

    await log_admin_action(
        db, admin_id, AuditAction.MODEL_UPDATED, request,
        details={"model_id": model_id, "fields": sorted(fields)},
    )
    return result


@router.delete("/models/{model_id}")
@limiter.limit("30/minute")
async def deactivate_model(
    request: Request,
    model_id: str,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Hide a model from users. Past usage keeps referring to it."""
    admin_id = admin.id
    model = await ModelRepository(db).deactivate(model_id)
    if not model:
        raise HTTPException(status_code=404, detail="Model not found")
    catalog.invalidate()

    await log_admin_action(db, admin_id, AuditAction.MODEL_DEACTIVATED, request, details={"model_id": model_id})
    return {"id": model_id, "is_active": False}


# ============ App Settings ============


@router.get("/settings")
async def list_settings(
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = await SettingsRepository(db).get_all()
    return {
        "settings": [
            {
                "key": s.key,
                "value": s.value,
                "description": s.description,
                "updated_by": s.updated_by,
                "updated_at": s.updated_at,
            }
            for s in settings
        ],
    }


@router.put("/settings/{key}")
@limiter.limit("30/minute")
async def update_setting(
    request: Request,
    key: str,
    body: SettingUpdate,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Set markup, free credits, warning threshold or default models."""
    admin_id = admin.id
    if key == "markup":
        percentage = body.value.get("percentage")
        if not isinstance(percentage, (int, float)) or percentage < 0:
            raise HTTPException(status_code=400, detail="markup.percentage must be a non-negative number")

    setting = await SettingsRepository(db).set(key, body.value, updated_by=admin_id, description=body.description)
    catalog.invalidate()
    result = {"key": setting.key, "value": setting.value}

    await log_admin_action(db, admin_id, AuditAction.SETTING_UPDATED, request, details={"key": key, "value": body.value})
    return result


# ============ User Management ============


@router.get("/users")
@limiter.limit("60/minute")
async def list_users(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    search: Optional[str] = Query(default=None),
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    List users with optional search.

    Args:
        limit: Maximum number of results (1-500)
        offset: Number of results to skip
        search: Search by email or display name
    """
    repo = AdminRepository(db)
    return {
        "users": await repo.get_all_users(limit=limit, offset=offset, search=search),
        "total": await repo.get_user_count(search=search),
        "limit": limit,
        "offset": offset,
    }


@router.get("/users/{user_id}")
@limiter.limit("60/minute")
async def get_user_details(
    request: Request,
    user_id: str,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Profile, balance, membership and recent transactions and usage."""
    user_details = await AdminRepository(db).get_user_details(user_id)
    if not user_details:
        raise HTTPException(status_code=404, detail="User not found")
    return user_details


@router.post("/users/{user_id}/credits")
@limiter.limit("30/minute")
async def adjust_user_credits(
    request: Request,
    user_id: str,
    body: CreditAdjustment,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Grant (positive amount) or debit (negative amount) a user's credits.

    Every adjustment is written to the audit log.
    """
    admin_id = admin.id
    if body.amount == 0:
        raise HTTPException(status_code=400, detail="Amount must not be zero")
    if not await UserRepository(db).get(user_id):
        raise HTTPException(status_code=404, detail="User not found")

    credits = CreditRepository(db)
    reason = body.reason.strip()
    if body.amount > 0:
        new_balance = await credits.grant(user_id, body.amount, "admin_grant", description=reason)
    else:
        new_balance = await credits.deduct(user_id, -body.amount, description=reason, transaction_type="admin_debit")
        if new_balance is None:
            raise HTTPException(status_code=400, detail="Balance too low for this debit")

    logger.info(f"Admin {admin_id} adjusted credits of user {user_id} by {body.amount:.2f} EUR")
    await log_admin_action(
        db, admin_id, AuditAction.USER_CREDITS_ADJUSTED, request,
        target_user_id=user_id,
        details={"amount": body.amount, "reason": reason, "new_balance": new_balance},
    )
    return {"status": "success", "amount": body.amount, "new_balance": new_balance}


# ============ Organizations ============


@router.get("/organizations")
async def list_organizations(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    search: Optional[str] = Query(default=None),
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    organizations = await repo.list_all(limit=limit, offset=offset, search=search)
    return {
        "organizations": [
            {
                "id": o.id,
                "name": o.name,
                "type": o.type,
                "status": o.status,
                "owner_id": o.owner_id,
                "credit_balance": o.credit_balance,
                "credit_allocated": o.credit_allocated,
                "member_count": await repo.count_active_members(o.id),
                "created_at": o.created_at,
            }
            for o in organizations
        ],
        "limit": limit,
        "offset": offset,
    }


@router.get("/organizations/{org_id}/members")
async def list_organization_members(
    org_id: str,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    if not await repo.get(org_id):
        raise HTTPException(status_code=404, detail="Organization not found")
    members = await repo.list_members(org_id, include_removed=True)
    return {
        "members": [
            {
                "id": m.id,
                "user_id": m.user_id,
                "email": m.user.email if m.user else None,
                "role": m.role,
                "status": m.status,
                "credit_allocated": m.credit_allocated,
                "credit_used": m.credit_used,
                "joined_at": m.joined_at,
            }
            for m in members
        ],
    }


@router.post("/organizations/{org_id}/credits")
@limiter.limit("30/minute")
async def adjust_organization_credits(
    request: Request,
    org_id: str,
    body: CreditAdjustment,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Add to or remove from an organization's pool. Allocated credits cannot be removed."""
    admin_id = admin.id
    if body.amount == 0:
        raise HTTPException(status_code=400, detail="Amount must not be zero")

    repo = OrganizationRepository(db)
    if not await repo.get(org_id):
        raise HTTPException(status_code=404, detail="Organization not found")

    reason = body.reason.strip()
    organization = await repo.add_credits(
        org_id,
        body.amount,
        transaction_type="admin_adjustment",
        user_id=admin_id,
        description=reason,
    )
    if organization is None:
        raise HTTPException(status_code=400, detail="Adjustment would exceed unallocated credits")
    new_balance = organization.credit_balance

    await log_admin_action(
        db, admin_id, AuditAction.ORG_CREDITS_ADJUSTED, request,
        target_organization_id=org_id,
        details={"amount": body.amount, "reason": reason, "new_balance": new_balance},
    )
    return {"status": "success", "amount": body.amount, "new_balance": new_balance}


# ============ Income ============


@router.get("/income")
async def get_income(
    group_by: str = Query(default="month"),
    days: int = Query(default=365, ge=1, le=3650),
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Purchases, usage revenue and provider costs grouped by period."""
    if group_by not in GROUP_BY_OPTIONS:
        raise HTTPException(status_code=400, detail=f"group_by must be one of {', '.join(GROUP_BY_OPTIONS)}")

    end = datetime.now(timezone.utc)
    start = end - timedelta(days=days)
    repo = AdminRepository(db)

    income = group_income(
        await repo.personal_purchases_between(start, end),
        await repo.org_purchases_between(start, end),
        await UsageRepository(db).usage_rows_between(start, end),
        group_by=group_by,
    )
    income["start"] = start
    income["end"] = end
    return income


# ============ Provider Budgets ============


@router.get("/budgets")
async def get_budgets(
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Monthly budget and current spend per provider."""
    return {"budgets": await budget_overview(db)}


@router.put("/budgets/{provider}")
@limiter.limit("30/minute")
async def update_budget(
    request: Request,
    provider: str,
    body: BudgetUpdate,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    admin_id = admin.id
    fields = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k == "notes"}
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    budget = await ProviderBudgetRepository(db).upsert(provider, fields)
    result = {
        "provider": budget.provider,
        "monthly_budget_eur": budget.monthly_budget_eur,
        "manual_balance": budget.manual_balance,
        "notes": budget.notes,
    }

    await log_admin_action(
        db, admin_id, AuditAction.BUDGET_UPDATED, request,
        details={"provider": provider, "fields": sorted(fields)},
    )
    return result


@router.post("/budgets/evaluate")
async def evaluate_budget_alerts(
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Raise alerts for thresholds crossed this month."""
    created = await evaluate_budgets(db)
    return {"created": [_alert_dict(a) for a in created]}


@router.get("/alerts")
async def list_alerts(
    acknowledged: Optional[bool] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    alerts = await ProviderBudgetRepository(db).list_alerts(acknowledged=acknowledged, limit=limit)
    return {"alerts": [_alert_dict(a) for a in alerts]}


@router.post("/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(
    request: Request,
    alert_id: str,
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    admin_id = admin.id
    alert = await ProviderBudgetRepository(db).acknowledge(alert_id, admin_id)
    if not alert:
        raise HTTPException(status_code=404, detail="Alert not found")
    result = _alert_dict(alert)

    await log_admin_action(db, admin_id, AuditAction.ALERT_ACKNOWLEDGED, request, details={"alert_id": alert_id})
    return result


# ============ Audit Log ============


@router.get("/audit-log")
async def list_audit_log(
    admin_id: Optional[str] = Query(default=None),
    action: Optional[str] = Query(default=None),
    target_user_id: Optional[str] = Query(default=None),
    days: Optional[int] = Query(default=None, ge=1, le=3650),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    admin: UserModel = Depends(get_admin_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    start = datetime.now(timezone.utc) - timedelta(days=days) if days else None
    entries = await AuditRepository(db).list_entries(
        admin_id=admin_id,
        action=action,
        target_user_id=target_user_id,
        start=start,
        limit=limit,
        offset=offset,
    )
    return {
        "entries": [
            {
                "id": e.id,
                "admin_id": e.admin_id,
                "action": e.action,
                "target_user_id": e.target_user_id,
                "target_organization_id": e.target_organization_id,
                "details": e.details,
                "ip_address": e.ip_address,
                "created_at": e.created_at,
            }
            for e in entries
        ],
        "limit": limit,
        "offset": offset,
    }
