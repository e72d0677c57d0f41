"""API routes for organizations, families, classes and parental controls."""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.analytics import compute_class_metrics, default_class_window
from ..core.auth import get_current_user
from ..core.chat import ChatService
from ..core.config import get_settings
from ..core.email import send_invite_email
from ..core.organizations import (
    FAMILY_TRIAL_DAYS,
    INVITE_EXPIRY_DAYS,
    can_manage,
    can_transfer,
    family_max_members,
    family_welcome_credit,
    slugify,
    validate_family_request,
)
from ..core.parental import MIN_CHILD_AGE, calculate_age, default_controls, supervision_mode_for_age
from ..core.security import limiter
from ..db.database import get_db
from ..db.models import UserModel, ensure_utc
from ..db.repository import OrganizationRepository, ParentalControlRepository
from ..models.credits import TransferRequest
from ..models.organization import (
    AllocateRequest,
    BulkAllocateRequest,
    ClassAssignRequest,
    ClassCreate,
    ClassUpdate,
    CreditRequestCreate,
    CreditRequestReview,
    FamilyCreate,
    FamilyTransferRequest,
    InviteCreate,
    JoinRequest,
    MemberRoleUpdate,
    OrganizationCreate,
    OrganizationSettingsUpdate,
    ParentalControlsUpdate,
)

router = APIRouter(tags=["organizations"])
logger = logging.getLogger(__name__)

CLASS_VIEWER_ROLES = ("owner", "admin", "teacher")


# ============ Serializers ============


def _org_dict(organization, role: Optional[str] = None) -> dict:
    data = {
        "id": organization.id,
        "name": organization.name,
        "slug": organization.slug,
        "type": organization.type,
        "status": organization.status,
        "contact_email": organization.contact_email,
        "credit_balance": round(organization.credit_balance, 6),
        "credit_allocated": round(organization.credit_allocated, 6),
        "credit_available": round(organization.credit_available, 6),
        "settings": organization.settings or {},
        "max_family_members": organization.max_family_members,
        "subscription_status": organization.subscription_status,
        "trial_end": organization.trial_end,
        "created_at": organization.created_at,
    }
    if role is not None:
        data["role"] = role
    return data


def _member_dict(member) -> dict:
    return {
        "id": member.id,
        "user_id": member.user_id,
        "email": member.user.email if member.user else None,
        "display_name": member.user.display_name if member.user else None,
        "role": member.role,
        "status": member.status,
        "class_id": member.class_id,
        "credit_allocated": round(member.credit_allocated or 0.0, 6),
        "credit_used": round(member.credit_used or 0.0, 6),
        "credit_remaining": round(member.credit_remaining, 6),
        "can_manage_credits": member.can_manage_credits,
        "supervision_mode": member.supervision_mode,
        "joined_at": member.joined_at,
    }


def _invite_dict(invite) -> dict:
    return {
        "id": invite.id,
        "email": invite.email,
        "role": invite.role,
        "credit_amount": invite.credit_amount,
        "class_id": invite.class_id,
        "status": invite.status,
        "expires_at": invite.expires_at,
        "created_at": invite.created_at,
    }


def _class_dict(org_class, student_count: Optional[int] = None) -> dict:
    data = {
        "id": org_class.id,
        "organization_id": org_class.organization_id,
        "name": org_class.name,
        "description": org_class.description,
        "status": org_class.status,
        "settings": org_class.settings or {},
        "created_at": org_class.created_at,
        "closed_at": org_class.closed_at,
    }
    if student_count is not None:
        data["student_count"] = student_count
    return data


def _controls_dict(controls) -> dict:
    return {
        "child_user_id": controls.child_user_id,
        "supervision_mode": controls.supervision_mode,
        "daily_time_limit_minutes": controls.daily_time_limit_minutes,
        "daily_credit_limit": controls.daily_credit_limit,
        "cumulative_credits": controls.cumulative_credits,
        "quiet_hours_start": controls.quiet_hours_start,
        "quiet_hours_end": controls.quiet_hours_end,
        "updated_at": controls.updated_at,
    }


def _credit_request_dict(credit_request) -> dict:
    return {
        "id": credit_request.id,
        "child_user_id": credit_request.child_user_id,
        "amount": credit_request.amount,
        "reason": credit_request.reason,
        "status": credit_request.status,
        "reviewed_by": credit_request.reviewed_by,
        "reviewed_at": credit_request.reviewed_at,
        "created_at": credit_request.created_at,
    }


# ============ Permission Helpers ============


async def _require_member(repo: OrganizationRepository, org_id: str, user_id: str):
    membership = await repo.get_membership(org_id, user_id)
    if not membership:
        raise HTTPException(status_code=404, detail="Organization not found")
    return membership


async def _require_manager(repo: OrganizationRepository, org_id: str, user_id: str):
    membership = await _require_member(repo, org_id, user_id)
    if not can_manage(membership.role):
        raise HTTPException(status_code=403, detail="Only owners and admins can do this")
    return membership


async def _require_family_parent(repo: OrganizationRepository, org_id: str, user_id: str):
    membership = await _require_manager(repo, org_id, user_id)
    if membership.organization.type != "family":
        raise HTTPException(status_code=400, detail="Not a family organization")
    return membership


async def _require_class_viewer(repo: OrganizationRepository, class_id: str, user_id: str):
    org_class = await repo.get_class(class_id)
    if not org_class:
        raise HTTPException(status_code=404, detail="Class not found")
    membership = await _require_member(repo, org_class.organization_id, user_id)
    if membership.role not in CLASS_VIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Only staff can view classes")
    return org_class, membership


# ============ Organizations ============


@router.post("/organizations")
@limiter.limit("5/minute")
async def create_organization(
    request: Request,
    body: OrganizationCreate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Create a school, business or training centre owned by the caller."""
    user_id = user.id
    organization = await OrganizationRepository(db).create(
        name=body.name.strip(),
        org_type=body.type,
        owner_id=user_id,
        slug=slugify(body.name),
        contact_email=body.contact_email or user.email,
    )
    return _org_dict(organization, role="owner")


@router.get("/organizations")
async def list_my_organizations(
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """The caller's active membership, if any, with its organization."""
    membership = await OrganizationRepository(db).get_active_membership(user.id)
    if not membership:
        return {"organizations": []}
    return {"organizations": [_org_dict(membership.organization, role=membership.role)]}


@router.get("/organizations/{org_id}")
async def get_organization(
    org_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    membership = await _require_member(OrganizationRepository(db), org_id, user.id)
    return _org_dict(membership.organization, role=membership.role)


@router.patch("/organizations/{org_id}/settings")
async def update_organization_settings(
    org_id: str,
    request: OrganizationSettingsUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Allowed models and per-student spending limits."""
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)

    updates = request.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No settings to update")

    organization = await repo.update_settings(org_id, updates)
    return {"settings": organization.settings}


@router.get("/organizations/{org_id}/stats")
async def get_organization_stats(
    org_id: str,
    days: int = Query(default=30, ge=1, le=365),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    return await repo.get_stats(org_id, days=days)


@router.get("/organizations/{org_id}/transactions")
async def get_organization_transactions(
    org_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Organization credit ledger, most recent first."""
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    transactions = await repo.get_transactions(org_id, limit=limit, offset=offset)
    return {
        "transactions": [
            {
                "id": t.id,
                "type": t.type,
                "amount": t.amount,
                "balance_after": t.balance_after,
                "member_id": t.member_id,
                "user_id": t.user_id,
                "description": t.description,
                "created_at": t.created_at,
            }
            for t in transactions
        ],
    }


# ============ Family ============


@router.post("/family")
@limiter.limit("5/minute")
async def create_family(
    request: Request,
    body: FamilyCreate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Create a family organization with a trial period and welcome credits.

    A user can own only one family.
    """
    error = validate_family_request(body.child_count, body.extra_parent_count)
    if error:
        raise HTTPException(status_code=400, detail=error)

    user_id = user.id
    repo = OrganizationRepository(db)
    if await repo.find_owned_family(user_id):
        raise HTTPException(status_code=400, detail="Vous avez déjà une famille")

    welcome = family_welcome_credit(body.child_count)
    organization = await repo.create(
        name=body.family_name.strip(),
        org_type="family",
        owner_id=user_id,
        slug=slugify(body.family_name),
        contact_email=user.email,
        credit_balance=welcome,
        max_family_members=family_max_members(body.child_count, body.extra_parent_count),
        subscription_status="trialing",
        trial_end=datetime.now(timezone.utc) + timedelta(days=FAMILY_TRIAL_DAYS),
        welcome_description=f"Crédits de bienvenue ({body.child_count} enfant(s))",
    )
    return _org_dict(organization, role="owner")


@router.post("/organizations/{org_id}/family-transfer")
async def family_transfer(
    org_id: str,
    request: FamilyTransferRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Move family credits to children's personal balances."""
    user_id = user.id
    repo = OrganizationRepository(db)
    await _require_family_parent(repo, org_id, user_id)

    for allocation in request.allocations:
        child = await repo.get_membership(org_id, allocation.child_user_id)
        if not child or child.role != "student":
            raise HTTPException(status_code=400, detail=f"{allocation.child_user_id} is not a child of this family")

    remaining = await repo.family_transfer(
        org_id,
        [(a.child_user_id, a.amount) for a in request.allocations],
        transferred_by=user_id,
    )
    if remaining is None:
        raise HTTPException(status_code=400, detail="Crédits de la famille insuffisants")
    return {"success": True, "remaining_balance": remaining}


# ============ Members ============


@router.get("/organizations/{org_id}/members")
async def list_members(
    org_id: str,
    include_removed: bool = False,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    members = await repo.list_members(org_id, include_removed=include_removed)
    return {"members": [_member_dict(m) for m in members]}


async def _get_org_member(repo: OrganizationRepository, org_id: str, member_id: str):
    member = await repo.get_member(member_id)
    if not member or member.organization_id != org_id or member.status != "active":
        raise HTTPException(status_code=404, detail="Member not found")
    return member


@router.patch("/organizations/{org_id}/members/{member_id}")
async def update_member_role(
    org_id: str,
    member_id: str,
    request: MemberRoleUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Change a member's role. Ownership cannot be given or taken here."""
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    member = await _get_org_member(repo, org_id, member_id)

    if member.role == "owner" or request.role == "owner":
        raise HTTPException(status_code=400, detail="The owner role cannot be changed")

    member = await repo.update_member_role(member, request.role)
    return {"id": member.id, "role": member.role}


@router.delete("/organizations/{org_id}/members/{member_id}")
async def remove_member(
    org_id: str,
    member_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Remove a member; their unused allocation returns to the pool."""
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    member = await _get_org_member(repo, org_id, member_id)
    if member.role == "owner":
        raise HTTPException(status_code=400, detail="The owner cannot be removed")

    removed = await repo.remove_member(member_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Member not found")
    return {"removed": True}


@router.post("/organizations/{org_id}/allocate")
async def allocate_credits(
    org_id: str,
    request: AllocateRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Allocate pool credits to one member."""
    user_id = user.id
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user_id)
    await _get_org_member(repo, org_id, request.member_id)

    member = await repo.allocate_to_member(org_id, request.member_id, request.amount, allocated_by=user_id)
    if not member:
        raise HTTPException(status_code=400, detail="Crédits disponibles insuffisants")
    return {
        "member_id": member.id,
        "credit_allocated": member.credit_allocated,
        "credit_remaining": member.credit_remaining,
    }


@router.post("/organizations/{org_id}/transfer")
async def transfer_credits(
    org_id: str,
    request: TransferRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Move credits between the caller's personal balance and the organization."""
    user_id = user.id
    repo = OrganizationRepository(db)
    membership = await _require_member(repo, org_id, user_id)
    if not can_transfer(membership.organization.type, membership.role, membership.can_manage_credits):
        raise HTTPException(status_code=403, detail="You cannot transfer credits for this organization")
    member_id = membership.id

    transfer = await repo.transfer(user_id, org_id, request.direction, request.amount, member_id=member_id)
    if not transfer:
        raise HTTPException(status_code=400, detail="Solde insuffisant pour ce transfert")
    return {
        "id": transfer.id,
        "direction": transfer.direction,
        "amount": transfer.amount,
        "created_at": transfer.created_at,
    }


# ============ Invites ============


@router.post("/organizations/{org_id}/invites")
@limiter.limit("20/minute")
async def create_invite(
    request: Request,
    org_id: str,
    body: InviteCreate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Invite someone by email. Family children need a birthdate."""
    user_id = user.id
    inviter_name = user.display_name or user.email
    repo = OrganizationRepository(db)
    membership = await _require_manager(repo, org_id, user_id)
    organization = membership.organization
    org_name, org_type, max_members = organization.name, organization.type, organization.max_family_members

    if body.role == "owner":
        raise HTTPException(status_code=400, detail="Cannot invite an owner")

    if await repo.has_pending_invite(org_id, body.email):
        raise HTTPException(status_code=400, detail="Une invitation est déjà en attente pour cet email")

    if org_type == "family":
        if body.role == "student" and body.birthdate is None:
            raise HTTPException(status_code=400, detail="La date de naissance de l'enfant est requise")
        if max_members is not None:
            seats = await repo.count_active_members(org_id) + await repo.count_pending_invites(org_id)
            if seats >= max_members:
                raise HTTPException(status_code=400, detail="Nombre maximum de membres atteint")

    if body.class_id:
        org_class = await repo.get_class(body.class_id)
        if not org_class or org_class.organization_id != org_id:
            raise HTTPException(status_code=400, detail="Class not found in this organization")

    invite = await repo.create_invite(
        org_id,
        body.email,
        body.role,
        invited_by=user_id,
        expires_at=datetime.now(timezone.utc) + timedelta(days=INVITE_EXPIRY_DAYS),
        credit_amount=body.credit_amount,
        class_id=body.class_id,
        birthdate=body.birthdate,
    )

    email_sent = send_invite_email(invite.email, org_name, invite.role, invite.token, inviter_name=inviter_name)
    data = _invite_dict(invite)
    data["token"] = invite.token
    data["email_sent"] = email_sent
    return data


@router.get("/organizations/{org_id}/invites")
async def list_invites(
    org_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    return {"invites": [_invite_dict(i) for i in await repo.list_pending_invites(org_id)]}


@router.delete("/organizations/{org_id}/invites/{invite_id}")
async def revoke_invite(
    org_id: str,
    invite_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    invite = await repo.get_invite(invite_id)
    if not invite or invite.organization_id != org_id:
        raise HTTPException(status_code=404, detail="Invite not found")
    if invite.status != "pending":
        raise HTTPException(status_code=400, detail=f"Invite already {invite.status}")
    await repo.set_invite_status(invite, "revoked")
    return {"revoked": True}


@router.get("/invites/{token}")
async def preview_invite(token: str, db: AsyncSession = Depends(get_db)) -> dict:
    """Public view of an invite, shown before signing in to accept it."""
    repo = OrganizationRepository(db)
    invite = await repo.get_invite_by_token(token)
    if not invite:
        raise HTTPException(status_code=404, detail="Invite not found")
    organization = await repo.get(invite.organization_id)
    return {
        "organization_name": organization.name if organization else None,
        "organization_type": organization.type if organization else None,
        "role": invite.role,
        "status": invite.status,
        "expired": ensure_utc(invite.expires_at) <= datetime.now(timezone.utc),
    }


@router.post("/join")
@limiter.limit("10/minute")
async def join_organization(
    request: Request,
    body: JoinRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Accept an invite.

    Family children must be at least 12; their supervision mode follows
    from their age and default parental controls are created.
    """
    user_id = user.id
    user_birthdate = user.birthdate
    repo = OrganizationRepository(db)

    invite = await repo.get_invite_by_token(body.token)
    if not invite or invite.status != "pending":
        raise HTTPException(status_code=404, detail="Invitation invalide ou déjà utilisée")
    if ensure_utc(invite.expires_at) <= datetime.now(timezone.utc):
        raise HTTPException(status_code=400, detail="Cette invitation a expiré")

    org_id = invite.organization_id
    if await repo.get_membership(org_id, user_id):
        raise HTTPException(status_code=400, detail="Vous êtes déjà membre de cette organisation")

    organization = await repo.get_for_update(org_id)
    if not organization or organization.status != "active":
        await db.rollback()
        raise HTTPException(status_code=404, detail="Organization not found")

    supervision_mode = None
    birthdate = invite.birthdate or user_birthdate
    is_child = organization.type == "family" and invite.role == "student"
    if is_child:
        if birthdate is None:
            await db.rollback()
            raise HTTPException(status_code=400, detail="La date de naissance est requise")
        supervision_mode = supervision_mode_for_age(calculate_age(birthdate, date.today()))
        if supervision_mode is None:
            await db.rollback()
            raise HTTPException(
                status_code=400,
                detail=f"L'âge minimum est de {MIN_CHILD_AGE} ans",
            )

    member = await repo.add_member(
        organization,
        user_id,
        invite.role,
        credit_allocated=invite.credit_amount or 0.0,
        class_id=invite.class_id,
        supervision_mode=supervision_mode,
        birthdate=birthdate if is_child else None,
    )

    if is_child:
        await ParentalControlRepository(db).upsert(
            org_id,
            user_id,
            default_controls(supervision_mode),
            updated_by=invite.invited_by,
        )

    await repo.set_invite_status(invite, "accepted")

    organization = await repo.get(org_id)
    return {
        "organization": _org_dict(organization, role=member.role),
        "member_id": member.id,
        "supervision_mode": supervision_mode,
    }


# ============ Classes ============


@router.post("/organizations/{org_id}/classes")
async def create_class(
    org_id: str,
    request: ClassCreate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user_id = user.id
    repo = OrganizationRepository(db)
    membership = await _require_member(repo, org_id, user_id)
    if membership.role not in CLASS_VIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Only staff can create classes")

    settings = {"allowed_models": request.allowed_models} if request.allowed_models is not None else {}
    org_class = await repo.create_class(
        org_id,
        request.name.strip(),
        created_by=user_id,
        description=request.description,
        settings=settings,
    )
    return _class_dict(org_class, student_count=0)


@router.get("/organizations/{org_id}/classes")
async def list_classes(
    org_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    membership = await _require_member(repo, org_id, user.id)
    if membership.role not in CLASS_VIEWER_ROLES:
        raise HTTPException(status_code=403, detail="Only staff can view classes")

    classes = []
    for org_class in await repo.list_classes(org_id):
        students = await repo.list_class_students(org_class.id)
        classes.append(_class_dict(org_class, student_count=len(students)))
    return {"classes": classes}


@router.patch("/classes/{class_id}")
async def update_class(
    class_id: str,
    request: ClassUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Rename, restrict models, or close/reopen a class."""
    repo = OrganizationRepository(db)
    org_class, _ = await _require_class_viewer(repo, class_id, user.id)

    updates = request.model_dump(exclude_unset=True)
    fields = {k: v for k, v in updates.items() if k in ("name", "description", "status")}
    if "allowed_models" in updates:
        fields["settings"] = {**(org_class.settings or {}), "allowed_models": updates["allowed_models"]}
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    org_class = await repo.update_class(org_class, fields)
    return _class_dict(org_class)


@router.post("/organizations/{org_id}/classes/assign")
async def assign_member_class(
    org_id: str,
    request: ClassAssignRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_manager(repo, org_id, user.id)
    member = await _get_org_member(repo, org_id, request.member_id)

    if request.class_id:
        org_class = await repo.get_class(request.class_id)
        if not org_class or org_class.organization_id != org_id:
            raise HTTPException(status_code=404, detail="Class not found")
        if org_class.status != "active":
            raise HTTPException(status_code=400, detail="Class is closed")

    member = await repo.set_member_class(member, request.class_id)
    return {"member_id": member.id, "class_id": member.class_id}


@router.post("/classes/{class_id}/allocate")
async def bulk_allocate_class(
    class_id: str,
    request: BulkAllocateRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Give every active student of a class the same allocation."""
    user_id = user.id
    repo = OrganizationRepository(db)
    org_class = await repo.get_class(class_id)
    if not org_class:
        raise HTTPException(status_code=404, detail="Class not found")
    org_id = org_class.organization_id
    await _require_manager(repo, org_id, user_id)

    students = await repo.list_class_students(class_id)
    if not students:
        raise HTTPException(status_code=400, detail="No students in this class")
    student_count = len(students)

    if not await repo.bulk_allocate(org_id, students, request.amount_each, allocated_by=user_id):
        raise HTTPException(status_code=400, detail="Crédits disponibles insuffisants")
    return {
        "students": student_count,
        "amount_each": request.amount_each,
        "total": round(request.amount_each * student_count, 6),
    }


# ============ Class Join Links ============


def _class_join_link(org_class) -> dict:
    return {
        "class_id": org_class.id,
        "join_token": org_class.join_token,
        "join_url": f"{get_settings().frontend_url}/join/class?token={org_class.join_token}",
        "joinable": org_class.status == "active",
    }


@router.get("/classes/{class_id}/join-link")
async def get_class_join_link(
    class_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    org_class, _ = await _require_class_viewer(repo, class_id, user.id)
    if not org_class.join_token:
        org_class = await repo.rotate_class_join_token(org_class)
    return _class_join_link(org_class)


@router.post("/classes/{class_id}/join-link/rotate")
async def rotate_class_join_link(
    class_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    org_class, _ = await _require_class_viewer(repo, class_id, user.id)
    org_class = await repo.rotate_class_join_token(org_class)
    return _class_join_link(org_class)


@router.get("/class-links/{token}")
async def preview_class_link(token: str, db: AsyncSession = Depends(get_db)) -> dict:
    """Public view of a class link, shown before signing in to join."""
    org_class = await OrganizationRepository(db).get_class_by_join_token(token)
    if not org_class:
        raise HTTPException(status_code=404, detail="Class not found")
    organization = org_class.organization
    return {
        "class_name": org_class.name,
        "organization_name": organization.name,
        "organization_type": organization.type,
        "joinable": org_class.status == "active" and organization.status == "active",
    }


@router.post("/class-links/join")
@limiter.limit("10/minute")
async def join_class(
    request: Request,
    body: JoinRequest,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    Join a class through its shared link.

    Newcomers become students of the class's organization and existing
    students move to the class. Staff memberships are left unchanged.
    """
    user_id = user.id
    repo = OrganizationRepository(db)

    org_class = await repo.get_class_by_join_token(body.token)
    if not org_class:
        raise HTTPException(status_code=404, detail="Lien de classe invalide")
    if org_class.status != "active":
        raise HTTPException(status_code=400, detail="Cette classe n'est plus active")
    organization = org_class.organization
    if organization.status != "active":
        raise HTTPException(status_code=400, detail="L'organisation n'est pas active")
    if organization.type == "family":
        raise HTTPException(status_code=400, detail="Les familles n'ont pas de classes")

    org_id = organization.id
    class_id = org_class.id
    membership = await repo.get_membership(org_id, user_id)

    if membership and membership.role != "student":
        member = membership
        already_member = True
    elif membership:
        member = await repo.set_member_class(membership, class_id)
        already_member = True
    else:
        member = await repo.add_member(organization, user_id, "student", class_id=class_id)
        already_member = False
        logger.info(f"User {user_id} joined class {class_id} through its link")

    return {
        "organization": _org_dict(organization, role=member.role),
        "member_id": member.id,
        "class_id": member.class_id,
        "already_member": already_member,
    }


@router.get("/classes/{class_id}/analytics")
async def get_class_analytics(
    class_id: str,
    days: int = Query(default=30, ge=1, le=365),
    save: bool = Query(default=False, description="Store the result as a snapshot"),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Activity of a class's students over the last `days` days."""
    repo = OrganizationRepository(db)
    await _require_class_viewer(repo, class_id, user.id)

    start, end = default_class_window(days=days)
    messages, members = await repo.class_activity(class_id, start, end)
    metrics = compute_class_metrics(messages, members, start, end)

    if save:
        await repo.save_class_snapshot(class_id, "custom", start.date(), metrics)

    return {"class_id": class_id, "start": start, "end": end, "metrics": metrics}


@router.get("/classes/{class_id}/analytics/history")
async def list_class_analytics_history(
    class_id: str,
    limit: int = Query(default=30, ge=1, le=365),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_class_viewer(repo, class_id, user.id)
    snapshots = await repo.list_class_snapshots(class_id, limit=limit)
    return {
        "snapshots": [
            {
                "period_type": s.period_type,
                "period_start": s.period_start,
                "metrics": s.metrics,
                "created_at": s.created_at,
            }
            for s in snapshots
        ],
    }


# ============ Parental Controls ============


async def _require_family_child(repo: OrganizationRepository, org_id: str, child_user_id: str):
    child = await repo.get_membership(org_id, child_user_id)
    if not child or child.role != "student":
        raise HTTPException(status_code=404, detail="Child not found in this family")
    return child


@router.get("/organizations/{org_id}/children/{child_user_id}/controls")
async def get_parental_controls(
    org_id: str,
    child_user_id: str,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user_id = user.id
    repo = OrganizationRepository(db)
    # Children can read their own controls
    if user_id != child_user_id:
        await _require_family_parent(repo, org_id, user_id)
    child = await _require_family_child(repo, org_id, child_user_id)

    controls = await ParentalControlRepository(db).get(org_id, child_user_id)
    if controls is None:
        return {"child_user_id": child_user_id, **default_controls(child.supervision_mode or "guided")}
    return _controls_dict(controls)


@router.put("/organizations/{org_id}/children/{child_user_id}/controls")
async def update_parental_controls(
    org_id: str,
    child_user_id: str,
    request: ParentalControlsUpdate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Set quiet hours, daily limits or supervision mode for a child."""
    user_id = user.id
    repo = OrganizationRepository(db)
    await _require_family_parent(repo, org_id, user_id)
    child = await _require_family_child(repo, org_id, child_user_id)

    fields = request.model_dump(exclude_unset=True)
    if fields.get("supervision_mode", "") is None:
        fields.pop("supervision_mode")
    if "cumulative_credits" in fields and fields["cumulative_credits"] is None:
        fields.pop("cumulative_credits")
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")

    if "supervision_mode" in fields:
        child.supervision_mode = fields["supervision_mode"]

    controls = await ParentalControlRepository(db).upsert(org_id, child_user_id, fields, updated_by=user_id)
    logger.info(f"Parent {user_id} updated controls of child {child_user_id}: {sorted(fields)}")
    return _controls_dict(controls)


# ============ Credit Requests ============


@router.post("/organizations/{org_id}/credit-requests")
@limiter.limit("10/hour")
async def create_credit_request(
    request: Request,
    org_id: str,
    body: CreditRequestCreate,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """A child asks the family's parents for more credits."""
    user_id = user.id
    repo = OrganizationRepository(db)
    membership = await _require_member(repo, org_id, user_id)
    if membership.organization.type != "family" or membership.role != "student":
        raise HTTPException(status_code=403, detail="Only family children can request credits")

    credit_request = await ParentalControlRepository(db).create_request(org_id, user_id, body.amount, body.reason)
    return _credit_request_dict(credit_request)


@router.get("/organizations/{org_id}/credit-requests")
async def list_credit_requests(
    org_id: str,
    status: Optional[str] = Query(default=None, pattern="^(pending|approved|denied)$"),
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    repo = OrganizationRepository(db)
    await _require_family_parent(repo, org_id, user.id)
    requests = await ParentalControlRepository(db).list_requests(org_id, status=status)
    return {"requests": [_credit_request_dict(r) for r in requests]}


@router.post("/organizations/{org_id}/credit-requests/{request_id}/review")
async def review_credit_request(
    org_id: str,
    request_id: str,
    request: CreditRequestReview,
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Approve (transferring the credits) or deny a child's request."""
    user_id = user.id
    repo = OrganizationRepository(db)
    parental = ParentalControlRepository(db)
    await _require_family_parent(repo, org_id, user_id)

    credit_request = await parental.get_request(request_id)
    if not credit_request or credit_request.organization_id != org_id:
        raise HTTPException(status_code=404, detail="Request not found")
    if credit_request.status != "pending":
        raise HTTPException(status_code=400, detail=f"Request already {credit_request.status}")

    if request.approve:
        child_user_id, amount = credit_request.child_user_id, credit_request.amount
        remaining = await repo.family_transfer(org_id, [(child_user_id, amount)], transferred_by=user_id)
        if remaining is None:
            raise HTTPException(status_code=400, detail="Crédits de la famille insuffisants")
        credit_request = await parental.get_request(request_id)

    credit_request = await parental.review_request(
        credit_request,
        "approved" if request.approve else "denied",
        reviewed_by=user_id,
    )
    return _credit_request_dict(credit_request)


# ============ Model Restrictions ============


@router.get("/model-restrictions")
async def get_model_restrictions(
    user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Models the caller may use; `restricted` is false when every model is allowed."""
    allowed = await ChatService(db).get_model_restrictions(user.id)
    return {"restricted": allowed is not None, "allowed_models": allowed}
