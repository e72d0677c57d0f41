"""Organization rules: roles, permissions, family plans and model restrictions."""

import re
import secrets
import unicodedata
from typing import Optional

ORG_TYPES = ("family", "school", "business", "training_center")
MEMBER_ROLES = ("owner", "admin", "teacher", "student")
MANAGER_ROLES = frozenset({"owner", "admin"})

INVITE_EXPIRY_DAYS = 30

# Family plans
FAMILY_TRIAL_DAYS = 7
WELCOME_CREDIT_PER_CHILD = 1.0
MIN_CHILDREN = 1
MAX_CHILDREN = 6
MAX_EXTRA_PARENTS = 2

# Organization top-ups through Stripe (EUR)
MIN_ORG_PURCHASE = 10
MAX_ORG_PURCHASE = 5000


def slugify(name: str, suffix: Optional[str] = None) -> str:
    """URL slug from an organization name, with a random suffix to keep it unique."""
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    base = re.sub(r"[^a-z0-9]+", "-", ascii_name.lower()).strip("-")[:50] or "org"
    return f"{base}-{suffix or secrets.token_hex(3)}"


def can_manage(role: Optional[str]) -> bool:
    """Owners and admins manage members, invites, allocations and classes."""
    return role in MANAGER_ROLES


def can_transfer(org_type: str, role: str, can_manage_credits: bool) -> bool:
    """
    Who may move credits between their personal balance and the organization.

    In a training centre only the owner can; elsewhere owners and admins
    can, as can members granted `can_manage_credits`.
    """
    if org_type == "training_center":
        return role == "owner"
    if role in MANAGER_ROLES:
        return True
    return bool(can_manage_credits)


def intersect_allowed_models(
    org_models: Optional[list[str]],
    class_models: Optional[list[str]],
) -> Optional[list[str]]:
    """Combine organization and class restrictions. None means every model is allowed."""
    if org_models is None:
        return list(class_models) if class_models is not None else None
    if class_models is None:
        return list(org_models)
    allowed = set(class_models)
    return [model for model in org_models if model in allowed]


def is_model_allowed(model_id: str, allowed: Optional[list[str]]) -> bool:
    return allowed is None or model_id in allowed


def validate_family_request(child_count: int, extra_parent_count: int) -> Optional[str]:
    """Error message for an invalid family configuration, or None."""
    if not MIN_CHILDREN <= child_count <= MAX_CHILDREN:
        return f"Le nombre d'enfants doit être entre {MIN_CHILDREN} et {MAX_CHILDREN}"
    if not 0 <= extra_parent_count <= MAX_EXTRA_PARENTS:
        return f"Le nombre de parents supplémentaires doit être entre 0 et {MAX_EXTRA_PARENTS}"
    return None


def family_max_members(child_count: int, extra_parent_count: int) -> int:
    """Children plus extra parents plus the owner."""
    return child_count + extra_parent_count + 1


def family_welcome_credit(child_count: int) -> float:
    return round(WELCOME_CREDIT_PER_CHILD * child_count, 2)
