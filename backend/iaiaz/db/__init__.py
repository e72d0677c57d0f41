"""Database module for iaiaz."""

from .database import get_db, engine, async_session, init_db
from .models import Base, UserModel, OrganizationModel, OrganizationMemberModel

__all__ = [
    "get_db",
    "engine",
    "async_session",
    "init_db",
    "Base",
    "UserModel",
    "OrganizationModel",
    "OrganizationMemberModel",
]
