"""Database module."""

from ossmanager.api.db.session import get_db, init_db, close_db
from ossmanager.api.db.models import Base, User, Role, Permission, AuditLog
from ossmanager.api.db.store import CredentialStore

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "Base",
    "User",
    "Role",
    "Permission",
    "AuditLog",
    "CredentialStore",
]
