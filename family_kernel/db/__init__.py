"""Database layer - engine, base classes and column types."""

from family_kernel.db.base import SYSTEM_ACTOR_ID, Base, TrackedBase, UUIDString
from family_kernel.db.engine import create_tables, get_engine, get_session

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "SYSTEM_ACTOR_ID",
]
