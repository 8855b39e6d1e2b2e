"""
Module: family_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.
    Provides the UUID primary key convention, the type annotation map for
    consistent column types, and the TrackedBase mixin for audit columns.
Architecture position: Kernel > DB.  Lowest-level import target; every model
    file imports from here.  MUST NOT import from services or outer layers.

Invariants enforced:
    - UUID primary keys: uuid4-generated, stored as String(36) so the schema
      runs unchanged on PostgreSQL and SQLite.
    - Money precision: Decimal maps to Numeric(12, 2), the precision of the
      family ledger.  NEVER use float for amounts.
    - Calendar dates: ``date`` maps to Date.  Scheduling works in whole days;
      only audit columns carry a time of day.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import Date, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID stored as String(36) for cross-database portability.

    Converts between Python ``UUID`` objects and their 36-character string
    form on the way in and out.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Guarantees:
        - ``id`` is a uuid4-generated UUID stored as String(36).
        - Decimal -> Numeric(12, 2), date -> Date,
          datetime -> DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(12, 2),
        date: Date,
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with audit timestamps and actor tracking.

    Guarantees:
        - created_at is set on INSERT and never changes.
        - updated_at is set on INSERT and refreshed on every UPDATE.
        - created_by_id is required -- every row has a creator (the system
          actor for rows written by the scheduler).
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    created_by_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    updated_by_id: Mapped[PyUUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )


# Actor recorded on rows written by scheduler passes
SYSTEM_ACTOR_ID = PyUUID(int=0)
