"""
ORM models for recurring transactions and their execution records.

Contract:
    RecurringTransactionModel persists one series (schedule, running state
    and the transaction template).  RecurringExecutionModel persists one
    attempted occurrence.  Both have ``to_dto()`` / ``from_dto()`` round-trip
    methods for the frozen domain types.

Architecture: family_recurring/models. Imports from family_kernel.db.base only.

Invariants enforced:
    - At most one execution record per (recurring transaction, scheduled
      date): UNIQUE constraint ``uq_recurring_execution_rule_date``.
    - Execution records belong to their recurring transaction and are
      deleted with it (ORM cascade plus ``ON DELETE CASCADE``).
    - ``amount`` is Numeric(12, 2), never float.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from family_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from family_recurring.domain.types import (
        ExecutionRecord,
        RecurrenceRule,
        RecurringTransaction,
        TransactionTemplate,
    )


class RecurringTransactionModel(TrackedBase):
    """One recurring transaction series and its scheduling cursor."""

    __tablename__ = "recurring_transactions"

    __table_args__ = (
        Index("ix_recurring_transactions_family", "family_id"),
        Index(
            "ix_recurring_transactions_due",
            "is_active",
            "next_execution_date",
        ),
    )

    # Template
    family_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    account_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    category_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Schedule
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    interval_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    start_date: Mapped[date] = mapped_column(nullable=False)
    end_date: Mapped[date | None] = mapped_column(nullable=True)
    max_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)
    days_of_week: Mapped[list | None] = mapped_column(JSON, nullable=True)
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    week_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Running state
    next_execution_date: Mapped[date] = mapped_column(nullable=False)
    last_execution_date: Mapped[date | None] = mapped_column(nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_execution_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    executions: Mapped[list["RecurringExecutionModel"]] = relationship(
        "RecurringExecutionModel",
        back_populates="recurring_transaction",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_rule(self) -> RecurrenceRule:
        from family_recurring.domain.types import (
            Frequency,
            MonthlyPattern,
            RecurrenceRule,
        )

        monthly = None
        if (
            self.day_of_month is not None
            or self.week_of_month is not None
            or self.day_of_week is not None
        ):
            monthly = MonthlyPattern(
                day_of_month=self.day_of_month,
                week_of_month=self.week_of_month,
                day_of_week=self.day_of_week,
            )

        return RecurrenceRule(
            id=self.id,
            frequency=Frequency(self.frequency),
            interval_count=self.interval_count,
            start_date=self.start_date,
            next_execution_date=self.next_execution_date,
            end_date=self.end_date,
            max_occurrences=self.max_occurrences,
            weekly_pattern=frozenset(self.days_of_week or ()),
            monthly_pattern=monthly,
            last_execution_date=self.last_execution_date,
            execution_count=self.execution_count,
            failed_execution_count=self.failed_execution_count,
            is_active=self.is_active,
        )

    def to_template(self) -> TransactionTemplate:
        from family_recurring.domain.types import TransactionTemplate, TransactionType

        return TransactionTemplate(
            family_id=self.family_id,
            account_id=self.account_id,
            description=self.description,
            amount=self.amount,
            transaction_type=TransactionType(self.transaction_type),
            created_by=self.created_by_id,
            category_id=self.category_id,
            notes=self.notes,
        )

    def to_dto(self) -> RecurringTransaction:
        from family_recurring.domain.types import RecurringTransaction

        return RecurringTransaction(
            rule=self.to_rule(),
            template=self.to_template(),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def apply_rule(self, rule: RecurrenceRule) -> None:
        """Copy schedule and running state from ``rule`` onto this row."""
        pattern = rule.monthly_pattern
        self.frequency = rule.frequency.value
        self.interval_count = rule.interval_count
        self.start_date = rule.start_date
        self.end_date = rule.end_date
        self.max_occurrences = rule.max_occurrences
        self.days_of_week = sorted(rule.weekly_pattern) or None
        self.day_of_month = pattern.day_of_month if pattern else None
        self.week_of_month = pattern.week_of_month if pattern else None
        self.day_of_week = pattern.day_of_week if pattern else None
        self.next_execution_date = rule.next_execution_date
        self.last_execution_date = rule.last_execution_date
        self.execution_count = rule.execution_count
        self.failed_execution_count = rule.failed_execution_count
        self.is_active = rule.is_active

    @classmethod
    def from_dto(cls, dto: RecurringTransaction) -> RecurringTransactionModel:
        template = dto.template
        model = cls(
            id=dto.rule.id,
            family_id=template.family_id,
            account_id=template.account_id,
            category_id=template.category_id,
            description=template.description,
            amount=template.amount,
            transaction_type=template.transaction_type.value,
            notes=template.notes,
            created_by_id=template.created_by,
            updated_by_id=None,
        )
        model.apply_rule(dto.rule)
        return model


class RecurringExecutionModel(TrackedBase):
    """One attempted occurrence of a recurring transaction."""

    __tablename__ = "recurring_transaction_executions"

    __table_args__ = (
        UniqueConstraint(
            "recurring_transaction_id",
            "scheduled_date",
            name="uq_recurring_execution_rule_date",
        ),
        Index(
            "ix_recurring_executions_retry",
            "status",
            "next_retry_date",
        ),
    )

    recurring_transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("recurring_transactions.id", ondelete="CASCADE"),
        nullable=False,
    )
    scheduled_date: Mapped[date] = mapped_column(nullable=False)
    executed_date: Mapped[date | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_date: Mapped[date | None] = mapped_column(nullable=True)
    transaction_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    recurring_transaction: Mapped["RecurringTransactionModel"] = relationship(
        "RecurringTransactionModel",
        back_populates="executions",
        foreign_keys=[recurring_transaction_id],
    )

    def to_dto(self) -> ExecutionRecord:
        from family_recurring.domain.types import ExecutionRecord, ExecutionStatus

        return ExecutionRecord(
            id=self.id,
            rule_id=self.recurring_transaction_id,
            scheduled_date=self.scheduled_date,
            status=ExecutionStatus(self.status),
            executed_date=self.executed_date,
            error_message=self.error_message,
            error_code=self.error_code,
            retry_count=self.retry_count,
            next_retry_date=self.next_retry_date,
            transaction_id=self.transaction_id,
            created_at=self.created_at,
        )

    @classmethod
    def from_dto(
        cls, dto: ExecutionRecord, created_by_id: UUID,
    ) -> RecurringExecutionModel:
        return cls(
            id=dto.id,
            recurring_transaction_id=dto.rule_id,
            scheduled_date=dto.scheduled_date,
            executed_date=dto.executed_date,
            status=dto.status.value,
            error_message=dto.error_message,
            error_code=dto.error_code,
            retry_count=dto.retry_count,
            next_retry_date=dto.next_retry_date,
            transaction_id=dto.transaction_id,
            created_by_id=created_by_id,
            updated_by_id=None,
        )
