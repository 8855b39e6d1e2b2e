"""
family_recurring.models -- ORM models for recurring transaction persistence.

Architecture: family_recurring/models. Imports from family_kernel.db.base only.
"""

from family_recurring.models.recurring import (
    RecurringExecutionModel,
    RecurringTransactionModel,
)

__all__ = [
    "RecurringExecutionModel",
    "RecurringTransactionModel",
]
