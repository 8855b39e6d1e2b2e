"""
family_recurring.services -- imperative shell around the pure recurrence domain.

SchedulerRunner runs passes, ExecutionTracker owns execution record
lifecycles, RecurringRuleService manages the catalogue and
PeriodicScheduler runs passes on a background thread.
"""

from family_recurring.services.collaborators import (
    AcceptAllAccounts,
    AccountValidator,
    EngineEvent,
    EventSink,
    EventType,
    LoggingEventSink,
    RiskLevel,
    TransactionRequest,
    TransactionStore,
)
from family_recurring.services.locks import RuleLockRegistry
from family_recurring.services.materializer import Materializer
from family_recurring.services.rule_service import RecurringRuleService
from family_recurring.services.runner import SchedulerRunner
from family_recurring.services.scheduler import PeriodicScheduler
from family_recurring.services.tracker import ExecutionTracker

__all__ = [
    "AcceptAllAccounts",
    "AccountValidator",
    "EngineEvent",
    "EventSink",
    "EventType",
    "ExecutionTracker",
    "LoggingEventSink",
    "Materializer",
    "PeriodicScheduler",
    "RecurringRuleService",
    "RiskLevel",
    "RuleLockRegistry",
    "SchedulerRunner",
    "TransactionRequest",
    "TransactionStore",
]
