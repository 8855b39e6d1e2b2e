"""
family_recurring -- Recurring transaction scheduling and execution engine.

Computes occurrence dates for recurring family transactions, materializes
due occurrences through an external transaction store, tracks each
attempt's outcome with retry scheduling, and runs batch passes from a cron
trigger, a background thread or a manual "process now".

Architecture:
    domain/     Pure types, date advancement, exhaustion guard, retry policy.
                ZERO I/O.
    models/     SQLAlchemy models (recurring_transactions,
                recurring_transaction_executions).
    services/   Runner, tracker, catalogue service, periodic scheduler.
    orchestrator.py  Wires configuration, clock and collaborators.

Invariants:
    - Date advancement is pure and never mutates a rule.
    - The cursor (next_execution_date) never moves backwards.
    - At most one execution record per (series, scheduled date).
    - One rule is processed by at most one pass at a time.
    - Clock injection: no direct date.today() outside SystemClock.
"""
