"""
Configuration Loader (``family_config.loader``).

Responsibility
--------------
Loads the scheduler YAML document and parses it into the frozen
``family_config.schema`` dataclasses.  Callers go through
``family_config.get_scheduler_config()``; this module is the parsing layer.

Invariants enforced
-------------------
* Every value is type- and range-checked; a bad value raises
  ``ConfigurationError`` naming the dotted key.
* Unknown keys are rejected so typos do not silently fall back to defaults.
* ``compute_checksum`` gives a deterministic SHA-256 of the parsed values
  for the load trace.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from family_config.schema import RetryPolicyDef, SchedulerConfig
from family_kernel.exceptions import ConfigurationError

_TOP_LEVEL_KEYS = frozenset({
    "retry",
    "pass_interval_days",
    "max_iterations_per_rule",
    "materialization_timeout_seconds",
    "tick_interval_seconds",
    "max_workers",
    "upcoming_days_ahead",
    "event_queue_size",
})

_RETRY_KEYS = frozenset({
    "max_retries",
    "backoff_base_passes",
    "backoff_multiplier",
    "max_backoff_passes",
})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ConfigurationError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("<root>", "document must be a mapping")
    return data


def _positive_int(data: dict[str, Any], key: str, default: int, prefix: str = "") -> int:
    value = data.get(key, default)
    dotted = f"{prefix}{key}"
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(dotted, f"expected an integer, got {value!r}")
    if value < 1:
        raise ConfigurationError(dotted, f"must be >= 1, got {value}")
    return value


def _positive_number(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(key, f"expected a number, got {value!r}")
    if value <= 0:
        raise ConfigurationError(key, f"must be > 0, got {value}")
    return float(value)


def _reject_unknown(data: dict[str, Any], allowed: frozenset[str], prefix: str = "") -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigurationError(
            f"{prefix}{unknown[0]}", f"unknown key (allowed: {sorted(allowed)})"
        )


def parse_retry_policy(data: dict[str, Any] | None) -> RetryPolicyDef:
    """Parse the ``retry`` section."""
    if data is None:
        return RetryPolicyDef()
    if not isinstance(data, dict):
        raise ConfigurationError("retry", "must be a mapping")
    _reject_unknown(data, _RETRY_KEYS, prefix="retry.")

    defaults = RetryPolicyDef()
    policy = RetryPolicyDef(
        max_retries=_positive_int(data, "max_retries", defaults.max_retries, "retry."),
        backoff_base_passes=_positive_int(
            data, "backoff_base_passes", defaults.backoff_base_passes, "retry.",
        ),
        backoff_multiplier=_positive_int(
            data, "backoff_multiplier", defaults.backoff_multiplier, "retry.",
        ),
        max_backoff_passes=_positive_int(
            data, "max_backoff_passes", defaults.max_backoff_passes, "retry.",
        ),
    )
    if policy.max_backoff_passes < policy.backoff_base_passes:
        raise ConfigurationError(
            "retry.max_backoff_passes",
            "must be >= retry.backoff_base_passes",
        )
    return policy


def parse_scheduler_config(data: dict[str, Any], source: str | None = None) -> SchedulerConfig:
    """
    Parse a ``SchedulerConfig`` from a dict.

    Missing keys take the schema defaults.

    Raises:
        ConfigurationError: on unknown keys or invalid values.
    """
    _reject_unknown(data, _TOP_LEVEL_KEYS)
    defaults = SchedulerConfig()

    return SchedulerConfig(
        retry=parse_retry_policy(data.get("retry")),
        pass_interval_days=_positive_int(
            data, "pass_interval_days", defaults.pass_interval_days,
        ),
        max_iterations_per_rule=_positive_int(
            data, "max_iterations_per_rule", defaults.max_iterations_per_rule,
        ),
        materialization_timeout_seconds=_positive_number(
            data,
            "materialization_timeout_seconds",
            defaults.materialization_timeout_seconds,
        ),
        tick_interval_seconds=_positive_int(
            data, "tick_interval_seconds", defaults.tick_interval_seconds,
        ),
        max_workers=_positive_int(data, "max_workers", defaults.max_workers),
        upcoming_days_ahead=_positive_int(
            data, "upcoming_days_ahead", defaults.upcoming_days_ahead,
        ),
        event_queue_size=_positive_int(data, "event_queue_size", defaults.event_queue_size),
        source=source,
    )


def compute_checksum(config: SchedulerConfig) -> str:
    """Deterministic SHA-256 over the parsed values (source path excluded)."""
    values = asdict(config)
    values.pop("source", None)
    canonical = json.dumps(values, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
