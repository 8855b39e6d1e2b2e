"""
family_config -- single public entrypoint for scheduler configuration.

Responsibility:
    ``get_scheduler_config()`` is the only way runtime code obtains the
    recurring engine's settings.  It reads a YAML document (the packaged
    ``defaults/scheduler.yaml`` unless a path is given), validates it and
    returns a frozen ``SchedulerConfig``.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``yaml.YAMLError`` -- the file is not valid YAML.
    - ``ConfigurationError`` -- unknown keys or out-of-range values.

Audit relevance:
    Every successful call emits a ``scheduler_config_loaded`` log entry
    with the source path and a checksum of the effective values, so a pass
    summary can be tied back to the settings that governed it.
"""

from __future__ import annotations

from pathlib import Path

from family_config.loader import compute_checksum, load_yaml_file, parse_scheduler_config
from family_config.schema import RetryPolicyDef, SchedulerConfig
from family_kernel.logging_config import get_logger

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "RetryPolicyDef",
    "SchedulerConfig",
    "get_scheduler_config",
]

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "scheduler.yaml"


def get_scheduler_config(path: Path | str | None = None) -> SchedulerConfig:
    """Load and validate the scheduler configuration.

    Args:
        path: YAML file to read.  Defaults to the packaged
            ``defaults/scheduler.yaml``.

    Returns:
        The frozen, validated ``SchedulerConfig``.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    data = load_yaml_file(config_path)
    config = parse_scheduler_config(data, source=str(config_path))

    _logger.info(
        "scheduler_config_loaded",
        extra={
            "source": str(config_path),
            "checksum": compute_checksum(config),
            "max_retries": config.retry.max_retries,
            "pass_interval_days": config.pass_interval_days,
            "max_workers": config.max_workers,
        },
    )
    return config
