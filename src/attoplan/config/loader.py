"""YAML config loader for attoplan."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from attoplan.config.schema import (
    AttoplanConfig,
    GitConfig,
    LoggingConfig,
    RunnerConfig,
    SchedulerConfig,
    StorageConfig,
)
from attoplan.errors import ConfigurationError


def load_config(path: str | Path | None = None) -> AttoplanConfig:
    """Load configuration from *path*, falling back to defaults.

    A missing file or a document that is not a mapping yields the
    default configuration. Unknown keys are ignored.
    """
    raw: Any = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                raw = yaml.safe_load(p.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Malformed config file {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    config = AttoplanConfig(
        version=int(raw.get("version", 1)),
        storage=StorageConfig(**_pick(_section(raw, "storage"), StorageConfig)),
        scheduler=SchedulerConfig(**_pick(_section(raw, "scheduler"), SchedulerConfig)),
        git=GitConfig(**_pick(_section(raw, "git"), GitConfig)),
        runner=RunnerConfig(**_pick(_section(raw, "runner"), RunnerConfig)),
        logging=LoggingConfig(**_pick(_section(raw, "logging"), LoggingConfig)),
    )
    validate_config(config)
    return config


def validate_config(config: AttoplanConfig) -> None:
    sched = config.scheduler
    for name in ("global_max_parallel", "pump_interval_ms", "default_max_parallel"):
        value = getattr(sched, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigurationError(f"scheduler.{name} must be a positive integer, got {value!r}")
    if config.git.timeout_seconds <= 0:
        raise ConfigurationError(
            f"git.timeout_seconds must be positive, got {config.git.timeout_seconds!r}"
        )
    if not config.storage.dir:
        raise ConfigurationError("storage.dir must not be empty")


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
