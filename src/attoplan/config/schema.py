"""Configuration schema for attoplan YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class StorageConfig:
    dir: str = ".attoplan/plans"
    capacity_registry: str | None = None  # shared JSON file for cross-process capacity


@dataclass(slots=True)
class SchedulerConfig:
    global_max_parallel: int = 16
    pump_interval_ms: int = 1000
    default_max_parallel: int = 4


@dataclass(slots=True)
class GitConfig:
    binary: str = "git"
    timeout_seconds: float = 60.0
    worktree_dir: str = ".worktrees"


@dataclass(slots=True)
class RunnerConfig:
    start_paused: bool = False
    auto_recover: bool = True
    shell: str = "/bin/sh"


@dataclass(slots=True)
class LoggingConfig:
    debug: bool = False
    json: bool = False


@dataclass(slots=True)
class AttoplanConfig:
    version: int = 1
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    git: GitConfig = field(default_factory=GitConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
