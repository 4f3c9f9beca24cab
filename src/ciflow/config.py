# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError


def default_workers() -> int:
    """One fewer than the CPU count, at least 1."""
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigError(f"{name} must be at least 1, got {value}")
    return value


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _env_bool(env: Mapping[str, str], name: str) -> bool:
    return env.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """
    Engine settings. Environment variables:
      CIFLOW_MAX_WORKERS    parallel job instances (default: cpu_count - 1)
      CIFLOW_TASK_TIMEOUT   default per-task timeout in seconds (default: none)
      CIFLOW_POLL_INTERVAL  scheduler/task wait granularity in seconds
      CIFLOW_DEBUG          show tracebacks and task logs
    """
    max_workers: Optional[int] = None
    task_timeout: Optional[float] = None
    poll_interval: float = 0.05
    debug: bool = False

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Settings:
        env = os.environ if env is None else env
        return cls(
            max_workers=_env_int(env, "CIFLOW_MAX_WORKERS"),
            task_timeout=_env_float(env, "CIFLOW_TASK_TIMEOUT", None),
            poll_interval=_env_float(env, "CIFLOW_POLL_INTERVAL", 0.05),
            debug=_env_bool(env, "CIFLOW_DEBUG"),
        )

    @property
    def resolved_workers(self) -> int:
        if self.max_workers is not None:
            return self.max_workers
        return default_workers()
