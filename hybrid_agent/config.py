from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    return value if value is not None else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_optional_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class WorkerConfig:
    base_url: str = _env_str("WORKER_BASE_URL", "http://localhost:8000")
    model: str = _env_str("WORKER_MODEL", "auto")
    api_key: Optional[str] = _env_str("WORKER_API_KEY")
    timeout_secs: float = _env_float("WORKER_TIMEOUT_SECS", 60.0)
    temperature: Optional[float] = _env_optional_float("WORKER_TEMPERATURE")
    # Conversation threads kept in memory before the least recently used is dropped.
    max_sessions: int = _env_int("WORKER_MAX_SESSIONS", 1000)


@dataclass(frozen=True)
class PlannerConfig:
    provider: str = _env_str("PLANNER_PROVIDER", "heuristic")
    model: str = _env_str("PLANNER_MODEL", "gpt-4o-mini")
    max_steps: int = _env_int("PLANNER_MAX_STEPS", 16)
    timeout_secs: float = _env_float("PLANNER_TIMEOUT_SECS", 60.0)
    temperature: float = _env_float("PLANNER_TEMPERATURE", 0.2)


@dataclass(frozen=True)
class ExecutorConfig:
    # Total attempts per step, including the first call.
    max_attempts: int = _env_int("EXECUTOR_MAX_ATTEMPTS", 5)
    digest_chars: int = _env_int("EXECUTOR_DIGEST_CHARS", 200)


@dataclass(frozen=True)
class ServerConfig:
    host: str = _env_str("HYBRID_AGENT_HOST", "0.0.0.0")
    port: int = _env_int("HYBRID_AGENT_PORT", 9995)
