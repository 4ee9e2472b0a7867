from __future__ import annotations

import importlib
import os
import socket
from dataclasses import dataclass
from typing import List
from urllib.parse import urlparse

from .config import PlannerConfig, WorkerConfig

CONNECT_TIMEOUT_SECS = 2.0

PROVIDER_KEYS = {
    "openai": ("openai", "OPENAI_API_KEY"),
    "gemini": ("google.genai", "GOOGLE_API_KEY"),
    "anthropic": ("anthropic", "ANTHROPIC_API_KEY"),
}


@dataclass
class CheckResult:
    label: str
    ok: bool
    detail: str


def _check_import(module: str) -> CheckResult:
    try:
        importlib.import_module(module)
        return CheckResult(label=f"import {module}", ok=True, detail="available")
    except Exception as exc:
        return CheckResult(label=f"import {module}", ok=False, detail=f"{exc.__class__.__name__}: {exc}")


def _resolve_target(url: str) -> tuple[str, int]:
    if "://" not in url:
        url = f"http://{url}"
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError(f"Invalid WORKER_BASE_URL: {url}")
    if parsed.port is not None:
        return parsed.hostname, parsed.port
    if parsed.scheme == "https":
        return parsed.hostname, 443
    return parsed.hostname, 80


def _check_worker_endpoint(url: str) -> CheckResult:
    try:
        host, port = _resolve_target(url)
    except ValueError as exc:
        return CheckResult(label="worker endpoint", ok=False, detail=str(exc))
    try:
        with socket.create_connection((host, port), timeout=CONNECT_TIMEOUT_SECS):
            return CheckResult(label=f"worker {host}:{port}", ok=True, detail=f"reachable ({url})")
    except OSError as exc:
        return CheckResult(label=f"worker {host}:{port}", ok=False, detail=f"{exc} ({url})")


def _check_planner(provider: str) -> List[CheckResult]:
    if provider not in PROVIDER_KEYS:
        return [CheckResult(label=f"planner {provider}", ok=True, detail="heuristic planner (no API key needed)")]
    module, env_var = PROVIDER_KEYS[provider]
    key_set = bool(os.getenv(env_var, "").strip())
    return [
        _check_import(module),
        CheckResult(label=env_var, ok=key_set, detail="set" if key_set else "not set (planner falls back to heuristic)"),
    ]


def _print_report(results: List[CheckResult]) -> bool:
    all_ok = all(result.ok for result in results)
    for result in results:
        status = "OK" if result.ok else "MISSING"
        print(f"{status}: {result.label} - {result.detail}")
    print("Ready" if all_ok else "Missing Dependencies")
    return all_ok


def main() -> int:
    worker_config = WorkerConfig()
    planner_config = PlannerConfig()
    results = [
        _check_import("httpx"),
        _check_import("fastapi"),
        _check_worker_endpoint(worker_config.base_url),
        *_check_planner(planner_config.provider),
    ]
    ok = _print_report(results)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
