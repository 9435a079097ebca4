from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

DEFAULT_TOP = 50
MAX_SCAN_CONCURRENCY = 32
DEFAULT_COMMAND_TIMEOUT_S = 10.0

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def default_concurrency() -> int:
    return max(1, min(MAX_SCAN_CONCURRENCY, os.cpu_count() or 1))


@dataclass(frozen=True)
class Config:
    top: int = DEFAULT_TOP
    local_only: bool = True
    scan_concurrency: int = field(default_factory=default_concurrency)
    command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    return default


def load_config(*, dotenv: bool = True) -> Config:
    """Read PORTDEPS_* settings, after loading a .env file when present."""
    if dotenv:
        _ = load_dotenv()

    top = _env_int("PORTDEPS_TOP", DEFAULT_TOP)

    concurrency = _env_int("PORTDEPS_SCAN_CONCURRENCY", 0)
    if concurrency <= 0:
        concurrency = default_concurrency()
    concurrency = min(MAX_SCAN_CONCURRENCY, concurrency)

    timeout_s = DEFAULT_COMMAND_TIMEOUT_S
    timeout_raw = os.environ.get("PORTDEPS_COMMAND_TIMEOUT_S", "").strip()
    try:
        if timeout_raw:
            timeout_s = max(0.5, min(120.0, float(timeout_raw)))
    except ValueError:
        timeout_s = DEFAULT_COMMAND_TIMEOUT_S

    return Config(
        top=top,
        local_only=_env_bool("PORTDEPS_LOCAL_ONLY", True),
        scan_concurrency=concurrency,
        command_timeout_s=timeout_s,
    )
