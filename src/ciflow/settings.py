from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .scheduler import default_workers
from .stores import DEFAULT_CACHE_DIR

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    v = value.strip().lower()
    if v in _TRUE:
        return True
    if v in _FALSE:
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True)
class Settings:
    """Runtime defaults, read from CIFLOW_* environment variables. CLI options win."""
    max_workers: int
    cache_dir: str = DEFAULT_CACHE_DIR
    redis_url: Optional[str] = None
    fail_fast: bool = True
    report_path: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("CIFLOW_MAX_WORKERS")
        return cls(
            max_workers=max(1, int(workers)) if workers else default_workers(),
            cache_dir=env.get("CIFLOW_CACHE_DIR") or DEFAULT_CACHE_DIR,
            redis_url=env.get("CIFLOW_REDIS_URL") or None,
            fail_fast=_flag(env.get("CIFLOW_FAIL_FAST"), True),
            report_path=env.get("CIFLOW_REPORT_PATH") or None,
        )
