# trigger.py
from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .git_facts.git import current_branch, head_sha
from .model import TriggerContext

logger = logging.getLogger(__name__)

PULL_REQUEST_EVENTS = ("pull_request", "pull_request_target")


def _git_fact(fn, cwd: Optional[str | Path]) -> str:
    try:
        return fn(cwd)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        logger.debug("git lookup %s failed: %s", fn.__name__, e)
        return ""


def parse_meta(pairs) -> Dict[str, str]:
    """Turn ("k=v", ...) into a dict. Raises ValueError on an entry without '='."""
    meta: Dict[str, str] = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected key=value, got {pair!r}")
        meta[key.strip()] = value
    return meta


def build_trigger(
    *,
    event: Optional[str] = None,
    branch: Optional[str] = None,
    is_pull_request: Optional[bool] = None,
    metadata: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    cwd: Optional[str | Path] = None,
) -> TriggerContext:
    """
    Build the immutable trigger context for a run.

    Explicit arguments win. Anything left out is taken from the GITHUB_*
    variables of a hosted runner, then from the local git checkout.
    """
    env = os.environ if environ is None else environ

    event = event or env.get("GITHUB_EVENT_NAME") or "push"
    if is_pull_request is None:
        is_pull_request = event in PULL_REQUEST_EVENTS

    head_ref = env.get("GITHUB_HEAD_REF", "")
    if not branch:
        branch = head_ref or env.get("GITHUB_REF_NAME") or _git_fact(current_branch, cwd)

    meta: Dict[str, Any] = {}
    sha = env.get("GITHUB_SHA") or _git_fact(head_sha, cwd)
    if sha:
        meta["sha"] = sha
    if head_ref:
        meta["head_ref"] = head_ref
    if env.get("GITHUB_REPOSITORY"):
        meta["repository"] = env["GITHUB_REPOSITORY"]
    meta.update(metadata or {})

    return TriggerContext(
        event=event,
        branch=branch,
        is_pull_request=bool(is_pull_request),
        metadata=meta,
    )
