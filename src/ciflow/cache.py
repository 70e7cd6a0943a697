# cache.py
from __future__ import annotations

import hashlib
import logging
import platform
import re
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .model import CacheSpec, JobInstance, TriggerContext

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# A job declares
#   cache:
#     key: ${{ runner.os }}-pip-${{ hashFiles('**/requirements.txt') }}
#     restoreKeys:
#       - ${{ runner.os }}-pip-
#
# resolve_keys() turns that into ["Linux-pip-3f2a...", "Linux-pip-"]:
# primary first, then each fallback. The store collaborator probes them in
# order (exact match for the primary, prefix match for fallbacks).
#
# Resolution is pure. hashFiles() values are looked up in the context,
# which the caller fills beforehand with hash_files().
# ---------------------------------------------------------------------

DEFAULT_HASH_EXCLUDES = [
    ".git/**",
    ".ciflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_PLACEHOLDER_RE = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_HASHFILES_RE = re.compile(r"^hashFiles\((.*)\)$")
_STRING_ARG_RE = re.compile(r"'((?:[^']|'')*)'")
_MISSING = object()


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def runner_info() -> Dict[str, str]:
    """Values exposed as runner.* (runner.os is Linux / macOS / Windows)."""
    system = platform.system()
    os_name = {"Darwin": "macOS"}.get(system, system or "Unknown")
    return {"os": os_name, "arch": platform.machine() or "unknown"}


# ---------------------------------------------------------------------
# hashFiles
# ---------------------------------------------------------------------

def hash_key(patterns: Sequence[str]) -> str:
    """Key under which a hashFiles(...) digest is stored in the context."""
    return ", ".join(patterns)


def _parse_hashfiles(expr: str) -> Optional[Tuple[str, ...]]:
    m = _HASHFILES_RE.match(expr)
    if not m:
        return None
    return tuple(a.replace("''", "'") for a in _STRING_ARG_RE.findall(m.group(1)))


def hash_patterns(spec: CacheSpec) -> List[Tuple[str, ...]]:
    """Every hashFiles(...) argument list used by a cache spec's templates."""
    found: List[Tuple[str, ...]] = []
    for template in (spec.key, *spec.restore_keys):
        for expr in _PLACEHOLDER_RE.findall(template):
            patterns = _parse_hashfiles(expr)
            if patterns is not None and patterns not in found:
                found.append(patterns)
    return found


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    # fnmatch's * crosses "/"; a leading "**/" may also match nothing
    return any(fnmatch(rel, g) or (g.startswith("**/") and fnmatch(rel, g[3:])) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def hash_files(
    root: str | Path,
    patterns: Iterable[str],
    *,
    excludes: Optional[List[str]] = None,
) -> str:
    """
    sha256 over the sorted (relative path, content digest) pairs of every
    file matching `patterns` under `root`. Empty string when nothing matches,
    like the hashFiles() of the workflow syntax.
    """
    base = Path(root).resolve()
    exclude_globs = list(DEFAULT_HASH_EXCLUDES) + list(excludes or [])

    files: Dict[str, str] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        for p in sorted(base.glob(pat)):
            if not p.is_file():
                continue
            rel = _relpath(p, base)
            if rel in files or _matches_any_glob(rel, exclude_globs):
                continue
            files[rel] = _hash_file_contents(p)

    if not files:
        return ""
    payload = "\n".join(f"{rel}:{digest}" for rel, digest in sorted(files.items()))
    return _sha256_str(payload)


# ---------------------------------------------------------------------
# Key context + resolution
# ---------------------------------------------------------------------

def key_context(
    instance: JobInstance,
    trigger: TriggerContext,
    *,
    runner: Optional[Mapping[str, str]] = None,
    env: Optional[Mapping[str, str]] = None,
    hashes: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Build the key/value context templates are interpolated against."""
    return {
        "runner": dict(runner if runner is not None else runner_info()),
        "matrix": dict(instance.coordinate),
        "env": {**dict(trigger.env), **dict(env or {}), **dict(instance.job.env)},
        "job": {"id": instance.job_id},
        "github": {
            "event_name": trigger.event,
            "ref_name": trigger.branch,
        },
        "metadata": dict(trigger.metadata),
        "hashFiles": dict(hashes or {}),
    }


def _lookup(context: Mapping[str, Any], expr: str) -> Any:
    patterns = _parse_hashfiles(expr)
    if patterns is not None:
        return context.get("hashFiles", {}).get(hash_key(patterns), _MISSING)

    root, _, rest = expr.partition(".")
    cur: Any = context.get(root, _MISSING)
    if cur is _MISSING or not rest:
        return cur
    # matrix axes may contain dots, so try the whole remainder first
    if isinstance(cur, Mapping) and rest in cur:
        return cur[rest]
    for part in rest.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def render(template: str, context: Mapping[str, Any], warnings: Optional[List[str]] = None) -> str:
    def _sub(m: re.Match) -> str:
        value = _lookup(context, m.group(1))
        if value is _MISSING:
            msg = f"cache key template {template!r}: '{m.group(1)}' is not defined; rendered as ''"
            logger.warning(msg)
            if warnings is not None:
                warnings.append(msg)
            return ""
        if isinstance(value, bool):
            return str(value).lower()
        return "" if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template)


def resolve_keys(
    spec: CacheSpec,
    context: Mapping[str, Any],
    warnings: Optional[List[str]] = None,
) -> List[str]:
    """
    Concrete candidate keys: primary first, then fallbacks in declared order,
    duplicates dropped. Never empty.
    """
    keys = [render(spec.key, context, warnings)]
    for template in spec.restore_keys:
        key = render(template, context, warnings)
        if key and key not in keys:
            keys.append(key)
    return keys
