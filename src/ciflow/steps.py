# steps.py
from __future__ import annotations

import io
import os
import re
import subprocess
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .cache import render
from .errors import StepFailure
from .ui.console import get_console

# ---------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------
# The core never looks inside a step. A StepRunner receives the opaque step
# sequence of one instance plus a StepContext and answers Success/Failure
# (bool or StepResult). Anything it raises is turned into a Failure by the
# scheduler.
# ---------------------------------------------------------------------


@dataclass
class StepContext:
    instance_id: str
    job_id: str
    coordinate: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    workdir: Path = Path(".")
    cache_paths: Sequence[str] = ()
    restored: Optional[bytes] = None            # blob from a cache hit, if any
    expressions: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    success: bool
    message: str = ""
    cache_blob: Optional[bytes] = None          # stored under the primary key on success


class StepRunner:
    def run(self, steps: Sequence[Any], context: StepContext) -> Union[bool, StepResult]:
        raise NotImplementedError


class CallableStepRunner(StepRunner):
    """Adapt a plain function `fn(steps, context) -> bool | StepResult`."""

    def __init__(self, fn: Callable[[Sequence[Any], StepContext], Union[bool, StepResult]]):
        self.fn = fn

    def run(self, steps: Sequence[Any], context: StepContext) -> Union[bool, StepResult]:
        return self.fn(steps, context)


def as_result(value: Union[bool, StepResult, None]) -> StepResult:
    if isinstance(value, StepResult):
        return value
    return StepResult(success=bool(value))


# ---------------------------------------------------------------------
# Shell runner
# ---------------------------------------------------------------------

def _matrix_env(coordinate: Mapping[str, Any]) -> Dict[str, str]:
    return {
        "MATRIX_" + re.sub(r"[^A-Za-z0-9]", "_", k).upper(): str(v)
        for k, v in coordinate.items()
    }


def _step_fields(step: Any) -> Dict[str, Any]:
    if isinstance(step, str):
        return {"name": step, "run": step}
    if isinstance(step, Mapping):
        return dict(step)
    return {
        "name": getattr(step, "name", "<unnamed-step>"),
        "run": getattr(step, "run", ""),
        "cwd": getattr(step, "cwd", None),
        "env": dict(getattr(step, "env", {}) or {}),
    }


class ShellStepRunner(StepRunner):
    """
    Runs `run:` steps through the shell, in order, stopping at the first
    non-zero exit. `uses:` steps name hosted actions that have no local
    meaning and are reported and passed over.

    Cache paths declared by the job are unpacked from a restored blob before
    the steps and packed into a new blob after they succeed.
    """

    def __init__(self, repo_root: str | Path = ".", output_tail: int = 4000):
        self.repo_root = Path(repo_root).resolve()
        self.output_tail = output_tail

    def run(self, steps: Sequence[Any], context: StepContext) -> StepResult:
        console = get_console()
        root = (self.repo_root / context.workdir).resolve()

        if context.restored is not None:
            _unpack(context.restored, root)

        for raw in steps:
            step = _step_fields(raw)
            name = str(step.get("name") or step.get("run") or step.get("uses") or "<unnamed-step>")
            cmd = step.get("run")
            if not cmd:
                console.print_step(f"[{context.instance_id}] {name} (not run locally: {step.get('uses', 'no command')})")
                continue

            console.print_step(f"[{context.instance_id}] {name}")
            try:
                self._run_step(context, name, str(cmd), step, root)
            except StepFailure as e:
                output = (e.stderr or e.stdout).strip()
                return StepResult(success=False, message=f"{e}\n{output}".strip())

        blob = _pack(root, context.cache_paths) if context.cache_paths else None
        return StepResult(success=True, cache_blob=blob)

    def _run_step(self, context: StepContext, name: str, cmd: str, step: Mapping[str, Any], root: Path) -> None:
        cwd = (root / (step.get("cwd") or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{context.instance_id}] step '{name}' cwd not found: {cwd}")

        env = os.environ.copy()
        env.update(context.env)
        env.update({k: str(v) for k, v in (step.get("env") or {}).items()})
        env.update(_matrix_env(context.coordinate))

        command = render(cmd, context.expressions) if context.expressions else cmd
        proc = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            capture_output=True,
        )
        if proc.returncode != 0:
            raise StepFailure(
                job=context.instance_id,
                step=name,
                cmd=command,
                exit_code=proc.returncode,
                stdout=proc.stdout[-self.output_tail:],
                stderr=proc.stderr[-self.output_tail:],
            )


# Archive prefixes for cache files that live outside the work tree.
HOME_ARC = "@ciflow-home"
ABS_ARC = "@ciflow-root"


def _arcname(path: Path, root: Path) -> str:
    path = path.resolve()
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        pass
    try:
        return f"{HOME_ARC}/{path.relative_to(Path.home().resolve()).as_posix()}"
    except ValueError:
        return f"{ABS_ARC}/{path.relative_to(path.anchor).as_posix()}"


def _destination(name: str, root: Path) -> Tuple[Path, str]:
    head, _, rest = name.partition("/")
    if head == HOME_ARC and rest:
        return Path.home(), rest
    if head == ABS_ARC and rest:
        return Path(root.anchor), rest
    return root, name


def _pack(root: Path, paths: Sequence[str]) -> Optional[bytes]:
    """
    Tar.gz of every file under the declared paths. Files inside the work
    tree keep their relative names; files under the home directory or
    elsewhere on disk are stored under HOME_ARC / ABS_ARC so they can be
    put back where they came from.
    """
    buf = io.BytesIO()
    added = 0
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = Path(os.path.expanduser(entry))
            src = src if src.is_absolute() else root / src
            if not src.exists():
                continue
            for f in [src] if src.is_file() else sorted(p for p in src.rglob("*") if p.is_file()):
                tar.add(str(f), arcname=_arcname(f, root), recursive=False)
                added += 1
    return buf.getvalue() if added else None


def _unpack(blob: bytes, root: Path) -> List[str]:
    restored: List[str] = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            dest, name = _destination(member.name, root)
            if _escapes(name):
                continue
            member.name = name
            tar.extract(member, path=str(dest), filter="data")
            restored.append(str(dest / name))
    return restored


def _escapes(name: str) -> bool:
    p = Path(name)
    return p.is_absolute() or ".." in p.parts
