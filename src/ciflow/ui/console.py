"""Console output formatting utilities for ciflow."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..aggregate import ExecutionReport
    from ..model import JobInstance


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress per-instance progress lines
        """
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        source: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Definition: {source}")
        print(f"Jobs: {job_count} ({instance_count} instances)")
        print()

    def print_instance_start(self, instance_id: str) -> None:
        if not self.quiet:
            print(f"JOB STARTED: {instance_id}")

    def print_step(self, name: str) -> None:
        """Print step start message."""
        if not self.quiet:
            print(f"STEP: {name}")

    def print_outcome(self, instance: "JobInstance") -> None:
        """Print the terminal outcome of one instance."""
        if self.quiet:
            return
        line = f"JOB {instance.outcome.value.upper()}: {instance.instance_id}"
        if instance.skip_reason:
            line += f" ({instance.skip_reason})"
        print(line)
        if instance.error:
            if self.debug:
                print(f"Error details: {instance.error}")
            else:
                print(f"Error: {instance.error.splitlines()[0]}")

    def print_cache(self, instance_id: str, reason: str) -> None:
        if not self.quiet:
            print(f"CACHE [{instance_id}]: {reason}")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        print(f"  {name} ({reason})")

    def print_results(self, report: "ExecutionReport") -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for entry in report.instances:
            duration = f" {entry.duration:.1f}s" if entry.duration is not None else ""
            print(f"  {entry.instance_id}: {entry.outcome.upper()}{duration}")
        for job in report.jobs:
            if not job.instance_count:
                print(f"  {job.job_id}: SKIPPED (empty matrix)")
        for action in report.actions:
            print(f"  action {action.id}: {action.outcome.upper()}")
        for warning in report.warnings:
            print(f"WARNING: {warning}")
        print()
        for line in report.summary_lines():
            print(line)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
