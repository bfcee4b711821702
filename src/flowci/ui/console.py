"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, List, Optional

from ..model import JobRun, Run, StepRun

STATUS_MARKS = {
    "success": "✓",
    "failure": "✗",
    "timed_out": "✗",
    "cancelled": "⊘",
    "skipped": "⏭",
}


class Console:
    """Centralized console output formatting (safe to call from worker threads)."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines (errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._progress(f"\n{title}", "-" * len(title))

    def print_run_started(self, run: Run, job_count: int) -> None:
        """Print run start information."""
        github = run.context.get("github", {})
        self._progress(
            "\nRUN STARTED",
            f"Workflow: {run.workflow}",
            f"Run ID: {run.run_id}",
            f"Event: {github.get('event_name', '?')} {github.get('ref', '')}".rstrip(),
            f"Jobs: {job_count}",
            "",
        )

    def print_waiting_for_group(self, owner: str, group: str) -> None:
        self._progress(f"[{owner}] waiting for concurrency group '{group}'")

    def print_job_start(self, key: str, runs_on: str) -> None:
        self._progress(f"\nJOB STARTED: {key} (runs-on: {runs_on})")

    def print_step(self, job: str, name: str) -> None:
        self._progress(f"[{job}] ▶ {name}")

    def print_step_result(self, job: str, step: StepRun) -> None:
        mark = STATUS_MARKS.get(step.status.value, "?")
        line = f"[{job}] {mark} {step.name} ({step.status.value}, {step.duration:.1f}s)"
        if step.conclusion is not None and step.conclusion is not step.status:
            line += f" -> {step.conclusion.value} (continue-on-error)"
        lines = [line]
        if step.status.failed:
            if step.error:
                lines.append(f"[{job}]   Error: {step.error}")
            tail = step.output.strip().splitlines()[-20:] if step.output else []
            if self.debug:
                tail = step.output.strip().splitlines()
            lines.extend(f"[{job}]   | {t}" for t in tail)
        self._progress(*lines)

    def print_job_finished(self, job: JobRun) -> None:
        mark = STATUS_MARKS.get(job.status.value, "?")
        self._progress(f"{mark} JOB {job.status.value.upper()}: {job.key}")

    def print_job_skipped(self, key: str, reason: str) -> None:
        self._progress(f"⏭ JOB SKIPPED: {key} ({reason})")

    def print_plan(self, workflow: str, levels: List[List[str]]) -> None:
        """Print the stages a workflow's jobs will run in."""
        self._progress(f"PLAN: {workflow}")
        for idx, level in enumerate(levels):
            self._progress(f"  Stage {idx + 1}: {', '.join(level)}")

    def print_results(self, run: Run) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, f"RESULTS ({run.workflow} {run.run_id})", "=" * 40]
        for key, job in run.jobs.items():
            lines.append(f"  {key}: {job.status.value.upper()}")
        lines.append(f"RUN: {run.status.value.upper()}")
        if run.cause:
            lines.append(f"Cause: {run.cause}")
        self._progress(*lines)

    def print_run_detail(self, run: Run, *, show_output: bool = False) -> None:
        """Print a stored run for `flowci show`."""
        lines = [
            f"Run {run.run_id}",
            f"Workflow: {run.workflow}",
            f"Status: {run.status.value}",
        ]
        if run.cause:
            lines.append(f"Cause: {run.cause}")
        for key, job in run.jobs.items():
            lines.append(f"  {STATUS_MARKS.get(job.status.value, '·')} {key}: {job.status.value}")
            for step in job.steps:
                lines.append(f"      {STATUS_MARKS.get(step.status.value, '·')} {step.name}: {step.status.value}")
                if show_output and step.output:
                    lines.extend(f"        | {t}" for t in step.output.rstrip().splitlines())
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
