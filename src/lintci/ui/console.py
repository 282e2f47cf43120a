"""Console output formatting utilities for lintci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from lintci.model import Annotation, JobResult, WorkflowResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_trigger_decision(self, workflow: str, admitted: bool, reason: str) -> None:
        verdict = "ADMITTED" if admitted else "REJECTED"
        self._out(f"TRIGGER {verdict}: {workflow} ({reason})")

    def print_run_started(
        self,
        workflow: str,
        run_id: str,
        concurrency_key: Optional[str],
        job_count: int,
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Workflow: {workflow}", f"Run ID: {run_id}"]
        if concurrency_key:
            lines.append(f"Concurrency key: {concurrency_key}")
        lines += [f"Jobs: {job_count}", ""]
        self._out(*lines)

    def print_run_preempted(self, cancelled_run: str) -> None:
        self._out(f"CANCELLED in-flight run {cancelled_run} (same concurrency key)")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] ▶ {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_annotations(self, annotations: Iterable[Annotation]) -> None:
        lines = []
        for a in annotations:
            title = f" [{a.title}]" if a.title else ""
            first = a.message.splitlines()[0] if a.message else ""
            lines.append(f"  {a.level}: {a.path}:{a.start_line}{title} {first}")
        if lines:
            self._out(*lines)

    def print_cancelled(self, job: str, before_step: Optional[str]) -> None:
        where = f" before '{before_step}'" if before_step else ""
        self._out(f"[{job}] cancelled{where}")

    def print_cache_hit(self, job: str, reason: str) -> None:
        """Print cache hit message."""
        self._out(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str, reason: str = "cache miss") -> None:
        """Print cache miss message."""
        self._out(f"[{job}] CACHE: miss ({reason})")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{job}] CACHE: saved ({short_key})")

    def print_job_result(self, result: JobResult) -> None:
        status = "SUCCESS" if result.status == "success" else result.status.upper()
        line = f"JOB {status}: {result.name}"
        if result.failed_step:
            line += f" (failed step: {result.failed_step})"
        self._out(line)

    def print_results(self, result: WorkflowResult) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for name, job in result.jobs.items():
            status = "SUCCESS" if job.status == "success" else job.status.upper()
            lines.append(f"  {name}: {status}")
            for step in job.steps:
                if step.status != "success" or step.annotations:
                    lines.append(f"    {step.name}: {step.status} ({len(step.annotations)} finding(s))")
        lines.append(f"Overall: {result.status.upper()}")
        self._out(*lines)

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
        lines = [f"\nERROR: {title}", message]
        lines += [f"  {d}" for d in details or []]
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(exc)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_agent_started(self, agent_id: str, api: str, poll_interval: int) -> None:
        """Print agent start information."""
        self._out("\nAGENT STARTED", f"Agent ID: {agent_id}", f"API: {api}", f"Polling every: {poll_interval}s", "")

    def print_lease_acquired(self, job_name: str, run_id: str) -> None:
        """Print lease acquisition message."""
        self._out("\nLEASE ACQUIRED", f"Job: {job_name}", f"Run ID: {run_id}")

    def print_execution_complete(self, status: str, duration: Optional[float] = None) -> None:
        """Print execution completion message."""
        lines = ["\nEXECUTION COMPLETE", f"Status: {status}"]
        if duration is not None:
            lines.append(f"Duration: {duration:.1f}s")
        self._out(*lines)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

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
