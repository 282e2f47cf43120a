# agent/executor.py
from __future__ import annotations

import io
import os
import sys
from pathlib import Path

from lintci.cache import CacheStore
from lintci.context import JobContext
from lintci.model import Job, Step
from lintci.reporter import DEFAULT_API_URL, ChecksReporter
from lintci.runner import run_job
from lintci.ui.console import get_console

from .api_client import APIClient, APIError
from .models import ExecutionResult, Lease


class LogCapture:
    """
    Context manager that captures stdout/stderr for later submission to API.

    Logs are captured in a buffer and sent at job completion via complete_lease().
    This ensures all logs are captured even if exceptions occur during execution.
    """

    def __init__(self):
        self.log_buffer = io.StringIO()
        self.original_stdout = sys.stdout
        self.original_stderr = sys.stderr

    def __enter__(self):
        sys.stdout = self
        sys.stderr = self
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        sys.stdout = self.original_stdout
        sys.stderr = self.original_stderr

    def write(self, text: str) -> int:
        self.log_buffer.write(text)
        return len(text)

    def flush(self) -> None:
        pass

    def get_logs(self) -> str:
        return self.log_buffer.getvalue()


def job_to_dict(job: Job) -> dict:
    """
    Convert a Job model to a dictionary for API submission.
    This is the reverse of dict_to_job().
    """
    steps = []
    for step in job.steps:
        step_dict = {"name": step.name, "run": step.run, "kind": step.kind}
        if step.cwd is not None:
            step_dict["cwd"] = step.cwd
        if step.data is not None:
            step_dict["data"] = step.data
        if step.requires_network:
            step_dict["requires_network"] = True
        steps.append(step_dict)

    return {
        "name": job.name,
        "steps": steps,
        "runs_on": job.runs_on,
        "fail_fast": job.fail_fast,
        "strategy": job.strategy,
        "env": job.env,
        "requires": job.requires,
    }


def dict_to_job(job_dict: dict) -> Job:
    """Convert a job dictionary from the API to a Job model."""
    steps = [
        Step(
            name=s["name"],
            run=s.get("run", ""),
            cwd=s.get("cwd"),
            kind=s.get("kind", "shell"),
            data=s.get("data"),
            requires_network=s.get("requires_network", False),
        )
        for s in job_dict.get("steps", [])
    ]
    return Job(
        name=job_dict["name"],
        steps=steps,
        runs_on=job_dict.get("runs_on", "ubuntu-latest"),
        fail_fast=job_dict.get("fail_fast", True),
        strategy=job_dict.get("strategy"),
        env=job_dict.get("env", {}),
        requires=job_dict.get("requires", []),
    )


def _reporter_for(lease: Lease) -> ChecksReporter | None:
    # the token lives on the agent host; it never travels through the control plane
    token = os.environ.get("GITHUB_TOKEN")
    if not token or not lease.repository or not lease.sha:
        return None
    return ChecksReporter(
        lease.repository,
        lease.sha,
        token,
        api_url=os.environ.get("GITHUB_API_URL", DEFAULT_API_URL),
    )


def _cancel_check(api_client: APIClient, run_id: str):
    def should_stop() -> bool:
        try:
            return api_client.is_cancelled(run_id)
        except APIError as e:
            get_console().print_warning(f"could not query cancellation for run {run_id}: {e}")
            return False
    return should_stop


def execute_lease(
    lease: Lease,
    api_client: APIClient,
    work_dir: Path,
    cache_root: Path = Path(".lintci/cache"),
) -> ExecutionResult:
    """
    Execute a job lease: clone at the event commit, run the job, collect logs.

    Returns:
        ExecutionResult with status ("ok" | "failed" | "cancelled") and logs
    """
    log_capture = LogCapture()
    error = None

    try:
        with log_capture:
            job = dict_to_job(lease.job)
            ctx = JobContext(
                job=job,
                workspace=work_dir,
                cache=CacheStore(cache_root),
                reporter=_reporter_for(lease),
                sha=lease.sha,
                ref=lease.ref,
                repo_url=lease.repo_url or None,
                work_dir=work_dir / lease.job_name,
                should_stop=_cancel_check(api_client, lease.run_id),
            )
            result = run_job(job, ctx)
        status = {"success": "ok", "cancelled": "cancelled"}.get(result.status, "failed")
        job_results = result.to_dict()
    except Exception as e:
        status = "failed"
        error = str(e)
        job_results = {"error": error, "error_type": type(e).__name__}

    logs = log_capture.get_logs()
    if error and error not in logs:
        logs = f"{logs}\nError: {error}" if logs else error

    return ExecutionResult(status=status, logs=logs, job_results=job_results, error=error)
