# proc.py
from __future__ import annotations

import subprocess
from typing import List

from .context import JobContext
from .errors import StepFailure, tool_unavailable
from .model import Step

OUTPUT_TAIL = 4000


def run_tool(ctx: JobContext, step: Step, argv: List[str]) -> subprocess.CompletedProcess:
    """Run argv for `step` in the job's workspace; a missing binary is a tool error."""
    cwd = ctx.cwd_for(step)
    if not cwd.exists():
        raise FileNotFoundError(f"[{ctx.job.name}] step '{step.name}' cwd not found: {cwd}")
    try:
        return subprocess.run(
            argv,
            cwd=str(cwd),
            env=ctx.step_env(),
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        raise tool_unavailable(argv[0], ctx.job.name, step.name) from None


def failure(ctx: JobContext, step: Step, cmd: str, proc: subprocess.CompletedProcess) -> StepFailure:
    return StepFailure(
        job=ctx.job.name,
        step=step.name,
        cmd=cmd,
        exit_code=proc.returncode,
        stdout=(proc.stdout or "")[-OUTPUT_TAIL:],
        stderr=(proc.stderr or "")[-OUTPUT_TAIL:],
    )
