# step_workflows/fmt.py
from __future__ import annotations

from typing import List

from ..annotations import parse_fmt_check
from ..context import JobContext
from ..errors import PolicyViolation
from ..model import Annotation, Job, Step
from ..proc import failure, run_tool
from ..ui.console import get_console


def fmt_check(name: str = "rustfmt", *, all_packages: bool = True) -> Step:
    """Formatting conformance in check mode: reports diffs, never rewrites files."""
    args = ["--all"] if all_packages else []
    return Step(name=name, kind="fmt", data={"check_name": name, "args": args + ["--", "--check"]})


def fmt_argv(step: Step) -> List[str]:
    args = list((step.data or {}).get("args", ["--", "--check"]))
    if "--check" not in args:
        raise ValueError(f"fmt step {step.name!r} must run in --check mode")
    return ["cargo", "fmt", *args]


def run_fmt(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    argv = fmt_argv(step)
    proc = run_tool(ctx, step, argv)
    if proc.returncode == 0:
        get_console().print_info(f"[{job.name}] {step.name}: formatted")
        return []

    # rustfmt writes the diff to stdout; older releases used stderr
    annotations = parse_fmt_check((proc.stdout or "") + "\n" + (proc.stderr or ""), ctx.workspace)
    if annotations:
        raise PolicyViolation(job=job.name, step=step.name, annotations=annotations, exit_code=proc.returncode)
    raise failure(ctx, step, " ".join(argv), proc)
