# step_workflows/lint.py
from __future__ import annotations

from typing import List

from ..annotations import parse_cargo_messages, summarize
from ..context import JobContext
from ..errors import PolicyViolation
from ..model import Annotation, Job, LintVariant, Step
from ..proc import failure, run_tool
from ..ui.console import get_console


# ---------------------------------------------------------------------
# Lint step helper
# ---------------------------------------------------------------------

def clippy_step(variant: LintVariant) -> Step:
    """Create a clippy invocation for one (package scope, feature set) variant."""
    return Step(
        name=variant.name,
        kind="clippy",
        data={
            "check_name": variant.name,
            "args": variant.cargo_args(),
            "package": variant.package,
            "exclude": list(variant.exclude),
            "features": list(variant.features),
            "all_features": variant.all_features,
        },
    )


def clippy_steps(variants: List[LintVariant]) -> List[Step]:
    return [clippy_step(v) for v in variants]


def clippy_argv(step: Step) -> List[str]:
    # --message-format must precede the "--" that starts the rustc flags
    return ["cargo", "clippy", "--message-format=json", *(step.data or {}).get("args", [])]


# ---------------------------------------------------------------------
# Lint step execution
# ---------------------------------------------------------------------

def run_clippy(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    """
    Run one clippy variant.

    Returns the (non-failing) findings on success. Raises PolicyViolation
    when clippy rejects the code with located diagnostics, and StepFailure
    when cargo fails without any (dependency fetch, missing system library).
    The runner moves on to the next variant in both cases.
    """
    console = get_console()
    argv = clippy_argv(step)
    console.print_debug(f"[{job.name}] {' '.join(argv)}")

    proc = run_tool(ctx, step, argv)
    annotations = parse_cargo_messages(proc.stdout or "", ctx.workspace)

    if proc.returncode == 0:
        console.print_info(f"[{job.name}] {step.name}: {summarize(annotations)}")
        return annotations

    if annotations:
        raise PolicyViolation(job=job.name, step=step.name, annotations=annotations, exit_code=proc.returncode)

    raise failure(ctx, step, " ".join(argv), proc)
