# runner.py
from __future__ import annotations

import os
import runpy
import subprocess
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import DEFAULT_CACHE_DIR, CacheStore
from .concurrency import Governor, InMemoryGovernor
from .context import JobContext
from .errors import INFRASTRUCTURE, CIError, PolicyViolation, StepFailure
from .model import Annotation, Event, Job, JobResult, Step, StepResult, Workflow, WorkflowResult
from .proc import OUTPUT_TAIL
from .reporter import ReportError
from .step_workflows import fmt, lint, setup
from .trigger import evaluate
from .ui.console import get_console

StepExecutor = Callable[[Job, Step, JobContext], List[Annotation]]


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a python file path.

    The file must define either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"lintci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    else:
        loaded = globals_dict.get("WORKFLOW")

    if not isinstance(loaded, Workflow):
        raise TypeError(
            "Workflow file must define workflow() -> Workflow or WORKFLOW = wf(...)."
        )
    return loaded


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_shell_step(job: Job, step: Step, ctx: JobContext) -> List[Annotation]:
    cwd = ctx.cwd_for(step)
    if not cwd.exists():
        raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

    # multi-line scripts stop at the first failing command
    proc = subprocess.run(
        "set -e\n" + step.run,
        shell=True,
        cwd=str(cwd),
        env=ctx.step_env(),
        text=True,
        capture_output=True,   # so you can show output on failure
    )

    if proc.returncode != 0:
        raise StepFailure(
            job=job.name,
            step=step.name,
            cmd=step.run,
            exit_code=proc.returncode,
            stdout=proc.stdout[-OUTPUT_TAIL:],
            stderr=proc.stderr[-OUTPUT_TAIL:],
        )
    return []


STEP_EXECUTORS: Dict[str, StepExecutor] = {
    "shell": _run_shell_step,
    "checkout": setup.run_checkout,
    "toolchain": setup.run_toolchain,
    "cache": setup.run_cache,
    "clippy": lint.run_clippy,
    "fmt": fmt.run_fmt,
}

REPORTED_KINDS = ("clippy", "fmt")
VARIANT_KINDS = ("clippy",)


def _report(job: Job, step: Step, ctx: JobContext, annotations: List[Annotation], conclusion: str) -> None:
    if ctx.reporter is None or step.kind not in REPORTED_KINDS:
        return
    name = (step.data or {}).get("check_name", step.name)
    try:
        ctx.reporter.publish(name, annotations, conclusion=conclusion)
    except ReportError as e:
        get_console().print_warning(f"[{job.name}] could not publish check '{name}': {e}")


def run_job(job: Job, ctx: JobContext) -> JobResult:
    """
    Run the steps of one job in order.

      - cancellation is checked before every step
      - infrastructure errors abort the remaining steps, except in a
        lint variant, where the next variant still runs
      - policy violations are recorded and the next step still runs
      - post steps (cache save) run unless the job was cancelled or aborted
    """
    console = get_console()
    console.print_job_start(job.name)

    result = JobResult(name=job.name, status="success")
    aborted = False
    cancelled = False

    for step in job.steps:
        if ctx.should_stop():
            console.print_cancelled(job.name, step.name)
            cancelled = True
            break

        console.print_step(job.name, step.name)
        executor = STEP_EXECUTORS[step.kind]
        try:
            annotations = executor(job, step, ctx) or []
        except PolicyViolation as e:
            console.print_failure(step.name, str(e), exit_code=e.exit_code)
            console.print_annotations(e.annotations)
            result.steps.append(StepResult(step.name, "failed", list(e.annotations), str(e), e.kind))
            result.failed_step = result.failed_step or step.name
            _report(job, step, ctx, e.annotations, "failure")
            continue
        except (CIError, StepFailure) as e:
            hint = e.details.get("hint") if isinstance(e, CIError) else None
            exit_code = e.exit_code if isinstance(e, StepFailure) else None
            console.print_failure(step.name, str(e), exit_code=exit_code, hint=hint)
            if isinstance(e, StepFailure) and console.debug:
                console.print_debug(e.stderr or e.stdout)
            result.steps.append(StepResult(step.name, "failed", error=str(e), error_kind=e.kind))
            # a variant that fails to build does not stop its sibling variants
            if isinstance(e, StepFailure) and step.kind in VARIANT_KINDS:
                result.failed_step = result.failed_step or step.name
                _report(job, step, ctx, [], "failure")
                continue
            result.failed_step = step.name
            aborted = True
            break
        except OSError as e:
            console.print_failure(step.name, str(e))
            result.steps.append(StepResult(step.name, "failed", error=str(e), error_kind=INFRASTRUCTURE))
            result.failed_step = step.name
            aborted = True
            break

        if annotations:
            console.print_annotations(annotations)
        result.steps.append(StepResult(step.name, "success", list(annotations)))
        _report(job, step, ctx, annotations, "success")

    if not cancelled and not aborted:
        for post in ctx.post_steps:
            post()

    if cancelled:
        result.status = "cancelled"
    elif result.failed_step is not None:
        result.status = "failed"

    console.print_job_result(result)
    return result


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_workflow(
    workflow: Workflow,
    event: Event,
    *,
    repo_root: str | Path = ".",
    cache_root: str | Path | None = DEFAULT_CACHE_DIR,
    governor: Optional[Governor] = None,
    reporter: object | None = None,
    max_workers: int | None = None,
    run_id: str | None = None,
) -> WorkflowResult:
    """
    Evaluate the trigger, take the concurrency slot, and run every job.

    Jobs are independent and run in parallel; each gets its own context.
    A newer run on the same concurrency key cancels this one cooperatively.
    """
    console = get_console()
    decision = evaluate(workflow, event)
    console.print_trigger_decision(workflow.name, decision.admitted, decision.reason)

    result = WorkflowResult(workflow=workflow.name, admitted=decision.admitted, reason=decision.reason)
    if not decision.admitted:
        return result

    governor = governor or InMemoryGovernor()
    run_id = run_id or uuid.uuid4().hex
    key = workflow.concurrency_key(event.ref)
    result.run_id = run_id
    result.concurrency_key = key

    if key is not None:
        acq = governor.acquire(key, run_id, preempt=workflow.concurrency.cancel_in_progress)
        if not acq.acquired:
            console.print_info(f"concurrency key {key!r} is held by run {acq.holder}; not starting")
            result.status = "busy"
            return result
        if acq.cancelled:
            console.print_run_preempted(acq.cancelled)
            result.cancelled_run = acq.cancelled

    console.print_run_started(workflow.name, run_id, key, len(workflow.jobs))

    repo_root_p = Path(repo_root).resolve()
    cache = CacheStore(cache_root) if cache_root is not None else None

    # one abort flag per matrix strategy, tripped by a failing fail-fast sibling
    strategy_abort: Dict[str, threading.Event] = {
        j.strategy: threading.Event() for j in workflow.jobs if j.strategy
    }

    def make_stop(j: Job) -> Callable[[], bool]:
        flag = strategy_abort.get(j.strategy) if j.strategy else None
        return lambda: governor.is_cancelled(run_id) or (flag is not None and flag.is_set())

    if max_workers is None:
        max_workers = max(1, min(len(workflow.jobs), os.cpu_count() or 2))

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {}
            for j in workflow.jobs:
                ctx = JobContext(
                    job=j,
                    workspace=repo_root_p,
                    cache=cache,
                    reporter=reporter,
                    sha=event.sha,
                    ref=event.ref,
                    repo_url=event.repo_url,
                    work_dir=repo_root_p / ".lintci" / "work" / j.name,
                    should_stop=make_stop(j),
                )
                futures[pool.submit(run_job, j, ctx)] = j

            for fut in as_completed(futures):
                j = futures[fut]
                try:
                    job_result = fut.result()
                except Exception as e:
                    console.print_exception(e)
                    job_result = JobResult(name=j.name, status="failed", failed_step=None)
                result.jobs[j.name] = job_result

                if job_result.status == "failed" and j.strategy and j.fail_fast:
                    strategy_abort[j.strategy].set()
    finally:
        if key is not None:
            governor.release(key, run_id)

    # keep descriptor order for reporting
    result.jobs = {j.name: result.jobs[j.name] for j in workflow.jobs}
    statuses = {r.status for r in result.jobs.values()}
    if "failed" in statuses:
        result.status = "failed"
    elif "cancelled" in statuses:
        result.status = "cancelled"
    else:
        result.status = "success"
    return result
