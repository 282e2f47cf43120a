from .dsl import job, sh, matrix, wf, on_push, on_pull_request, JobBuilder, build
from .runner import run_job, run_workflow, load_workflow
from .model import Event, Job, Step, LintVariant, Toolchain, Workflow
from .trigger import evaluate

__all__ = [
    "job", "sh", "matrix", "wf", "on_push", "on_pull_request", "JobBuilder", "build",
    "run_job", "run_workflow", "load_workflow",
    "Event", "Job", "Step", "LintVariant", "Toolchain", "Workflow",
    "evaluate",
]
