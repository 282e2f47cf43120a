# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

PUSH = "push"
PULL_REQUEST = "pull_request"
EVENT_KINDS = (PUSH, PULL_REQUEST)

STEP_KINDS = ("shell", "checkout", "toolchain", "cache", "clippy", "fmt")


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a CI job: a shell command or a typed action."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str = "shell"
    data: Dict[str, Any] | None = None
    requires_network: bool = False

    def __post_init__(self) -> None:
        if self.kind not in STEP_KINDS:
            raise ValueError(f"step {self.name!r}: unknown kind {self.kind!r}")


@dataclass(frozen=True)
class Toolchain:
    """A rustup release channel plus the components a job needs from it."""
    channel: str
    components: Tuple[str, ...] = ()
    profile: str = "minimal"
    override: bool = True


@dataclass(frozen=True)
class LintVariant:
    """
    One (package scope, feature set) combination checked by clippy.

    `name` doubles as the check name reported back to the platform.
    """
    name: str
    package: str | None = None
    exclude: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    all_features: bool = False
    all_targets: bool = True
    deny_warnings: bool = True

    def __post_init__(self) -> None:
        if self.all_features and self.features:
            raise ValueError(f"variant {self.name!r}: --all-features conflicts with --features")
        if self.package and self.package in self.exclude:
            raise ValueError(f"variant {self.name!r}: package {self.package!r} is also excluded")

    def cargo_args(self) -> List[str]:
        args = ["--workspace"]
        for pkg in self.exclude:
            args += ["--exclude", pkg]
        if self.package:
            args += ["--package", self.package]
        if self.all_targets:
            args.append("--all-targets")
        if self.all_features:
            args.append("--all-features")
        elif self.features:
            args += ["--features", ",".join(self.features)]
        if self.deny_warnings:
            args += ["--", "-D", "warnings"]
        return args


@dataclass
class Job:
    """
    A CI job: an ordered list of steps run on one isolated environment.

    `strategy` names the matrix a job was expanded from; `fail_fast` only
    affects siblings sharing that strategy.
    """
    name: str
    steps: list[Step]
    runs_on: str = "ubuntu-latest"
    fail_fast: bool = True
    strategy: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)


# ----------------------------------------------------------------------
# Triggers and concurrency
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerRule:
    """Event filter: empty `branches` / `paths` mean "no filter"."""
    event: str
    branches: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Event:
    """An incoming repository event (webhook payload, reduced)."""
    kind: str
    ref: str
    base_ref: str | None = None
    changed_paths: Optional[Tuple[str, ...]] = None
    sha: str | None = None
    repository: str | None = None
    repo_url: str | None = None

    @property
    def target_branch(self) -> str:
        if self.kind == PULL_REQUEST and self.base_ref:
            return short_ref(self.base_ref)
        return short_ref(self.ref)


def short_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class ConcurrencyPolicy:
    group: str = "{workflow}-{ref}"
    cancel_in_progress: bool = True

    def key_for(self, workflow: str, ref: str) -> str:
        return self.group.format(workflow=workflow, ref=ref)


@dataclass
class Workflow:
    """A pipeline descriptor: triggers, concurrency policy and jobs."""
    name: str
    path: str
    triggers: list[TriggerRule]
    jobs: list[Job]
    concurrency: ConcurrencyPolicy | None = None

    def concurrency_key(self, ref: str) -> str | None:
        if self.concurrency is None:
            return None
        return self.concurrency.key_for(self.name, ref)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Annotation:
    """A located finding (lint diagnostic or formatting deviation)."""
    path: str
    start_line: int
    end_line: int
    level: str  # error | warning | notice
    message: str
    title: str | None = None
    start_column: int | None = None
    end_column: int | None = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "path": self.path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "level": self.level,
            "message": self.message,
        }
        if self.title is not None:
            d["title"] = self.title
        if self.start_column is not None:
            d["start_column"] = self.start_column
        if self.end_column is not None:
            d["end_column"] = self.end_column
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Annotation:
        return cls(
            path=data["path"],
            start_line=int(data["start_line"]),
            end_line=int(data.get("end_line", data["start_line"])),
            level=data.get("level", "error"),
            message=data.get("message", ""),
            title=data.get("title"),
            start_column=data.get("start_column"),
            end_column=data.get("end_column"),
        )


@dataclass
class StepResult:
    name: str
    status: str  # success | failed | skipped
    annotations: list[Annotation] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None


@dataclass
class JobResult:
    name: str
    status: str  # success | failed | cancelled
    steps: list[StepResult] = field(default_factory=list)
    failed_step: str | None = None

    @property
    def annotations(self) -> list[Annotation]:
        out: list[Annotation] = []
        for s in self.steps:
            out.extend(s.annotations)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "failed_step": self.failed_step,
            "steps": [
                {
                    "name": s.name,
                    "status": s.status,
                    "error": s.error,
                    "error_kind": s.error_kind,
                    "annotations": [a.to_dict() for a in s.annotations],
                }
                for s in self.steps
            ],
        }


@dataclass
class WorkflowResult:
    workflow: str
    admitted: bool
    reason: str
    run_id: str | None = None
    concurrency_key: str | None = None
    cancelled_run: str | None = None
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    status: str = "rejected"  # rejected | busy | success | failed | cancelled
