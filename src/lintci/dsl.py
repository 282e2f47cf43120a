# src/lintci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import (
    PULL_REQUEST,
    PUSH,
    ConcurrencyPolicy,
    Job,
    Step,
    TriggerRule,
    Workflow,
)


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, network: bool = False) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, requires_network=network)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    runs_on: str = "ubuntu-latest",
    fail_fast: bool = True,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final = list(steps)
    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    names = [s.name for s in steps_final]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"job({name!r}) has duplicate step names: {dupes}")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        fail_fast=fail_fast,
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._runs_on = "ubuntu-latest"
        self._fail_fast = True

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def fail_fast(self, enabled: bool = True):
        self._fail_fast = enabled
        return self

    def requires(self, *tools: str):
        self._requires.extend(tools)
        return self

    def step(self, step: Step):
        self._steps.append(step)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None):
        return self.step(sh(name, run, cwd=cwd))

    def with_env(self, **env):
        # force values to str for stable hashing + env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def build(self) -> Job:
        return job(
            self.name,
            *self._steps,
            runs_on=self._runs_on,
            fail_fast=self._fail_fast,
            env=self._env,
            requires=self._requires,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('fmt').step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Every expanded job shares `strategy=<key>`; with fail_fast=True the
    runner cancels the remaining siblings once one of them fails.

    Example:
        matrix("toolchain", ["stable", "beta"]).jobs(
            lambda v: job(f"clippy-{v}", ...)
        )
    """
    def __init__(self, key: str, values: Iterable[Any], *, fail_fast: bool = True):
        self.key = key
        self.values = list(values)
        self.fail_fast = fail_fast

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [replace(builder(v), strategy=self.key, fail_fast=self.fail_fast) for v in self.values]


def matrix(key: str, values: Iterable[Any], *, fail_fast: bool = True) -> Matrix:
    return Matrix(key, values, fail_fast=fail_fast)


# ---------------------------------------------------------------------
# Triggers / concurrency
# ---------------------------------------------------------------------

def on_push(*, branches: Iterable[str] = (), paths: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(event=PUSH, branches=tuple(branches), paths=tuple(paths))


def on_pull_request(*, branches: Iterable[str] = (), paths: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(event=PULL_REQUEST, branches=tuple(branches), paths=tuple(paths))


def concurrency(group: str = "{workflow}-{ref}", *, cancel_in_progress: bool = True) -> ConcurrencyPolicy:
    return ConcurrencyPolicy(group=group, cancel_in_progress=cancel_in_progress)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    name: str,
    *jobs: Job | List[Job],
    path: str,
    on: Iterable[TriggerRule],
    concurrency: ConcurrencyPolicy | None = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from lintci import wf, job, sh, on_push

        def workflow():
            return wf(
                "Lint",
                job(...),
                job(...),
                path="lintci_workflow.py",
                on=[on_push(branches=["dev"])],
            )

    Lists (e.g. from matrix(...).jobs(...)) are flattened.
    """
    flat: List[Job] = []
    for j in jobs:
        flat.extend(j if isinstance(j, list) else [j])

    names = [j.name for j in flat]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate job names found: {dupes}")

    return Workflow(name=name, path=path, triggers=list(on), jobs=flat, concurrency=concurrency)
