# context.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List

from .cache import CacheStore
from .model import Job, Step


@dataclass
class JobContext:
    """
    Mutable per-job execution state shared by the step executors.

    Each job gets its own context, so toolchain pins (`env`) and post steps
    never leak between jobs running in parallel.
    """
    job: Job
    workspace: Path
    cache: CacheStore | None = None
    reporter: object | None = None  # ChecksReporter-like: publish(name, annotations, conclusion=...)
    sha: str | None = None
    ref: str | None = None
    repo_url: str | None = None
    work_dir: Path = Path(".lintci/work")
    should_stop: Callable[[], bool] = lambda: False
    env: Dict[str, str] = field(default_factory=dict)
    toolchain: str | None = None
    post_steps: List[Callable[[], None]] = field(default_factory=list)

    def step_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.job.env or {})
        env.update(self.env)
        return env

    def cwd_for(self, step: Step) -> Path:
        return (self.workspace / (step.cwd or ".")).resolve()
