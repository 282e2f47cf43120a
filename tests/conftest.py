"""
Shared pytest fixtures for lintci tests.

This module provides:
- a fresh Console per test (no debug output leaking between tests)
- a fake `subprocess.run` result factory for tool-driven steps
- a JobContext factory rooted in a temporary workspace
"""

import subprocess
from pathlib import Path

import pytest

from lintci.context import JobContext
from lintci.model import Event, Job, Step
from lintci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def fresh_console():
    """Install a non-debug console for every test."""
    console = Console(debug=False)
    set_console(console)
    yield console


@pytest.fixture
def completed():
    """Factory for CompletedProcess results returned by a patched subprocess.run."""

    def _make(returncode: int = 0, stdout: str = "", stderr: str = "", args=None):
        return subprocess.CompletedProcess(args=args or [], returncode=returncode, stdout=stdout, stderr=stderr)

    return _make


@pytest.fixture
def make_ctx(tmp_path: Path):
    """Factory for a JobContext whose workspace is a temporary directory."""

    def _make(job: Job | None = None, **kwargs) -> JobContext:
        job = job or Job(name="test", steps=[Step(name="noop", run="true")])
        kwargs.setdefault("workspace", tmp_path)
        kwargs.setdefault("work_dir", tmp_path / ".lintci" / "work")
        return JobContext(job=job, **kwargs)

    return _make


@pytest.fixture
def dev_push():
    """Factory for a push event to dev touching the given paths."""

    def _make(*paths: str, ref: str = "refs/heads/dev") -> Event:
        return Event(kind="push", ref=ref, changed_paths=tuple(paths), sha="a" * 40)

    return _make
