# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .model import Annotation

INFRASTRUCTURE = "infrastructure"
TOOL_UNAVAILABLE = "tool_unavailable"
POLICY = "policy"
CACHE = "cache"


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-step failure reporting
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class StepFailure(Exception):
    """A step command exited non-zero for reasons other than a policy finding."""
    job: str
    step: str
    cmd: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    kind = INFRASTRUCTURE

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass
class PolicyViolation(Exception):
    """Lint warnings or formatting deviations; fails the job but not sibling steps."""
    job: str
    step: str
    annotations: List[Annotation]
    exit_code: int | None = None

    kind = POLICY

    def __str__(self) -> str:
        n = len(self.annotations)
        return f"[{self.job}] step '{self.step}' reported {n} violation{'s' if n != 1 else ''}"


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "sudo": "Run on a host with sudo, or pre-install the system packages.",
    "apt-get": "System package installs need a Debian/Ubuntu runner.",
}


def tool_unavailable(tool: str, job: str, step: str | None = None) -> CIError:
    hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
    return CIError(
        kind=TOOL_UNAVAILABLE,
        job=job,
        step=step,
        message=f"{tool} is not available",
        details={"hint": hint, "tool": tool},
    )
