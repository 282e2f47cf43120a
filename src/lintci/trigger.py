# trigger.py
"""
Trigger evaluation: decide whether an incoming event starts a run.

Filters use the hosting platform's glob syntax rather than fnmatch:

  *      any run of characters except '/'
  **     any run of characters including '/'
  **/    zero or more leading directories ("**/Cargo.toml" matches "Cargo.toml")
  ?      a single character except '/'
  !pat   negation; the last pattern that matches a path decides
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Sequence, Tuple

from .model import EVENT_KINDS, Event, TriggerRule, Workflow, short_ref


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                i += 2
                if pattern.startswith("/", i):
                    out.append("(?:.*/)?")
                    i += 1
                else:
                    out.append(".*")
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile(r"\A" + "".join(out) + r"\Z")


def match_glob(path: str, pattern: str) -> bool:
    return compile_glob(pattern).match(path) is not None


def matches_filters(path: str, patterns: Sequence[str]) -> bool:
    """True if `path` is selected by the ordered filter list (negations included)."""
    selected = False
    for pat in patterns:
        if pat.startswith("!"):
            if match_glob(path, pat[1:]):
                selected = False
        elif match_glob(path, pat):
            selected = True
    return selected


def _normalize_path(path: str) -> str:
    path = path.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


@dataclass(frozen=True)
class TriggerDecision:
    admitted: bool
    reason: str
    matched_paths: Tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return self.admitted


class TriggerEvaluator:
    """Pure predicate over (event kind, target branch, changed paths)."""

    def __init__(self, rules: Iterable[TriggerRule]):
        self.rules = {r.event: r for r in rules}

    def evaluate(self, event: Event) -> TriggerDecision:
        if event.kind not in EVENT_KINDS:
            return TriggerDecision(False, f"event kind {event.kind!r} is not supported")

        rule = self.rules.get(event.kind)
        if rule is None:
            return TriggerDecision(False, f"workflow does not run on {event.kind!r}")

        branch = event.target_branch
        if rule.branches and not matches_filters(branch, [short_ref(b) for b in rule.branches]):
            return TriggerDecision(False, f"branch {branch!r} not in {list(rule.branches)}")

        if not rule.paths:
            return TriggerDecision(True, "no path filter")

        # Unknown change sets never start a run.
        if not event.changed_paths:
            return TriggerDecision(False, "no changed paths available")

        matched = tuple(
            p for p in (_normalize_path(c) for c in event.changed_paths)
            if matches_filters(p, rule.paths)
        )
        if not matched:
            return TriggerDecision(False, f"no changed path matches {list(rule.paths)}")

        return TriggerDecision(True, f"matched {len(matched)} changed path(s)", matched)

    def admits(self, event: Event) -> bool:
        return self.evaluate(event).admitted


def evaluate(workflow: Workflow, event: Event) -> TriggerDecision:
    return TriggerEvaluator(workflow.triggers).evaluate(event)
