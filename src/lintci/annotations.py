# annotations.py
"""
Turn tool output into located annotations.

  - cargo clippy --message-format=json  -> one JSON object per line
  - cargo fmt -- --check                 -> "Diff in <file> at line <n>:" blocks
"""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from .model import Annotation

_LEVELS = {
    "error": "error",
    "error: internal compiler error": "error",
    "warning": "warning",
    "note": "notice",
    "help": "notice",
}

# rustfmt prints either "Diff in /p/src/lib.rs at line 3:" or "Diff in /p/src/lib.rs:3:"
_FMT_DIFF_RE = re.compile(r"^Diff in (?P<path>.+?)(?: at line |:)(?P<line>\d+):\s*$")

MAX_FMT_DIFF_LINES = 20


def relative_to_workspace(path: str, workspace: str | Path | None) -> str:
    p = Path(path)
    if workspace is not None and p.is_absolute():
        try:
            return p.relative_to(Path(workspace).resolve()).as_posix()
        except ValueError:
            pass
    return p.as_posix()


def _primary_span(message: Dict) -> Dict | None:
    spans = message.get("spans") or []
    for span in spans:
        if span.get("is_primary"):
            return span
    return spans[0] if spans else None


def parse_cargo_messages(output: str, workspace: str | Path | None = None) -> List[Annotation]:
    """
    Collect compiler/clippy diagnostics from cargo's JSON message stream.

    Non-JSON lines and non-diagnostic records are ignored. Diagnostics
    without a source span ("aborting due to 2 previous errors") carry no
    location and are dropped. The same finding reported for several
    targets (lib + tests with --all-targets) is kept once.
    """
    seen: set[Tuple] = set()
    out: List[Annotation] = []

    for line in output.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if record.get("reason") != "compiler-message":
            continue

        message = record.get("message") or {}
        span = _primary_span(message)
        if span is None:
            continue

        level = _LEVELS.get(message.get("level", ""), "notice")
        code = (message.get("code") or {}).get("code")
        ann = Annotation(
            path=relative_to_workspace(span.get("file_name", ""), workspace),
            start_line=int(span.get("line_start", 1)),
            end_line=int(span.get("line_end", span.get("line_start", 1))),
            level=level,
            message=(message.get("rendered") or message.get("message") or "").rstrip(),
            title=code or message.get("message"),
            start_column=span.get("column_start"),
            end_column=span.get("column_end"),
        )

        fingerprint = (ann.path, ann.start_line, ann.start_column, ann.level, message.get("message"))
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        out.append(ann)

    return out


def parse_fmt_check(output: str, workspace: str | Path | None = None) -> List[Annotation]:
    """One annotation per rustfmt diff hunk; the hunk (truncated) becomes the message."""
    out: List[Annotation] = []
    current: Dict | None = None

    def flush() -> None:
        if current is None:
            return
        lines = current["lines"]
        body = "\n".join(lines[:MAX_FMT_DIFF_LINES])
        if len(lines) > MAX_FMT_DIFF_LINES:
            body += f"\n... ({len(lines) - MAX_FMT_DIFF_LINES} more lines)"
        out.append(
            Annotation(
                path=current["path"],
                start_line=current["line"],
                end_line=current["line"],
                level="error",
                message=body or "File is not formatted according to rustfmt",
                title="rustfmt",
            )
        )

    for raw in output.splitlines():
        m = _FMT_DIFF_RE.match(raw.strip())
        if m:
            flush()
            current = {
                "path": relative_to_workspace(m.group("path"), workspace),
                "line": int(m.group("line")),
                "lines": [],
            }
            continue
        if current is not None and raw.strip():
            current["lines"].append(raw.rstrip())

    flush()
    return out


def count_levels(annotations: Iterable[Annotation]) -> Dict[str, int]:
    counts = {"error": 0, "warning": 0, "notice": 0}
    for a in annotations:
        counts[a.level] = counts.get(a.level, 0) + 1
    return counts


def summarize(annotations: Iterable[Annotation]) -> str:
    counts = count_levels(annotations)
    parts = [f"{n} {level}{'s' if n != 1 else ''}" for level, n in counts.items() if n]
    return ", ".join(parts) if parts else "no findings"
