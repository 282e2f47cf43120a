# lintci_workflow.py
# Lint Rust: clippy (four package/feature variants) and rustfmt for the
# plugin workspace, gated on pushes and pull requests into dev.
from __future__ import annotations

from lintci.workflows.lint_rust import workflow

__all__ = ["workflow"]
