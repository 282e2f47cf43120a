from __future__ import annotations
import os

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
QUEUE_NAME = os.environ.get("QUEUE_NAME", "lintci:queue")
LEASE_SECONDS = int(os.environ.get("LEASE_SECONDS", "600"))
RUN_TTL_SECONDS = int(os.environ.get("RUN_TTL_SECONDS", str(7 * 24 * 60 * 60)))
# unset: the built-in "Lint Rust" descriptor
WORKFLOW_FILE = os.environ.get("WORKFLOW_FILE") or None
