# agent/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Dict, Any

LEASE_FIELDS = ("job_id", "run_id", "job_name", "payload_json", "lease_expires_at")
COMPLETION_STATUSES = ("ok", "failed", "cancelled")


@dataclass
class Lease:
    """
    One job of an admitted run, handed to this agent until `lease_expires_at`.

    `payload_json` carries the serialized job plus the facts of the event
    that admitted the run (commit, repository, clone URL). It never carries
    a platform token.
    """
    job_id: str
    run_id: str
    job_name: str
    payload_json: Dict[str, Any]
    lease_expires_at: str  # ISO 8601, UTC

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Lease:
        missing = [f for f in LEASE_FIELDS if f not in data]
        if missing:
            raise KeyError(f"lease is missing {missing}")
        if "job" not in data["payload_json"]:
            raise KeyError("lease payload has no job")
        return cls(**{f: data[f] for f in LEASE_FIELDS})

    @property
    def repo_url(self) -> str:
        return self.payload_json.get("repo_url") or ""

    @property
    def repository(self) -> Optional[str]:
        return self.payload_json.get("repository")

    @property
    def sha(self) -> Optional[str]:
        return self.payload_json.get("sha")

    @property
    def ref(self) -> str:
        # the commit wins over the branch: a newer push must not change what this run lints
        return self.payload_json.get("sha") or self.payload_json.get("ref") or "HEAD"

    @property
    def job(self) -> Dict[str, Any]:
        return self.payload_json["job"]


@dataclass
class ExecutionResult:
    """Outcome of one lease: completion status, captured console output, job result."""
    status: str  # one of COMPLETION_STATUSES
    logs: str
    job_results: Dict[str, Any]
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # shape expected by POST /leases/{job_id}/complete as `details`
        return {
            "logs": self.logs,
            "results": self.job_results,
            "error": self.error,
        }
