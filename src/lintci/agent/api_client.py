# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Optional
from urllib.parse import quote, urljoin

from .models import COMPLETION_STATUSES, Lease


class APIError(Exception):
    """A control plane call failed; `status` is the HTTP code when there was one."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class APIClient:
    """
    Agent side of the control plane protocol:

      POST /leases/claim            -> Lease, or 204 when the queue is empty
      GET  /runs/{run_id}           -> cancellation flag, polled between steps
      POST /leases/{job_id}/complete
    """

    def __init__(self, base_url: str, agent_id: str):
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        body = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method=method
        )

        try:
            with urllib.request.urlopen(req) as response:
                if response.status == 204:
                    return {}
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"{method} {path} -> {e.code} {e.reason} {detail}".rstrip(), status=e.code) from None
        except urllib.error.URLError as e:
            raise APIError(f"{method} {path}: control plane unreachable ({e.reason})") from None

        try:
            return json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            raise APIError(f"{method} {path}: invalid JSON from control plane ({e})") from None

    def claim_lease(self) -> Optional[Lease]:
        """Take the next queued job, or None when there is nothing to run."""
        response = self._request("POST", "/leases/claim", data={"agent_id": self.agent_id})
        if not response:
            return None
        try:
            return Lease.from_dict(response)
        except (KeyError, TypeError) as e:
            raise APIError(f"malformed lease ({e}): {response!r}") from None

    def is_cancelled(self, run_id: str) -> bool:
        response = self._request("GET", f"/runs/{quote(run_id)}")
        return bool(response.get("cancelled", False))

    def complete_lease(self, job_id: str, status: str, details: dict) -> None:
        # anything the control plane would reject with 400 is reported as a failure
        if status not in COMPLETION_STATUSES:
            status = "failed"
        self._request(
            "POST",
            f"/leases/{quote(job_id)}/complete",
            data={"agent_id": self.agent_id, "status": status, "details": details},
        )
