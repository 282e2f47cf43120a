# reporter.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import List, Optional, Sequence
from urllib.parse import urljoin

from .annotations import count_levels, summarize
from .model import Annotation

DEFAULT_API_URL = "https://api.github.com"
MAX_ANNOTATIONS_PER_REQUEST = 50

_ANNOTATION_LEVELS = {"error": "failure", "warning": "warning", "notice": "notice"}


class ReportError(Exception):
    """Raised when the checks API rejects a request."""
    pass


def _annotation_payload(a: Annotation) -> dict:
    d = {
        "path": a.path,
        "start_line": a.start_line,
        "end_line": a.end_line,
        "annotation_level": _ANNOTATION_LEVELS.get(a.level, "notice"),
        "message": a.message,
    }
    if a.title:
        d["title"] = a.title
    # columns are only accepted for single-line annotations
    if a.start_line == a.end_line and a.start_column is not None and a.end_column is not None:
        d["start_column"] = a.start_column
        d["end_column"] = a.end_column
    return d


class ChecksReporter:
    """
    Posts one completed check run per lint/format step.

    The token is a pass-through credential: it only ever appears in the
    Authorization header, never in repr, errors or console output.
    """

    def __init__(self, repository: str, head_sha: str, token: str, api_url: str = DEFAULT_API_URL):
        """
        Args:
            repository: "owner/name"
            head_sha: commit the checks attach to
            token: platform token used for the Authorization header
            api_url: Base URL of the checks API
        """
        self.repository = repository
        self.head_sha = head_sha
        self.base_url = api_url.rstrip("/")
        self._token = token

    def __repr__(self) -> str:
        return f"ChecksReporter(repository={self.repository!r}, head_sha={self.head_sha!r}, token='***')"

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(url, data=req_data, headers=req_headers, method=method)

        try:
            with urllib.request.urlopen(req) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            raise ReportError(f"checks API request failed: {e.code} {e.reason}") from None
        except urllib.error.URLError as e:
            raise ReportError(f"network error: {e.reason}") from None
        except json.JSONDecodeError as e:
            raise ReportError(f"invalid JSON response: {e}") from None

    def publish(self, name: str, annotations: Sequence[Annotation], *, conclusion: str) -> int:
        """
        Create a completed check run named `name` and attach every annotation.

        The API accepts at most 50 annotations per request, so the first
        batch goes with the create call and the rest follow as updates.

        Returns:
            The check run id.
        """
        batches: List[List[dict]] = []
        payloads = [_annotation_payload(a) for a in annotations]
        for i in range(0, len(payloads), MAX_ANNOTATIONS_PER_REQUEST):
            batches.append(payloads[i:i + MAX_ANNOTATIONS_PER_REQUEST])

        counts = count_levels(annotations)
        output = {
            "title": f"{name}: {summarize(annotations)}",
            "summary": (
                f"{counts['error']} error(s), {counts['warning']} warning(s), "
                f"{counts['notice']} notice(s)"
            ),
            "annotations": batches[0] if batches else [],
        }

        created = self._request(
            "POST",
            f"/repos/{self.repository}/check-runs",
            data={
                "name": name,
                "head_sha": self.head_sha,
                "status": "completed",
                "conclusion": conclusion,
                "output": output,
            },
        )
        check_id = int(created.get("id", 0))

        for batch in batches[1:]:
            self._request(
                "PATCH",
                f"/repos/{self.repository}/check-runs/{check_id}",
                data={"output": {**output, "annotations": batch}},
            )
        return check_id
