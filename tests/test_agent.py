"""Tests for the agent: job transport, lease execution and the poll loop."""

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from lintci.agent.agent import Agent
from lintci.agent.api_client import APIClient, APIError
from lintci.agent.executor import dict_to_job, execute_lease, job_to_dict
from lintci.agent.models import ExecutionResult, Lease
from lintci.model import JobResult
from lintci.workflows import lint_rust


def make_lease(job_dict, **payload):
    return Lease(
        job_id="j1",
        run_id="r1",
        job_name=job_dict["name"],
        payload_json={"job": job_dict, "sha": "e" * 40, "repository": "o/r", **payload},
        lease_expires_at="2026-01-01T00:00:00+00:00",
    )


class TestJobTransport:
    @pytest.mark.parametrize("name", ["clippy", "fmt"])
    def test_descriptor_jobs_survive_transport(self, name):
        original = lint_rust.workflow().job(name)

        assert dict_to_job(job_to_dict(original)) == original


class TestExecuteLease:
    def test_success_maps_to_ok(self, tmp_path):
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})
        api = MagicMock()
        api.is_cancelled.return_value = False

        with patch("lintci.agent.executor.run_job", return_value=JobResult("fmt", "success")) as run_job:
            result = execute_lease(lease, api, tmp_path, tmp_path / "cache")

        assert result.status == "ok"
        ctx = run_job.call_args[0][1]
        assert ctx.sha == "e" * 40
        assert ctx.work_dir == tmp_path / "fmt"

    def test_cancelled_job_reported_as_cancelled(self, tmp_path):
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})

        with patch("lintci.agent.executor.run_job", return_value=JobResult("fmt", "cancelled")):
            result = execute_lease(lease, MagicMock(), tmp_path)

        assert result.status == "cancelled"

    def test_cancellation_check_tolerates_api_errors(self, tmp_path):
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})
        api = MagicMock()
        api.is_cancelled.side_effect = APIError("Network error: refused")

        with patch("lintci.agent.executor.run_job", return_value=JobResult("fmt", "success")) as run_job:
            execute_lease(lease, api, tmp_path)

        assert run_job.call_args[0][1].should_stop() is False

    def test_unexpected_exception_is_a_failed_result(self, tmp_path):
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})

        with patch("lintci.agent.executor.run_job", side_effect=RuntimeError("boom")):
            result = execute_lease(lease, MagicMock(), tmp_path)

        assert result.status == "failed"
        assert result.error == "boom"
        assert "boom" in result.logs

    def test_reporter_uses_local_token(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "ghs_agent_token")
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})

        with patch("lintci.agent.executor.run_job", return_value=JobResult("fmt", "success")) as run_job:
            result = execute_lease(lease, MagicMock(), tmp_path)

        reporter = run_job.call_args[0][1].reporter
        assert reporter.repository == "o/r"
        assert "ghs_agent_token" not in result.logs

    def test_no_reporter_without_token(self, tmp_path, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        lease = make_lease({"name": "fmt", "steps": [{"name": "noop", "run": "true"}]})

        with patch("lintci.agent.executor.run_job", return_value=JobResult("fmt", "success")) as run_job:
            execute_lease(lease, MagicMock(), tmp_path)

        assert run_job.call_args[0][1].reporter is None


class TestAgent:
    def test_poll_once_without_work(self):
        agent = Agent("http://cp", "a1", install_signal_handlers=False)
        agent.api_client = MagicMock()
        agent.api_client.claim_lease.return_value = None

        assert agent.poll_once() is False

    def test_poll_once_executes_and_completes(self, tmp_path):
        agent = Agent("http://cp", "a1", install_signal_handlers=False, work_dir=tmp_path)
        agent.api_client = MagicMock()
        agent.api_client.claim_lease.return_value = make_lease({"name": "fmt", "steps": []})
        outcome = ExecutionResult(status="failed", logs="x", job_results={"name": "fmt"})

        with patch("lintci.agent.agent.execute_lease", return_value=outcome):
            assert agent.poll_once() is True

        agent.api_client.complete_lease.assert_called_once_with("j1", "failed", outcome.to_dict())


class TestLease:
    def test_from_dict_requires_every_field(self):
        with pytest.raises(KeyError, match="lease_expires_at"):
            Lease.from_dict({"job_id": "j1", "run_id": "r1", "job_name": "fmt", "payload_json": {"job": {}}})

    def test_from_dict_requires_a_job(self):
        data = {
            "job_id": "j1",
            "run_id": "r1",
            "job_name": "fmt",
            "payload_json": {"sha": "e" * 40},
            "lease_expires_at": "2026-01-01T00:00:00+00:00",
        }

        with pytest.raises(KeyError, match="no job"):
            Lease.from_dict(data)

    def test_commit_wins_over_branch(self):
        lease = make_lease({"name": "fmt"}, ref="refs/heads/dev")

        assert lease.ref == "e" * 40

    def test_branch_when_no_commit(self):
        lease = make_lease({"name": "fmt"}, sha=None, ref="refs/heads/dev")

        assert lease.ref == "refs/heads/dev"
        assert lease.repo_url == ""


class FakeResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class TestAPIClient:
    def test_empty_queue_is_none(self):
        client = APIClient("http://cp/", "a1")

        with patch("urllib.request.urlopen", return_value=FakeResponse(204)) as urlopen:
            assert client.claim_lease() is None

        req = urlopen.call_args.args[0]
        assert req.full_url == "http://cp/leases/claim"
        assert json.loads(req.data) == {"agent_id": "a1"}

    def test_malformed_lease_is_an_api_error(self):
        client = APIClient("http://cp", "a1")

        with patch("urllib.request.urlopen", return_value=FakeResponse(200, b'{"job_id": "j1"}')):
            with pytest.raises(APIError, match="malformed lease"):
                client.claim_lease()

    def test_invalid_json_is_an_api_error(self):
        client = APIClient("http://cp", "a1")

        with patch("urllib.request.urlopen", return_value=FakeResponse(200, b"<html>")):
            with pytest.raises(APIError, match="invalid JSON"):
                client.is_cancelled("r1")

    def test_unreachable_control_plane(self):
        client = APIClient("http://cp", "a1")

        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with pytest.raises(APIError, match="unreachable") as exc_info:
                client.is_cancelled("r1")

        assert exc_info.value.status is None

    def test_unknown_completion_status_is_reported_as_failed(self):
        client = APIClient("http://cp", "a1")

        with patch("urllib.request.urlopen", return_value=FakeResponse(200, b"{}")) as urlopen:
            client.complete_lease("j 1", "crashed", {"logs": ""})

        req = urlopen.call_args.args[0]
        assert req.full_url == "http://cp/leases/j%201/complete"
        assert json.loads(req.data)["status"] == "failed"
