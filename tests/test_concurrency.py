"""Tests for the concurrency governor (in-process and Redis-backed)."""

import threading
from unittest.mock import MagicMock

import pytest

from lintci.concurrency import (
    CANCEL_TTL_SECONDS,
    RELEASE_SCRIPT,
    SLOT_TTL_SECONDS,
    InMemoryGovernor,
    RedisGovernor,
    cancel_key,
    slot_key,
)

KEY = "Lint Rust-refs/heads/dev"


class TestInMemoryGovernor:
    def test_first_run_acquires_without_cancelling(self):
        gov = InMemoryGovernor()

        acq = gov.acquire(KEY, "run-1")

        assert acq.acquired
        assert acq.cancelled is None
        assert gov.current(KEY) == "run-1"

    def test_newer_run_preempts_older(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")

        acq = gov.acquire(KEY, "run-2")

        assert acq.acquired
        assert acq.cancelled == "run-1"
        assert gov.is_cancelled("run-1")
        assert not gov.is_cancelled("run-2")
        assert gov.current(KEY) == "run-2"

    def test_other_keys_are_independent(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")

        acq = gov.acquire("Lint Rust-refs/heads/feature", "run-2")

        assert acq.cancelled is None
        assert not gov.is_cancelled("run-1")

    def test_reacquire_by_same_run_is_noop(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")

        acq = gov.acquire(KEY, "run-1")

        assert acq.acquired
        assert acq.cancelled is None
        assert not gov.is_cancelled("run-1")

    def test_without_preempt_busy_slot_is_refused(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")

        acq = gov.acquire(KEY, "run-2", preempt=False)

        assert not acq.acquired
        assert acq.holder == "run-1"
        assert not gov.is_cancelled("run-1")
        assert gov.current(KEY) == "run-1"

    def test_cancelled_holder_does_not_block(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")
        gov.cancel("run-1")

        acq = gov.acquire(KEY, "run-2", preempt=False)

        assert acq.acquired
        assert acq.cancelled is None

    def test_release_only_by_holder(self):
        gov = InMemoryGovernor()
        gov.acquire(KEY, "run-1")
        gov.acquire(KEY, "run-2")

        # the preempted run finishing late must not free the newer run's slot
        assert not gov.release(KEY, "run-1")
        assert gov.current(KEY) == "run-2"
        assert gov.release(KEY, "run-2")
        assert gov.current(KEY) is None

    def test_at_most_one_live_run_under_contention(self):
        gov = InMemoryGovernor()
        run_ids = [f"run-{i}" for i in range(32)]
        barrier = threading.Barrier(len(run_ids))

        def contend(run_id):
            barrier.wait()
            gov.acquire(KEY, run_id)

        threads = [threading.Thread(target=contend, args=(r,)) for r in run_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        live = [r for r in run_ids if not gov.is_cancelled(r)]
        assert live == [gov.current(KEY)]


class TestRedisGovernor:
    @pytest.fixture
    def client(self):
        return MagicMock()

    def test_acquire_swaps_atomically_and_cancels_previous(self, client):
        client.set.return_value = "run-1"
        gov = RedisGovernor(client)

        acq = gov.acquire(KEY, "run-2")

        assert acq.acquired
        assert acq.cancelled == "run-1"
        client.set.assert_any_call(slot_key(KEY), "run-2", ex=SLOT_TTL_SECONDS, get=True)
        client.set.assert_any_call(cancel_key("run-1"), "1", ex=CANCEL_TTL_SECONDS)

    def test_acquire_free_slot(self, client):
        client.set.return_value = None
        gov = RedisGovernor(client)

        acq = gov.acquire(KEY, "run-1")

        assert acq.acquired
        assert acq.cancelled is None
        client.set.assert_called_once_with(slot_key(KEY), "run-1", ex=SLOT_TTL_SECONDS, get=True)

    def test_acquire_without_preempt_refuses_live_holder(self, client):
        client.set.return_value = None  # NX set fails
        client.get.return_value = "run-1"
        client.exists.return_value = 0
        gov = RedisGovernor(client)

        acq = gov.acquire(KEY, "run-2", preempt=False)

        assert not acq.acquired
        assert acq.holder == "run-1"

    def test_is_cancelled_reads_flag(self, client):
        client.exists.return_value = 1
        gov = RedisGovernor(client)

        assert gov.is_cancelled("run-1")
        client.exists.assert_called_once_with(cancel_key("run-1"))

    def test_release_uses_compare_and_delete(self, client):
        client.eval.return_value = 1
        gov = RedisGovernor(client)

        assert gov.release(KEY, "run-1")
        client.eval.assert_called_once_with(RELEASE_SCRIPT, 1, slot_key(KEY), "run-1")
