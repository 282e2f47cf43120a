# concurrency.py
"""
Concurrency governor: at most one non-cancelled run per concurrency key.

The governor is a service owned by whoever hosts the runs (a process, or a
Redis instance shared by the control plane and agents). Pipeline code only
talks to it through the `Governor` interface.

Cancellation is cooperative: `acquire` marks the previous run cancelled,
and job runners poll `is_cancelled` between steps.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Set

import redis

KEY_PREFIX = "lintci"
SLOT_TTL_SECONDS = 6 * 60 * 60
CANCEL_TTL_SECONDS = 24 * 60 * 60

# compare-and-delete: only the current holder may release the slot
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def slot_key(key: str) -> str:
    return f"{KEY_PREFIX}:slot:{key}"


def cancel_key(run_id: str) -> str:
    return f"{KEY_PREFIX}:cancelled:{run_id}"


@dataclass(frozen=True)
class Acquisition:
    acquired: bool
    cancelled: Optional[str] = None  # run id that was preempted, if any
    holder: Optional[str] = None     # current holder when not acquired


class Governor(ABC):
    @abstractmethod
    def acquire(self, key: str, run_id: str, *, preempt: bool = True) -> Acquisition:
        ...

    @abstractmethod
    def cancel(self, run_id: str) -> None:
        ...

    @abstractmethod
    def is_cancelled(self, run_id: str) -> bool:
        ...

    @abstractmethod
    def current(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def release(self, key: str, run_id: str) -> bool:
        ...


class InMemoryGovernor(Governor):
    """Process-local governor, safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: Dict[str, str] = {}
        self._cancelled: Set[str] = set()

    def acquire(self, key: str, run_id: str, *, preempt: bool = True) -> Acquisition:
        with self._lock:
            prev = self._current.get(key)
            if prev is not None and prev != run_id and prev not in self._cancelled:
                if not preempt:
                    return Acquisition(acquired=False, holder=prev)
                self._cancelled.add(prev)
            else:
                prev = None
            self._current[key] = run_id
            return Acquisition(acquired=True, cancelled=prev)

    def cancel(self, run_id: str) -> None:
        with self._lock:
            self._cancelled.add(run_id)

    def is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._cancelled

    def current(self, key: str) -> Optional[str]:
        with self._lock:
            return self._current.get(key)

    def release(self, key: str, run_id: str) -> bool:
        with self._lock:
            if self._current.get(key) != run_id:
                return False
            del self._current[key]
            return True


class RedisGovernor(Governor):
    """
    Governor backed by Redis so several runners/agents share one view:

      lintci:slot:<key>          -> run id currently holding the key
      lintci:cancelled:<run_id>  -> "1" once the run has been told to stop
    """

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> RedisGovernor:
        return cls(redis.Redis.from_url(url, decode_responses=True))

    def acquire(self, key: str, run_id: str, *, preempt: bool = True) -> Acquisition:
        name = slot_key(key)
        if not preempt:
            if self.client.set(name, run_id, nx=True, ex=SLOT_TTL_SECONDS):
                return Acquisition(acquired=True)
            holder = self.client.get(name)
            if holder is None or holder == run_id or self.is_cancelled(holder):
                self.client.set(name, run_id, ex=SLOT_TTL_SECONDS)
                return Acquisition(acquired=True)
            return Acquisition(acquired=False, holder=holder)

        # atomic swap: whoever held the slot before us gets cancelled
        prev = self.client.set(name, run_id, ex=SLOT_TTL_SECONDS, get=True)
        if prev and prev != run_id:
            self.cancel(prev)
            return Acquisition(acquired=True, cancelled=prev)
        return Acquisition(acquired=True)

    def cancel(self, run_id: str) -> None:
        self.client.set(cancel_key(run_id), "1", ex=CANCEL_TTL_SECONDS)

    def is_cancelled(self, run_id: str) -> bool:
        return bool(self.client.exists(cancel_key(run_id)))

    def current(self, key: str) -> Optional[str]:
        return self.client.get(slot_key(key))

    def release(self, key: str, run_id: str) -> bool:
        return bool(self.client.eval(RELEASE_SCRIPT, 1, slot_key(key), run_id))
