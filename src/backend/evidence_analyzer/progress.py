"""
In-process progress fan-out keyed by analysis id.

One ProgressRegistry instance is shared by the orchestrator (the single
writer per job) and the progress stream endpoint (any number of readers).
State is created on first publish and only dropped by `evict`.
"""
import asyncio
import itertools
import os
from datetime import datetime, timezone
from typing import Any

import orjson
from dotenv import load_dotenv

load_dotenv()

PROGRESS_INTERIM_LIMIT = int(os.getenv("PROGRESS_INTERIM_LIMIT", "100"))

TERMINAL_STAGES = {"completed", "failed"}


def initial_state() -> dict[str, Any]:
    return {
        "stage": "initializing",
        "progress": 0,
        "currentStep": "Loading analysis configuration...",
        "totalSteps": 0,
        "completedSteps": 0,
        "currentControl": None,
        "totals": {"compliant": 0, "partial": 0, "missing": 0},
        "interimResults": [],
    }


def is_terminal(state: dict[str, Any] | None) -> bool:
    return bool(state) and state.get("stage") in TERMINAL_STAGES


def format_sse(state: dict[str, Any]) -> str:
    return f"data: {orjson.dumps(state).decode('utf-8')}\n\n"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """Live, cancelable stream of progress states for one job."""

    def __init__(self, registry: "ProgressRegistry", job_id: int, handle: int):
        self.registry = registry
        self.job_id = job_id
        self.handle = handle
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        state = await self.queue.get()
        if state is None:
            raise StopAsyncIteration
        return state

    def close(self) -> None:
        self.registry.unsubscribe(self.job_id, self.handle)


class ProgressRegistry:
    def __init__(self, interim_limit: int = PROGRESS_INTERIM_LIMIT):
        self.interim_limit = interim_limit
        self._states: dict[int, dict[str, Any]] = {}
        self._subscribers: dict[int, dict[int, Subscription]] = {}
        self._handles = itertools.count(1)

    def latest(self, job_id: int) -> dict[str, Any] | None:
        return self._states.get(job_id)

    def publish(self, job_id: int, update: dict[str, Any]) -> dict[str, Any]:
        current = self._states.get(job_id) or initial_state()
        merged = {**current, **update, "timestamp": _now()}
        # Percentage never goes backwards within a job.
        merged["progress"] = max(current.get("progress", 0), merged.get("progress", 0))
        self._states[job_id] = merged
        for subscription in list(self._subscribers.get(job_id, {}).values()):
            subscription.queue.put_nowait(merged)
        return merged

    def append_interim_result(self, job_id: int, result: dict[str, Any]) -> dict[str, Any]:
        current = self._states.get(job_id) or initial_state()
        interim = list(current.get("interimResults") or [])
        interim.append({**result, "timestamp": _now()})
        if self.interim_limit and len(interim) > self.interim_limit:
            interim = interim[-self.interim_limit:]
        return self.publish(job_id, {"interimResults": interim})

    def subscribe(self, job_id: int) -> Subscription:
        subscription = Subscription(self, job_id, next(self._handles))
        # First event is always the latest known state.
        subscription.queue.put_nowait(self._states.get(job_id) or {**initial_state(), "timestamp": _now()})
        self._subscribers.setdefault(job_id, {})[subscription.handle] = subscription
        return subscription

    def unsubscribe(self, job_id: int, handle: int) -> None:
        subscribers = self._subscribers.get(job_id, {})
        subscription = subscribers.pop(handle, None)
        if subscription is not None and not subscription.closed:
            subscription.closed = True
            subscription.queue.put_nowait(None)
        if not subscribers:
            self._subscribers.pop(job_id, None)

    def subscriber_count(self, job_id: int) -> int:
        return len(self._subscribers.get(job_id, {}))

    def evict(self, job_id: int) -> None:
        for handle in list(self._subscribers.get(job_id, {})):
            self.unsubscribe(job_id, handle)
        self._states.pop(job_id, None)
