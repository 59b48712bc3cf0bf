"""
Unit tests for backend/evidence_analyzer/progress.py

Covers:
  - publish() merge / retention / timestamp
  - non-decreasing percentage
  - subscribe() replays latest state first, then publish order
  - append_interim_result() bounded tail
  - unsubscribe() / evict()
  - format_sse()
"""

import asyncio

import orjson
import pytest


def _import_progress():
    from evidence_analyzer.progress import ProgressRegistry, format_sse, initial_state, is_terminal
    return ProgressRegistry, format_sse, initial_state, is_terminal


async def _drain(subscription, count):
    return [await asyncio.wait_for(subscription.__anext__(), timeout=1) for _ in range(count)]


# ═══════════════════════════════════════════
#  publish
# ═══════════════════════════════════════════
class TestPublish:
    def test_shallow_merge_keeps_other_fields(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(1, {"stage": "analyzing", "currentStep": "Working"})
        state = r.publish(1, {"completedSteps": 2})
        assert state["stage"] == "analyzing"
        assert state["currentStep"] == "Working"
        assert state["completedSteps"] == 2
        assert "timestamp" in state

    def test_state_retained_without_subscribers(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(7, {"stage": "organizing", "progress": 5})
        assert r.latest(7)["stage"] == "organizing"
        assert r.subscriber_count(7) == 0

    def test_progress_never_decreases(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(1, {"progress": 40})
        assert r.publish(1, {"progress": 20})["progress"] == 40
        assert r.publish(1, {"progress": 60})["progress"] == 60

    def test_jobs_are_independent(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(1, {"progress": 80})
        r.publish(2, {"progress": 10})
        assert r.latest(1)["progress"] == 80
        assert r.latest(2)["progress"] == 10

    def test_unknown_job_has_no_state(self):
        Registry = _import_progress()[0]
        assert Registry().latest(99) is None


# ═══════════════════════════════════════════
#  subscribe / unsubscribe
# ═══════════════════════════════════════════
class TestSubscribe:
    @pytest.mark.asyncio
    async def test_first_event_is_latest_state(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(1, {"stage": "analyzing", "progress": 30})
        sub = r.subscribe(1)
        first = (await _drain(sub, 1))[0]
        assert first["stage"] == "analyzing"
        assert first["progress"] == 30
        sub.close()

    @pytest.mark.asyncio
    async def test_unknown_job_replays_initial_state(self):
        Registry = _import_progress()[0]
        r = Registry()
        sub = r.subscribe(5)
        first = (await _drain(sub, 1))[0]
        assert first["stage"] == "initializing"
        assert first["progress"] == 0
        sub.close()

    @pytest.mark.asyncio
    async def test_events_delivered_in_publish_order(self):
        Registry = _import_progress()[0]
        r = Registry()
        sub_a, sub_b = r.subscribe(1), r.subscribe(1)
        for pct in (10, 20, 30):
            r.publish(1, {"progress": pct})
        for sub in (sub_a, sub_b):
            events = await _drain(sub, 4)
            assert [e["progress"] for e in events] == [0, 10, 20, 30]
            sub.close()

    @pytest.mark.asyncio
    async def test_resubscribe_after_completion_yields_terminal_state(self):
        Registry, _, _, is_terminal = _import_progress()
        r = Registry()
        r.publish(1, {"stage": "analyzing", "progress": 50})
        r.publish(1, {"stage": "completed", "progress": 100})
        sub = r.subscribe(1)
        first = (await _drain(sub, 1))[0]
        assert is_terminal(first)
        assert first["progress"] == 100
        sub.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_iteration(self):
        Registry = _import_progress()[0]
        r = Registry()
        sub = r.subscribe(1)
        await _drain(sub, 1)
        sub.close()
        assert r.subscriber_count(1) == 0
        with pytest.raises(StopAsyncIteration):
            await sub.__anext__()
        r.publish(1, {"progress": 10})
        assert sub.queue.empty()

    @pytest.mark.asyncio
    async def test_async_for_stops_on_close(self):
        Registry = _import_progress()[0]
        r = Registry()
        sub = r.subscribe(1)
        r.publish(1, {"progress": 10})
        sub.close()
        seen = [state["progress"] async for state in sub]
        assert seen == [0, 10]


# ═══════════════════════════════════════════
#  interim results / evict
# ═══════════════════════════════════════════
class TestInterimResults:
    def test_appends_with_timestamp(self):
        Registry = _import_progress()[0]
        r = Registry()
        state = r.append_interim_result(1, {"controlId": "A.1", "status": "compliant"})
        assert state["interimResults"][0]["controlId"] == "A.1"
        assert "timestamp" in state["interimResults"][0]

    def test_tail_is_bounded(self):
        Registry = _import_progress()[0]
        r = Registry(interim_limit=3)
        for i in range(5):
            r.append_interim_result(1, {"controlId": f"C{i}"})
        assert [x["controlId"] for x in r.latest(1)["interimResults"]] == ["C2", "C3", "C4"]

    def test_evict_drops_state_and_closes_subscribers(self):
        Registry = _import_progress()[0]
        r = Registry()
        r.publish(1, {"progress": 10})
        sub = r.subscribe(1)
        r.evict(1)
        assert r.latest(1) is None
        assert r.subscriber_count(1) == 0
        assert sub.closed


# ═══════════════════════════════════════════
#  format_sse / is_terminal
# ═══════════════════════════════════════════
class TestFormatSse:
    def test_frame_shape(self):
        _, format_sse, initial_state, _ = _import_progress()
        frame = format_sse(initial_state())
        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert orjson.loads(frame[len("data: "):])["stage"] == "initializing"

    def test_is_terminal(self):
        is_terminal = _import_progress()[3]
        assert is_terminal({"stage": "completed"})
        assert is_terminal({"stage": "failed"})
        assert not is_terminal({"stage": "analyzing"})
        assert not is_terminal(None)
