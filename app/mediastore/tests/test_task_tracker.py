"""
Tests for the upload TaskTracker.

Tests cover:
- Task lifecycle and status transitions
- Cancellation sentinel and slot accounting
- Global and per-task events
- Async subscription
- Retention sweep
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from datetime import timedelta

import pytest
from freezegun import freeze_time

from mediastore.services.task_tracker import (
    CANCELLED_ERROR,
    TaskEvent,
    TaskStage,
    TaskStatus,
    TaskTracker,
    get_task_tracker,
)


@pytest.fixture
def tracker() -> TaskTracker:
    return TaskTracker(max_concurrent_uploads=2, retention=timedelta(hours=24), sweep_interval=60)


@pytest.fixture
def task_id(tracker) -> str:
    return tracker.create_task(user_id=7, filename="cat.jpg", file_size=2048)


@pytest.fixture
def recorder(tracker):
    """Subscribe a list to an event name and return it."""

    def _record(event: str) -> list:
        received = []
        tracker.on(event, received.append)
        return received

    return _record


class TestLifecycle:
    """Tests for status transitions."""

    def test_create_task(self, tracker, task_id):
        task = tracker.get_task(task_id)

        assert re.fullmatch(r"upload_\d+_[0-9a-f]{9}", task_id)
        assert task.status == TaskStatus.PENDING
        assert task.stage == TaskStage.UPLOAD
        assert task.progress == 0
        assert (task.user_id, task.filename, task.file_size) == (7, "cat.jpg", 2048)

    def test_ids_are_unique(self, tracker):
        ids = {tracker.create_task(1, "a.jpg", 1) for _ in range(50)}

        assert len(ids) == 50

    def test_start_upload(self, tracker, task_id):
        tracker.start_upload(task_id)

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.UPLOADING
        assert task.progress == 0
        assert tracker.get_active_upload_count() == 1

    def test_processing_stage_sets_status(self, tracker, task_id):
        tracker.start_upload(task_id)
        tracker.update_progress(task_id, 50, TaskStage.PROCESSING, "Resizing")

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.PROCESSING
        assert task.message == "Resizing"

    def test_accepts_stage_names(self, tracker, task_id):
        tracker.update_progress(task_id, 10, "processing")

        assert tracker.get_task(task_id).stage == TaskStage.PROCESSING

    @pytest.mark.parametrize(("reported", "stored"), [(150, 100), (-5, 0), (42.7, 42)])
    def test_progress_is_clamped(self, tracker, task_id, reported, stored):
        tracker.update_progress(task_id, reported, TaskStage.UPLOAD)

        assert tracker.get_task(task_id).progress == stored

    def test_progress_may_go_backwards(self, tracker, task_id):
        tracker.update_progress(task_id, 100, TaskStage.UPLOAD)
        tracker.update_progress(task_id, 50, TaskStage.PROCESSING)

        assert tracker.get_task(task_id).progress == 50

    def test_completed_stage_finishes_task(self, tracker, task_id):
        tracker.start_upload(task_id)
        tracker.update_progress(task_id, 100, TaskStage.COMPLETED)

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.end_time is not None
        assert tracker.get_active_upload_count() == 0

    def test_complete_task(self, tracker, task_id):
        tracker.start_upload(task_id)
        assert tracker.complete_task(task_id, {"hash": "abc"}) is True

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.stage == TaskStage.COMPLETED
        assert task.progress == 100
        assert task.result == {"hash": "abc"}
        assert task.elapsed_seconds >= 0
        assert tracker.get_active_upload_count() == 0

    def test_fail_task(self, tracker, task_id):
        tracker.start_upload(task_id)
        tracker.fail_task(task_id, "disk full")

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "disk full"
        assert not tracker.is_cancelled(task_id)
        assert tracker.get_active_upload_count() == 0

    def test_terminal_tasks_ignore_updates(self, tracker, task_id, recorder):
        tracker.complete_task(task_id, "done")
        progress = recorder("progress")
        failed = recorder("failed")

        tracker.update_progress(task_id, 10, TaskStage.UPLOAD)
        tracker.fail_task(task_id, "late failure")
        tracker.cancel_task(task_id)
        tracker.start_upload(task_id)

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == "done"
        assert progress == [] and failed == []
        assert tracker.get_active_upload_count() == 0

    def test_complete_after_cancel_drops_result(self, tracker, task_id, recorder):
        completed = recorder("completed")
        tracker.cancel_task(task_id)

        assert tracker.complete_task(task_id, {"hash": "abc"}) is False

        task = tracker.get_task(task_id)
        assert task.is_cancelled
        assert task.result is None
        assert completed == []

    def test_unknown_task_is_ignored(self, tracker, recorder):
        progress = recorder("progress")

        tracker.start_upload("upload_missing")
        tracker.update_progress("upload_missing", 10, TaskStage.UPLOAD)
        assert tracker.complete_task("upload_missing") is False
        tracker.fail_task("upload_missing", "x")
        tracker.cancel_task("upload_missing")

        assert tracker.get_task("upload_missing") is None
        assert not tracker.is_cancelled("upload_missing")
        assert progress == []

    def test_to_dict(self, tracker, task_id):
        data = tracker.get_task(task_id).to_dict()

        assert data["status"] == "pending"
        assert data["stage"] == "upload"
        assert data["end_time"] is None
        assert isinstance(data["start_time"], str)


class TestCancellation:
    """Tests for cancel_task and the cancelled sentinel."""

    def test_cancel_marks_failed_with_sentinel(self, tracker, task_id):
        tracker.start_upload(task_id)
        tracker.cancel_task(task_id)

        task = tracker.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == CANCELLED_ERROR
        assert task.is_cancelled
        assert tracker.is_cancelled(task_id)

    def test_cancel_frees_slot_immediately(self, tracker):
        first = tracker.create_task(1, "a.jpg", 1)
        second = tracker.create_task(1, "b.jpg", 1)
        tracker.start_upload(first)
        tracker.start_upload(second)
        assert not tracker.can_start_new_upload()

        tracker.cancel_task(first)

        assert tracker.get_active_upload_count() == 1
        assert tracker.can_start_new_upload()


class TestQueries:
    def test_get_task_returns_snapshot(self, tracker, task_id):
        snapshot = tracker.get_task(task_id)
        snapshot.progress = 99

        assert tracker.get_task(task_id).progress == 0

    def test_get_user_tasks(self, tracker, task_id):
        tracker.create_task(user_id=8, filename="dog.jpg", file_size=1)

        tasks = tracker.get_user_tasks(7)

        assert [t.id for t in tasks] == [task_id]
        assert tracker.get_user_tasks(99) == []

    def test_concurrency_cap_is_advisory(self, tracker):
        ids = [tracker.create_task(1, f"{i}.jpg", 1) for i in range(3)]
        for task_id in ids:
            tracker.start_upload(task_id)

        assert tracker.get_active_upload_count() == 3
        assert not tracker.can_start_new_upload()

    def test_get_task_tracker_is_shared(self):
        assert get_task_tracker() is get_task_tracker()


class TestEvents:
    """Tests for event broadcast."""

    def test_progress_emitted_globally_and_per_task(self, tracker, task_id, recorder):
        everything = recorder("progress")
        mine = recorder(f"progress:{task_id}")
        other = tracker.create_task(1, "other.jpg", 1)

        tracker.update_progress(task_id, 30, TaskStage.UPLOAD, "Uploading", estimated_time=4.5)
        tracker.update_progress(other, 10, TaskStage.UPLOAD)

        assert mine == [
            {
                "task_id": task_id,
                "progress": 30,
                "stage": "upload",
                "message": "Uploading",
                "estimated_time": 4.5,
            }
        ]
        assert [event["task_id"] for event in everything] == [task_id, other]

    def test_terminal_events(self, tracker, recorder):
        completed = recorder("completed")
        failed = recorder("failed")
        cancelled = recorder("cancelled")
        a, b, c = (tracker.create_task(1, f"{n}.jpg", 1) for n in "abc")

        tracker.complete_task(a, {"hash": "h"})
        tracker.fail_task(b, "boom")
        tracker.cancel_task(c)

        assert completed == [{"task_id": a, "result": {"hash": "h"}}]
        assert failed == [{"task_id": b, "error": "boom"}]
        assert cancelled == [{"task_id": c}]

    def test_off(self, tracker, task_id):
        received = []
        tracker.on("progress", received.append)
        tracker.off("progress", received.append)

        tracker.start_upload(task_id)

        assert received == []

    def test_handler_may_call_back_into_tracker(self, tracker, task_id):
        seen = []
        tracker.on("completed", lambda payload: seen.append(tracker.get_task(payload["task_id"]).status))

        tracker.complete_task(task_id)

        assert seen == [TaskStatus.COMPLETED]


class TestSubscribe:
    """Tests for the async event stream."""

    def test_task_stream_ends_after_terminal_event(self, tracker, task_id):
        async def scenario():
            events = []

            async def consume():
                async for event in tracker.subscribe(task_id):
                    events.append(event)

            consumer = asyncio.create_task(consume())
            await asyncio.sleep(0)

            tracker.start_upload(task_id)
            tracker.update_progress(task_id, 50, TaskStage.PROCESSING)
            tracker.complete_task(task_id, {"hash": "h"})

            await asyncio.wait_for(consumer, timeout=2)
            return events

        events = asyncio.run(scenario())

        assert [event.name for event in events] == ["progress", "progress", "completed"]
        assert events[-1].data == {"task_id": task_id, "result": {"hash": "h"}}
        assert tracker._events.listener_count(f"progress:{task_id}") == 0

    def test_events_from_worker_threads(self, tracker, task_id):
        async def scenario():
            loop = asyncio.get_running_loop()
            events = []

            async def consume():
                async for event in tracker.subscribe(task_id):
                    events.append(event)

            consumer = asyncio.create_task(consume())
            await asyncio.sleep(0)

            await loop.run_in_executor(None, tracker.fail_task, task_id, "worker error")

            await asyncio.wait_for(consumer, timeout=2)
            return events

        events = asyncio.run(scenario())

        assert events == [TaskEvent("failed", {"task_id": task_id, "error": "worker error"})]

    def test_finished_task_yields_terminal_event_immediately(self, tracker, task_id):
        tracker.cancel_task(task_id)

        async def scenario():
            return [event async for event in tracker.subscribe(task_id)]

        events = asyncio.run(asyncio.wait_for(scenario(), timeout=2))

        assert events == [TaskEvent("cancelled", {"task_id": task_id})]

    def test_global_stream(self, tracker):
        first = tracker.create_task(1, "a.jpg", 1)
        second = tracker.create_task(1, "b.jpg", 1)

        async def scenario():
            events = []

            async def consume():
                async with contextlib.aclosing(tracker.subscribe()) as stream:
                    async for event in stream:
                        events.append(event)
                        if len(events) == 3:
                            break

            consumer = asyncio.create_task(consume())
            await asyncio.sleep(0)

            tracker.complete_task(first)
            tracker.update_progress(second, 10, TaskStage.UPLOAD)
            tracker.fail_task(second, "nope")

            await asyncio.wait_for(consumer, timeout=2)
            return events

        events = asyncio.run(scenario())

        assert [(e.name, e.data["task_id"]) for e in events] == [
            ("completed", first),
            ("progress", second),
            ("failed", second),
        ]
        assert tracker._events.listener_count("progress") == 0


class TestRetention:
    """Tests for cleanup_old_tasks and the periodic sweep."""

    def test_purges_only_old_terminal_tasks(self, tracker):
        with freeze_time("2024-01-01 12:00:00"):
            old_done = tracker.create_task(1, "a.jpg", 1)
            old_running = tracker.create_task(1, "b.jpg", 1)
            tracker.complete_task(old_done)
            tracker.start_upload(old_running)

        with freeze_time("2024-01-02 11:00:00"):
            recent_done = tracker.create_task(1, "c.jpg", 1)
            tracker.fail_task(recent_done, "x")

        with freeze_time("2024-01-02 13:00:00"):
            removed = tracker.cleanup_old_tasks()

        assert removed == 1
        assert tracker.get_task(old_done) is None
        assert tracker.get_task(old_running) is not None
        assert tracker.get_task(recent_done) is not None

    def test_explicit_now(self, tracker, task_id):
        tracker.complete_task(task_id)
        start = tracker.get_task(task_id).start_time

        assert tracker.cleanup_old_tasks(now=start + timedelta(hours=23)) == 0
        assert tracker.cleanup_old_tasks(now=start + timedelta(hours=25)) == 1

    def test_sweep_runs_until_stopped(self):
        tracker = TaskTracker(retention=timedelta(microseconds=1), sweep_interval=0.01)
        task_id = tracker.create_task(1, "a.jpg", 1)
        tracker.complete_task(task_id)

        async def scenario():
            await tracker.start()
            await tracker.start()
            sweeper = tracker._sweeper
            for _ in range(100):
                if tracker.get_task(task_id) is None:
                    break
                await asyncio.sleep(0.01)
            await tracker.stop()
            return sweeper

        sweeper = asyncio.run(scenario())

        assert tracker.get_task(task_id) is None
        assert sweeper.cancelled()
        assert tracker._sweeper is None
