"""
In-memory tracking of multi-stage upload tasks.

Each upload moves through a small state machine:

    pending -> uploading (stage=upload) -> processing -> completed
                                   \\-> failed (at any point)

Cancellation is a failure carrying the CANCELLED_ERROR sentinel. Every
change is broadcast twice, once on the global event name and once on the
per-task name ("progress" and "progress:<task_id>"), so a consumer can
follow everything or narrow to one task.

The tracker counts active uploads against max_concurrent_uploads but never
blocks or queues: can_start_new_upload() is advisory and callers decide.
Terminal tasks are purged after the retention window by a periodic sweep;
tasks that never finish are kept so they stay visible.

Usage:
    tracker = get_task_tracker()
    task_id = tracker.create_task(user_id=7, filename="cat.jpg", file_size=1024)
    tracker.start_upload(task_id)
    tracker.update_progress(task_id, 50, TaskStage.PROCESSING, "Generating thumbnail")
    tracker.complete_task(task_id, {"hash": "..."})

    async for event in tracker.subscribe(task_id):
        send_sse(event.name, event.data)
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import threading
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, NamedTuple

from django.conf import settings
from django.utils import timezone

from mediastore.services.events import EventBus, EventHandler

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Cancelled by user"

PROGRESS_EVENT = "progress"
COMPLETED_EVENT = "completed"
FAILED_EVENT = "failed"
CANCELLED_EVENT = "cancelled"

EVENT_NAMES = (PROGRESS_EVENT, COMPLETED_EVENT, FAILED_EVENT, CANCELLED_EVENT)
TERMINAL_EVENTS = (COMPLETED_EVENT, FAILED_EVENT, CANCELLED_EVENT)


class TaskStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStage(str, Enum):
    UPLOAD = "upload"
    PROCESSING = "processing"
    SAVING = "saving"
    COMPLETED = "completed"


TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


@dataclass
class UploadTask:
    """
    One tracked upload.

    Attributes:
        id: Task id ("upload_<ms>_<random>").
        user_id: Owner of the upload.
        filename: Original filename.
        file_size: Declared size in bytes.
        status: Current TaskStatus.
        stage: Current TaskStage.
        progress: Last reported percentage, 0-100.
        start_time: When the task was created.
        end_time: When the task reached a terminal status.
        error: Failure reason; CANCELLED_ERROR for cancellations.
        result: Payload passed to complete_task().
        message: Last progress message.
    """

    id: str
    user_id: Any
    filename: str
    file_size: int
    status: TaskStatus = TaskStatus.PENDING
    stage: TaskStage = TaskStage.UPLOAD
    progress: int = 0
    start_time: datetime = dataclasses.field(default_factory=timezone.now)
    end_time: datetime | None = None
    error: str | None = None
    result: Any = None
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.status == TaskStatus.FAILED and self.error == CANCELLED_ERROR

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time or timezone.now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "filename": self.filename,
            "file_size": self.file_size,
            "status": self.status.value,
            "stage": self.stage.value,
            "progress": self.progress,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "result": self.result,
            "message": self.message,
        }


class TaskEvent(NamedTuple):
    """An event delivered by TaskTracker.subscribe()."""

    name: str
    data: dict[str, Any]


class TaskTracker:
    """
    Registry of upload tasks with progress broadcast.

    Thread-safe: task state is guarded by a lock, and events are emitted
    outside it so handlers may call back into the tracker.

    Args:
        max_concurrent_uploads: Advisory cap used by can_start_new_upload().
        retention: How long terminal tasks are kept.
        sweep_interval: Seconds between retention sweeps once start()ed.
    """

    def __init__(
        self,
        max_concurrent_uploads: int | None = None,
        retention: timedelta | None = None,
        sweep_interval: float | None = None,
    ) -> None:
        self.max_concurrent_uploads = (
            max_concurrent_uploads or settings.MEDIASTORE_MAX_CONCURRENT_UPLOADS
        )
        self.retention = retention or timedelta(hours=settings.MEDIASTORE_TASK_RETENTION_HOURS)
        self.sweep_interval = sweep_interval or settings.MEDIASTORE_TASK_SWEEP_INTERVAL_SECONDS

        self._tasks: dict[str, UploadTask] = {}
        self._active: set[str] = set()
        self._lock = threading.Lock()
        self._events = EventBus()
        self._sweeper: asyncio.Task | None = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_task(self, user_id: Any, filename: str, file_size: int) -> str:
        """Register a pending task and return its id."""
        task_id = f"upload_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        task = UploadTask(id=task_id, user_id=user_id, filename=filename, file_size=file_size)

        with self._lock:
            self._tasks[task_id] = task

        logger.info(
            "Created upload task",
            extra={"task_id": task_id, "user_id": user_id, "upload_filename": filename},
        )
        return task_id

    def start_upload(self, task_id: str) -> None:
        """Take an upload slot and report progress 0 in the upload stage."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return
            self._active.add(task_id)

        self.update_progress(task_id, 0, TaskStage.UPLOAD, "Upload started")

    def update_progress(
        self,
        task_id: str,
        progress: float,
        stage: TaskStage | str,
        message: str = "",
        estimated_time: float | None = None,
    ) -> None:
        """
        Store and broadcast the latest progress.

        Progress is clamped to 0-100 but not required to increase. The status
        follows the stage: upload below 100 means uploading, processing means
        processing, and completed finishes the task.
        """
        stage = TaskStage(stage)
        progress = int(max(0, min(100, progress)))

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return

            task.progress = progress
            task.stage = stage
            task.message = message

            if stage == TaskStage.UPLOAD and progress < 100:
                task.status = TaskStatus.UPLOADING
            elif stage == TaskStage.PROCESSING:
                task.status = TaskStatus.PROCESSING
            elif stage == TaskStage.COMPLETED:
                task.status = TaskStatus.COMPLETED
                task.end_time = timezone.now()
                self._active.discard(task_id)

        payload = {
            "task_id": task_id,
            "progress": progress,
            "stage": stage.value,
            "message": message,
            "estimated_time": estimated_time,
        }

        logger.debug(
            "Upload progress",
            extra={"task_id": task_id, "stage": stage.value, "progress": progress},
        )
        self._emit(PROGRESS_EVENT, task_id, payload)

    def complete_task(self, task_id: str, result: Any = None) -> bool:
        """
        Finish the task with result.

        Returns:
            False if the task is unknown or already failed or cancelled, in
            which case result is dropped.
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return False

            task.status = TaskStatus.COMPLETED
            task.stage = TaskStage.COMPLETED
            task.progress = 100
            task.end_time = timezone.now()
            task.result = result
            self._active.discard(task_id)
            elapsed = task.elapsed_seconds

        logger.info(
            "Upload task completed",
            extra={"task_id": task_id, "elapsed_seconds": round(elapsed, 1)},
        )
        self._emit(COMPLETED_EVENT, task_id, {"task_id": task_id, "result": result})
        return True

    def fail_task(self, task_id: str, error: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return

            task.status = TaskStatus.FAILED
            task.end_time = timezone.now()
            task.error = error
            self._active.discard(task_id)

        logger.warning("Upload task failed", extra={"task_id": task_id, "error": error})
        self._emit(FAILED_EVENT, task_id, {"task_id": task_id, "error": error})

    def cancel_task(self, task_id: str) -> None:
        """Fail the task with CANCELLED_ERROR and free its slot immediately."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.is_terminal:
                return

            task.status = TaskStatus.FAILED
            task.end_time = timezone.now()
            task.error = CANCELLED_ERROR
            self._active.discard(task_id)

        logger.info("Upload task cancelled", extra={"task_id": task_id})
        self._emit(CANCELLED_EVENT, task_id, {"task_id": task_id})

    # =========================================================================
    # Queries
    # =========================================================================

    def get_task(self, task_id: str) -> UploadTask | None:
        """Snapshot of a task, or None."""
        with self._lock:
            task = self._tasks.get(task_id)
            return dataclasses.replace(task) if task else None

    def get_user_tasks(self, user_id: Any) -> list[UploadTask]:
        with self._lock:
            return [
                dataclasses.replace(task)
                for task in self._tasks.values()
                if task.user_id == user_id
            ]

    def is_cancelled(self, task_id: str) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            return bool(task and task.is_cancelled)

    def get_active_upload_count(self) -> int:
        with self._lock:
            return len(self._active)

    def can_start_new_upload(self) -> bool:
        with self._lock:
            return len(self._active) < self.max_concurrent_uploads

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup_old_tasks(self, now: datetime | None = None) -> int:
        """
        Purge terminal tasks that started before the retention window.

        Returns:
            Number of tasks removed.
        """
        cutoff = (now or timezone.now()) - self.retention

        with self._lock:
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if task.is_terminal and task.start_time < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]

        if expired:
            logger.info("Purged old upload tasks", extra={"count": len(expired)})
        return len(expired)

    async def start(self) -> None:
        """Run the retention sweep periodically on the current event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(), name="task-tracker-sweep")

    async def stop(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.cleanup_old_tasks()
            except Exception:
                logger.exception("Upload task sweep failed")

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: EventHandler) -> None:
        """Register handler for "progress", "progress:<task_id>", "completed", ..."""
        self._events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        self._events.off(event, handler)

    async def subscribe(self, task_id: str | None = None) -> AsyncIterator[TaskEvent]:
        """
        Iterate over task events on the running event loop.

        Without task_id every event is delivered. With task_id only that
        task's events are, and iteration ends after its terminal event
        (immediately, if the task already finished).
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()
        registered: list[tuple[str, EventHandler]] = []

        for name in EVENT_NAMES:
            channel = f"{name}:{task_id}" if task_id else name

            def handler(payload: dict[str, Any], _name: str = name) -> None:
                loop.call_soon_threadsafe(queue.put_nowait, TaskEvent(_name, payload))

            self._events.on(channel, handler)
            registered.append((channel, handler))

        try:
            if task_id:
                task = self.get_task(task_id)
                if task is not None and task.is_terminal:
                    yield _terminal_event(task)
                    return

            while True:
                event = await queue.get()
                yield event
                if task_id and event.name in TERMINAL_EVENTS:
                    return
        finally:
            for channel, handler in registered:
                self._events.off(channel, handler)

    def _emit(self, event: str, task_id: str, payload: dict[str, Any]) -> None:
        self._events.emit(event, payload)
        self._events.emit(f"{event}:{task_id}", payload)


def _terminal_event(task: UploadTask) -> TaskEvent:
    if task.status == TaskStatus.COMPLETED:
        return TaskEvent(COMPLETED_EVENT, {"task_id": task.id, "result": task.result})
    if task.is_cancelled:
        return TaskEvent(CANCELLED_EVENT, {"task_id": task.id})
    return TaskEvent(FAILED_EVENT, {"task_id": task.id, "error": task.error})


_tracker: TaskTracker | None = None
_tracker_lock = threading.Lock()


def get_task_tracker() -> TaskTracker:
    """The process-wide tracker, created on first use."""
    global _tracker
    with _tracker_lock:
        if _tracker is None:
            _tracker = TaskTracker()
        return _tracker
