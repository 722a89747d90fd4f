"""
Async driver for one upload through the TaskTracker stages.

    upload (0 -> 100) -> processing (50) -> ingest -> saving (90) -> completed

Ingest is blocking (hashing, disk and database work) so it runs on a bounded
thread pool. Cancellation is cooperative: it is checked between stages and
never interrupts an ingest already running. The pipeline does not retry;
a failed ingest fails the task with the error message.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from django.conf import settings
from django.db import close_old_connections

from mediastore.services.ingest import IngestService
from mediastore.services.task_tracker import TaskStage, TaskTracker, get_task_tracker

logger = logging.getLogger(__name__)


class UploadPipeline:
    """
    Run uploads through ingest while reporting progress.

    Args:
        tracker: Task registry. Defaults to the process-wide tracker.
        ingest_service: Ingest implementation.
        max_workers: Ingest pool size. Defaults to
            settings.MEDIASTORE_MAX_CONCURRENT_UPLOADS.
    """

    def __init__(
        self,
        tracker: TaskTracker | None = None,
        ingest_service: IngestService | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.tracker = tracker or get_task_tracker()
        self.ingest_service = ingest_service or IngestService()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.MEDIASTORE_MAX_CONCURRENT_UPLOADS,
            thread_name_prefix="ingest",
        )

    async def run(
        self,
        task_id: str,
        data: bytes,
        filename: str | None = None,
        mime_type: str | None = None,
    ) -> dict[str, Any] | None:
        """
        Ingest data on behalf of task_id.

        Returns:
            The ingest result dict on completion, None if the task failed or
            was cancelled.
        """
        tracker = self.tracker

        tracker.start_upload(task_id)
        tracker.update_progress(task_id, 100, TaskStage.UPLOAD, "Upload received")

        if tracker.is_cancelled(task_id):
            logger.info("Upload cancelled before processing", extra={"task_id": task_id})
            return None

        tracker.update_progress(task_id, 50, TaskStage.PROCESSING, "Processing file")

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(
                self._executor,
                functools.partial(self._ingest, data, filename, mime_type),
            )
        except Exception as e:
            logger.exception("Ingest crashed", extra={"task_id": task_id})
            tracker.fail_task(task_id, str(e))
            return None

        if not result.success:
            tracker.fail_task(task_id, result.error or "Ingest failed")
            return None

        if tracker.is_cancelled(task_id):
            await self._drop_reference(loop, task_id, result.data.hash)
            return None

        tracker.update_progress(task_id, 90, TaskStage.SAVING, "Saving record")

        payload = result.data.to_dict()
        if not tracker.complete_task(task_id, payload):
            # Cancelled while saving
            await self._drop_reference(loop, task_id, result.data.hash)
            return None
        return payload

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    async def _drop_reference(self, loop, task_id: str, file_hash: str) -> None:
        """Give back the reference taken for a task nobody wants any more."""
        released = await loop.run_in_executor(
            self._executor, self._with_connection, self.ingest_service.release, file_hash
        )
        logger.info(
            "Upload cancelled after ingest",
            extra={"task_id": task_id, "hash": file_hash, "released": released.success},
        )

    def _ingest(self, data: bytes, filename: str | None, mime_type: str | None):
        return self._with_connection(
            self.ingest_service.ingest, data, filename=filename, mime_type=mime_type
        )

    def _with_connection(self, func, *args, **kwargs):
        # Worker threads hold their own database connections
        close_old_connections()
        try:
            return func(*args, **kwargs)
        finally:
            close_old_connections()
