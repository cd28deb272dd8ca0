# services/upload_service/app/pipeline.py
"""
Sequential commit of an upload queue.

State machine: IDLE -> RUNNING -> {SUCCEEDED, FAILED}. A commit only starts
with a non-empty queue, a signed-in owner and a quota check that passes; a
refused commit changes nothing. Items go to storage one at a time in queue
order. The first failure stops the run and leaves the queue exactly as it was
submitted; a full success clears it.
"""
import inspect
from typing import Callable, Optional

from core.config import logger as core_logger
from core.file_kind import auto_tags, file_extension, infer_kind
from core.models import (
    CommitProgress, CommitResult, CommitState, CurrentUser, IncomingItem, ItemStatus, RejectionReason
)
from core.storage import StorageError
from .quota import check_quota
from .upload_queue import UploadQueue

logger = core_logger.getChild("UploadService").getChild("Pipeline")

DEFAULT_FAILURE_MESSAGE = "Upload failed! Something went wrong."


class UploadPipeline:
    """
    Runs commits against a storage collaborator exposing
    ``async persist(blob, owner_id, tags) -> PersistedRecord``.
    """

    def __init__(self, storage, kind_inferrer: Callable[[Optional[str], str], str] = infer_kind, on_progress: Optional[Callable] = None):
        self.storage = storage
        self.infer_kind = kind_inferrer
        self.on_progress = on_progress # Called with (state, progress); may be async
        self.state = CommitState.IDLE
        self.progress = CommitProgress()
        self.last_error: Optional[StorageError] = None

    @property
    def running(self) -> bool:
        return self.state == CommitState.RUNNING

    def item_status(self, index: int) -> ItemStatus:
        """done / in_flight / pending relative to completed_count while running; queued otherwise."""
        if not self.running:
            return ItemStatus.QUEUED
        if index < self.progress.completed_count:
            return ItemStatus.DONE
        if index == self.progress.completed_count:
            return ItemStatus.IN_FLIGHT
        return ItemStatus.PENDING

    def tags_for(self, item: IncomingItem):
        blob = item.blob
        kind = self.infer_kind(blob.content_type, blob.name)
        return auto_tags(kind, file_extension(blob.name))

    def _rejection(self, queue: UploadQueue, owner: Optional[CurrentUser], current_usage: int, ceiling: int) -> Optional[RejectionReason]:
        if self.running:
            return RejectionReason.ALREADY_RUNNING
        if not len(queue):
            return RejectionReason.EMPTY_QUEUE
        if owner is None:
            return RejectionReason.NOT_AUTHENTICATED
        if check_quota(current_usage, queue.aggregate_size(), ceiling).exceeds:
            return RejectionReason.QUOTA_EXCEEDED
        return None

    async def _notify(self):
        if self.on_progress is None:
            return
        try:
            result = self.on_progress(self.state, self.progress.model_copy())
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Progress callback failed: {e}", exc_info=True)

    async def commit(self, queue: UploadQueue, owner: Optional[CurrentUser], current_usage: int, ceiling: int) -> CommitResult:
        """Persists every queued item in order. Returns the outcome; never raises for storage failures."""
        reason = self._rejection(queue, owner, current_usage, ceiling)
        if reason is not None:
            logger.info(f"Commit refused ({reason.value}); queue has {len(queue)} items.")
            return CommitResult(state=self.state, total=len(queue), rejection_reason=reason)

        items = queue.items
        job_prefix = f"[{owner.id}]"
        self.state = CommitState.RUNNING
        self.progress = CommitProgress(total=len(items))
        self.last_error = None
        queue.freeze()
        logger.info(f"{job_prefix} Commit started: {len(items)} items, {queue.aggregate_size()} bytes.")
        await self._notify()

        try:
            for index, item in enumerate(items):
                try:
                    await self.storage.persist(item.blob.renamed(item.upload_name), owner.id, self.tags_for(item))
                except Exception as e:
                    error = e if isinstance(e, StorageError) else StorageError(str(e) or DEFAULT_FAILURE_MESSAGE)
                    if error is not e:
                        error.__cause__ = e
                        logger.error(f"{job_prefix} Unexpected error persisting item {index} ('{item.upload_name}'): {e}", exc_info=True)
                    else:
                        logger.error(f"{job_prefix} Item {index} ('{item.upload_name}') failed: {e}")
                    message = str(error) or DEFAULT_FAILURE_MESSAGE
                    self.last_error = error
                    self.progress.failed = message
                    self.progress.failed_index = index
                    self.state = CommitState.FAILED
                    logger.warning(f"{job_prefix} Commit halted after {self.progress.completed_count}/{len(items)} items; queue kept for retry.")
                    return CommitResult(
                        state=self.state,
                        completed_count=self.progress.completed_count,
                        total=len(items),
                        failed_index=index,
                        error_message=message,
                    )
                self.progress.completed_count += 1
                await self._notify()

            self.state = CommitState.SUCCEEDED
            queue.unfreeze()
            queue.clear()
            logger.info(f"{job_prefix} Commit succeeded: {len(items)} items stored.")
            return CommitResult(
                state=self.state,
                completed_count=self.progress.completed_count,
                total=len(items),
                close_requested=True,
            )
        finally:
            if self.state == CommitState.RUNNING:
                # Cancelled mid-item
                self.state = CommitState.FAILED
                self.progress.failed = "Upload was interrupted."
                self.progress.failed_index = self.progress.completed_count
            queue.unfreeze()
            await self._notify()
