# services/upload_service/app/session.py
import uuid
from typing import Dict, Optional

from core.config import settings, logger as core_logger
from core.models import CommitProgress, CommitResult, CommitState, CurrentUser, QueueItemView, QuotaState, SessionView
from .pipeline import UploadPipeline
from .quota import check_quota
from .traversal import DropPayload, collect
from .upload_queue import QueueFrozenError, UploadQueue

logger = core_logger.getChild("UploadService").getChild("Session")


class SessionBusyError(RuntimeError):
    """The session cannot be closed or changed while its commit is running."""


class SessionClosedError(RuntimeError):
    """The session was closed, so its queue no longer accepts files."""


class UploadSession:
    """One collection surface: a fresh queue plus the pipeline that commits it."""

    def __init__(self, owner: CurrentUser, storage, ceiling: Optional[int] = None, session_id: Optional[str] = None):
        self.session_id = session_id or uuid.uuid4().hex
        self.owner = owner
        self.ceiling = ceiling if ceiling is not None else settings.MAX_STORAGE_BYTES
        self.queue = UploadQueue()
        self.pipeline = UploadPipeline(storage)
        self.closed = False

    @property
    def running(self) -> bool:
        return self.pipeline.running

    async def add(self, payload: DropPayload) -> int:
        """Collects the payload and appends the result. Refused while a commit runs or once the session is closed."""
        if self.closed:
            raise SessionClosedError("This upload session is closed.")
        if self.running:
            raise QueueFrozenError("Cannot add files while an upload is in progress.")
        items = await collect(payload)
        # Closed while the tree was being read
        if self.closed:
            logger.info(f"[{self.session_id}] Dropping {len(items)} collected files, session closed during collection.")
            raise SessionClosedError("This upload session was closed while files were being collected.")
        return self.queue.append(items)

    def remove(self, index: int) -> bool:
        return self.queue.remove_at(index)

    def quota(self, current_usage: int) -> QuotaState:
        return check_quota(current_usage, self.queue.aggregate_size(), self.ceiling)

    async def commit(self, current_usage: int) -> CommitResult:
        result = await self.pipeline.commit(self.queue, self.owner, current_usage, self.ceiling)
        if result.close_requested:
            self.close()
        return result

    def close(self):
        """Discards the queue and resets progress. Refused while a commit is running."""
        if self.running:
            raise SessionBusyError("Cannot close while an upload is in progress.")
        self.queue.clear()
        self.pipeline.state = CommitState.IDLE
        self.pipeline.progress = CommitProgress()
        self.closed = True
        logger.debug(f"[{self.session_id}] Session closed.")

    def view(self, current_usage: int) -> SessionView:
        items = [
            QueueItemView(
                index=index,
                name=item.blob.name,
                relative_path=item.relative_path,
                size=item.size,
                content_type=item.blob.content_type,
                status=self.pipeline.item_status(index),
            )
            for index, item in enumerate(self.queue)
        ]
        return SessionView(
            session_id=self.session_id,
            owner_id=self.owner.id,
            state=self.pipeline.state,
            items=items,
            quota=self.quota(current_usage),
            progress=self.pipeline.progress.model_copy(),
        )


class SessionRegistry:
    """In-memory sessions of this process; nothing survives a restart."""

    def __init__(self, storage):
        self.storage = storage
        self._sessions: Dict[str, UploadSession] = {}

    def open(self, owner: CurrentUser, ceiling: Optional[int] = None) -> UploadSession:
        session = UploadSession(owner, self.storage, ceiling=ceiling)
        self._sessions[session.session_id] = session
        logger.info(f"[{session.session_id}] Opened upload session for user {owner.id}.")
        return session

    def get(self, session_id: str, owner_id: str) -> Optional[UploadSession]:
        """The session, or None if it does not exist or belongs to someone else."""
        session = self._sessions.get(session_id)
        if session is None or session.owner.id != owner_id:
            return None
        return session

    def close(self, session_id: str):
        session = self._sessions.get(session_id)
        if session is None:
            return
        session.close()
        del self._sessions[session_id]

    def discard(self, session_id: str):
        """Forgets an already-closed session."""
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
