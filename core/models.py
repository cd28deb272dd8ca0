# core/models.py
from pydantic import BaseModel, Field
from typing import List, Optional, Any
from enum import Enum
import datetime

from core.blobs import Blob

# --- Enums ---

class CommitState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class ItemStatus(str, Enum):
    QUEUED = "queued" # No commit running
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"

class RejectionReason(str, Enum):
    EMPTY_QUEUE = "empty_queue"
    NOT_AUTHENTICATED = "not_authenticated"
    QUOTA_EXCEEDED = "quota_exceeded"
    ALREADY_RUNNING = "already_running"

# --- Core Data Models ---

class IncomingItem(BaseModel):
    """A blob waiting in the upload queue, with the folder path it was collected under."""
    blob: Blob
    relative_path: str = Field(default="", description="Slash-joined path inside the dropped tree; empty means use the blob's own name")

    class Config:
        frozen = True
        arbitrary_types_allowed = True

    @property
    def size(self) -> int:
        return self.blob.size

    @property
    def upload_name(self) -> str:
        """Name the blob is persisted under."""
        return self.relative_path or self.blob.name

class QuotaState(BaseModel):
    """Storage usage if the current queue were committed. Derived, never stored."""
    current_usage: int
    queue_size: int
    ceiling: int
    exceeds: bool
    ratio: float = Field(description="min(projected / ceiling, 1.0), for display")

class CommitProgress(BaseModel):
    completed_count: int = 0
    total: int = 0
    failed: Optional[str] = Field(None, description="Message of the error that halted the commit")
    failed_index: Optional[int] = None

class CommitResult(BaseModel):
    """Outcome of a single commit call."""
    state: CommitState
    completed_count: int = 0
    total: int = 0
    failed_index: Optional[int] = None
    error_message: Optional[str] = None
    rejection_reason: Optional[RejectionReason] = None
    close_requested: bool = Field(False, description="True when the collection surface should close")

    @property
    def rejected(self) -> bool:
        return self.rejection_reason is not None

class PersistedRecord(BaseModel):
    """Metadata row for a stored object (table 'files')."""
    id: str
    name: str
    type: Optional[str] = None
    size: int
    tags: List[str] = Field(default_factory=list)
    kind: str
    ext: Optional[str] = None
    path: str
    url: Optional[str] = None
    owner_id: str = Field(..., alias="user_id")
    created_at: Optional[datetime.datetime] = None

    class Config:
        from_attributes = True
        populate_by_name = True

class CurrentUser(BaseModel):
    id: str
    email: Optional[str] = None

# --- Service Request/Response Models ---

class QueueItemView(BaseModel):
    index: int
    name: str
    relative_path: str
    size: int
    content_type: str
    status: ItemStatus

class SessionView(BaseModel):
    session_id: str
    owner_id: str
    state: CommitState
    items: List[QueueItemView]
    quota: QuotaState
    progress: CommitProgress

class ImportRequest(BaseModel):
    """Server-side folder import. Paths are resolved relative to IMPORT_ROOT."""
    paths: List[str] = Field(..., min_length=1)

class ServiceResponse(BaseModel):
    """Standard response wrapper for the upload service."""
    status: str = Field(description="'success' or 'error'")
    data: Any | None = Field(default=None, description="The primary data payload (depends on the endpoint)")
    message: Optional[str] = Field(default=None, description="Optional status message or error details")
