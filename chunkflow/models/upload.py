from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


OPEN_STATUSES = (UploadStatus.PENDING, UploadStatus.UPLOADING, UploadStatus.PAUSED)


class EventType(str, Enum):
    PROGRESS = "progress"
    COMPLETED = "completed"
    STATUS_CHANGED = "status-changed"


class UploadSession(BaseModel):
    """Represents a chunked upload session and its progression state."""

    model_config = ConfigDict(use_enum_values=True)

    id: str
    owner_id: str
    content_hash: str
    original_name: str
    declared_size: int
    declared_media_type: str
    total_chunks: int
    uploaded_chunks: int = 0
    status: UploadStatus = UploadStatus.PENDING
    hash_algorithm: Optional[str] = None  # e.g., sha256
    final_object_key: Optional[str] = None
    error_message: Optional[str] = None
    chunks_purged: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    def is_complete(self) -> bool:
        return self.total_chunks > 0 and self.uploaded_chunks >= self.total_chunks

    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class ChunkRecord(BaseModel):
    """A chunk accepted into a session's bitmap."""

    session_id: str
    index: int
    checksum: str
    size: int
    created_at: datetime


class UploadProgress(BaseModel):
    uploaded_chunks: int
    total_chunks: int
    percent: float

    @classmethod
    def of(cls, session: UploadSession) -> "UploadProgress":
        percent = 100 * session.uploaded_chunks / session.total_chunks if session.total_chunks else 0.0
        return cls(
            uploaded_chunks=session.uploaded_chunks,
            total_chunks=session.total_chunks,
            percent=round(percent, 2),
        )


class ChunkAcceptResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    session_id: str
    index: int
    duplicate: bool
    uploaded_chunks: int
    total_chunks: int
    status: UploadStatus
    final_object_key: Optional[str] = None


class UploadEvent(BaseModel):
    """Event pushed to the progress notifier."""

    model_config = ConfigDict(use_enum_values=True)

    type: EventType
    session_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    data: Dict[str, Any] = Field(default_factory=dict)


class SessionStatusView(BaseModel):
    """Session record plus derived progress, as returned by status reads."""

    session: UploadSession
    progress: UploadProgress
    missing_chunks: List[int] = Field(default_factory=list)
