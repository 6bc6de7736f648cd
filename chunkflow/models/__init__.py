from .upload import (
    OPEN_STATUSES,
    ChunkAcceptResult,
    ChunkRecord,
    EventType,
    SessionStatusView,
    UploadEvent,
    UploadProgress,
    UploadSession,
    UploadStatus,
)
