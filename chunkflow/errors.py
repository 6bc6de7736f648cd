"""
Error taxonomy for the upload engine.

Every error carries the HTTP status it maps to and whether the client may
retry the same request.
"""

from typing import List, Optional


class UploadError(Exception):
    """Base class for all upload engine errors."""

    status_code: int = 500
    retryable: bool = False
    hint: str = "Check the request parameters and try again"

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class InvalidArgument(UploadError):
    status_code = 400


class InvalidTransition(InvalidArgument):
    """Status change not allowed by the session state machine."""


class NotFound(UploadError):
    status_code = 404
    hint = "Check the upload session id"


class Forbidden(UploadError):
    status_code = 403
    hint = "Only the session owner may perform this operation"


class OutOfRange(UploadError):
    status_code = 400
    hint = "Chunk index must be between 0 and total_chunks - 1"


class ChecksumConflict(UploadError):
    status_code = 409
    hint = "An already accepted chunk cannot be replaced with different content"


class SessionAlreadyCompleted(UploadError):
    status_code = 409
    hint = "The upload is already complete"


class SessionFailed(UploadError):
    status_code = 409
    hint = "Delete the session and upload the file again"


class IncompleteUpload(UploadError):
    status_code = 409
    retryable = True
    hint = "Upload the missing chunks and retry"

    def __init__(self, message: str, session_id: Optional[str] = None,
                 missing: Optional[List[int]] = None):
        super().__init__(message, session_id)
        self.missing = missing or []


class StorageFailure(UploadError):
    status_code = 500
    retryable = True
    hint = "Please try again later"


class CorruptUpload(StorageFailure):
    """Assembled object failed its size or content hash check."""
    retryable = False
    hint = "Delete the session and upload the file again"


class MergeTimeout(StorageFailure):
    status_code = 504
