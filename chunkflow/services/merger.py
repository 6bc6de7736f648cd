"""
Assembles a session's chunks into the final object and publishes it.

The merge is the point of no return: once the assembled file has been
renamed into the object directory and the registry marks the session
completed, a later failure to purge chunks is only logged and left for the
maintenance sweeper.
"""

import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Optional

from chunkflow.errors import (
    CorruptUpload,
    IncompleteUpload,
    MergeTimeout,
    NotFound,
    SessionFailed,
    StorageFailure,
)
from chunkflow.models.upload import UploadSession, UploadStatus
from chunkflow.services.checksums import checksums_match, new_hasher
from chunkflow.services.chunk_store import ChunkMissing, ChunkStore, fsync_dir
from chunkflow.services.database import SessionRegistry

logger = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


class Merger:
    """Concatenates chunks in index order, verifies and atomically publishes."""

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        object_dir: str,
        chunk_checksum_alg: str = "md5",
        fsync: bool = True,
    ):
        self.registry = registry
        self.chunk_store = chunk_store
        self.object_dir = Path(object_dir)
        self.chunk_checksum_alg = chunk_checksum_alg
        self.fsync = fsync
        self.object_dir.mkdir(parents=True, exist_ok=True)

    def object_key_for(self, session: UploadSession) -> str:
        suffix = Path(session.original_name).suffix
        if not _SUFFIX_RE.match(suffix):
            suffix = ""
        return f"{session.id}{suffix.lower()}"

    def object_path(self, key: str) -> Path:
        return self.object_dir / key

    def delete_object(self, key: str) -> bool:
        try:
            os.remove(self.object_path(key))
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"Failed to delete object {key}: {e}") from e
        logger.info(f"Deleted final object {key}")
        return True

    def merge(self, session_id: str, cancel: Optional[threading.Event] = None) -> str:
        """
        Merge the chunks of ``session_id`` and return the final object key.

        Args:
            session_id: Session to merge. Its bitmap is re-read from the
                registry; the caller's view of completeness is not trusted.
            cancel: Optional flag checked between chunks and before publish.

        Raises:
            IncompleteUpload: bitmap not full or a chunk payload is missing.
            CorruptUpload: size, chunk checksum or content hash mismatch.
            MergeTimeout: ``cancel`` was set before publish.
        """
        session = self.registry.get_session(session_id)
        if session is None:
            raise NotFound("Upload session not found", session_id)
        if session.status == UploadStatus.COMPLETED:
            return session.final_object_key
        if session.status == UploadStatus.ERROR:
            raise SessionFailed(f"Upload session is in error: {session.error_message}", session_id)

        chunks = self.registry.list_chunks(session_id)
        if session.uploaded_chunks != session.total_chunks or len(chunks) != session.total_chunks:
            missing = self.registry.missing_chunks(session_id, session.total_chunks)
            raise IncompleteUpload(f"Missing chunks: {missing}", session_id, missing=missing)

        key = self.object_key_for(session)
        final_path = self.object_path(key)
        partial_path = self.object_dir / f".{key}.{uuid.uuid4().hex}.partial"
        content_hasher = new_hasher(session.hash_algorithm) if session.hash_algorithm else None
        expected_size = sum(chunk.size for chunk in chunks)
        written = 0

        logger.info(f"Merging {session.total_chunks} chunks for {session_id}")
        try:
            with open(partial_path, "wb") as out_f:
                for position, chunk in enumerate(chunks):
                    if cancel is not None and cancel.is_set():
                        raise MergeTimeout("Merge cancelled before completion", session_id)
                    if chunk.index != position:
                        raise IncompleteUpload(f"Missing chunks: [{position}]", session_id, missing=[position])
                    try:
                        data = self.chunk_store.get(session_id, chunk.index)
                    except ChunkMissing as e:
                        raise IncompleteUpload(
                            f"Chunk {chunk.index} is missing from storage",
                            session_id,
                            missing=[chunk.index],
                        ) from e

                    chunk_hasher = new_hasher(self.chunk_checksum_alg)
                    chunk_hasher.update(data)
                    if len(data) != chunk.size or not checksums_match(chunk.checksum, chunk_hasher.hexdigest()):
                        raise CorruptUpload(f"Stored chunk {chunk.index} does not match its record", session_id)
                    if content_hasher is not None:
                        content_hasher.update(data)
                    out_f.write(data)
                    written += len(data)

                out_f.flush()
                if self.fsync:
                    os.fsync(out_f.fileno())

            if written != expected_size:
                raise CorruptUpload(
                    f"Assembled {written} bytes but chunks total {expected_size}", session_id
                )
            if written != session.declared_size:
                raise CorruptUpload(
                    f"Assembled {written} bytes but {session.declared_size} were declared", session_id
                )
            if content_hasher is not None and not checksums_match(session.content_hash, content_hasher.hexdigest()):
                raise CorruptUpload("Content hash mismatch", session_id)
            if cancel is not None and cancel.is_set():
                raise MergeTimeout("Merge cancelled before publish", session_id)

            os.replace(partial_path, final_path)
            if self.fsync:
                fsync_dir(self.object_dir)
        except OSError as e:
            raise StorageFailure(f"Failed to assemble {session_id}: {e}", session_id) from e
        finally:
            if partial_path.exists():
                try:
                    os.remove(partial_path)
                except OSError as e:
                    logger.warning(f"Could not remove partial object {partial_path}: {e}")

        if not self.registry.mark_completed(session_id, key):
            # Session left the open states while we were assembling
            self.delete_object(key)
            raise StorageFailure("Upload session changed during merge", session_id)
        logger.info(f"Published {session_id} as {key} ({written} bytes)")

        self.purge_chunks(session_id)
        return key

    def purge_chunks(self, session_id: str) -> bool:
        """Delete a published session's chunks. Failures are left for a later retry."""
        try:
            self.chunk_store.delete(session_id)
            self.registry.mark_chunks_purged(session_id)
        except StorageFailure as e:
            logger.warning(f"Chunk cleanup for {session_id} deferred: {e}")
            return False
        return True
