"""
Durable filesystem storage for chunk payloads.

Layout: ``<chunk_dir>/<session_id>/part_<index:06d>``. Every write goes to a
uniquely named temporary file in the session directory, is flushed and
fsynced, then atomically renamed into place, so concurrent writers of
different indices never touch each other's files and a reader never sees a
torn chunk.
"""

import logging
import os
import shutil
import uuid
from pathlib import Path
from typing import List

from chunkflow.errors import StorageFailure

logger = logging.getLogger(__name__)


class ChunkMissing(StorageFailure):
    """Requested chunk payload is not in the store."""


def fsync_dir(path: Path) -> None:
    # Directory fsync persists the rename itself; not supported everywhere.
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


class ChunkStore:
    """Chunk payloads addressed by ``(session_id, index)``."""

    def __init__(self, base_dir: str, fsync: bool = True):
        self.base_dir = Path(base_dir)
        self.fsync = fsync
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_id: str) -> Path:
        return self.base_dir / session_id

    def chunk_path(self, session_id: str, index: int) -> Path:
        return self.session_dir(session_id) / f"part_{index:06d}"

    def stage(self, session_id: str, index: int, data: bytes) -> Path:
        """Write ``data`` durably to a temporary file and return its path."""
        out_dir = self.session_dir(session_id)
        staged = out_dir / f".part_{index:06d}.{uuid.uuid4().hex}.tmp"
        try:
            out_dir.mkdir(parents=True, exist_ok=True)
            with open(staged, "wb") as f:
                f.write(data)
                f.flush()
                if self.fsync:
                    os.fsync(f.fileno())
        except OSError as e:
            self.discard(staged)
            raise StorageFailure(f"Failed to write chunk {index} of {session_id}: {e}", session_id) from e
        return staged

    def commit(self, staged: Path, session_id: str, index: int) -> Path:
        """Atomically move a staged file to its final chunk path."""
        target = self.chunk_path(session_id, index)
        try:
            os.replace(staged, target)
        except OSError as e:
            self.discard(staged)
            raise StorageFailure(f"Failed to store chunk {index} of {session_id}: {e}", session_id) from e
        if self.fsync:
            fsync_dir(target.parent)
        return target

    def discard(self, staged: Path) -> None:
        try:
            os.remove(staged)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged chunk {staged}: {e}")

    def put(self, session_id: str, index: int, data: bytes) -> None:
        self.commit(self.stage(session_id, index, data), session_id, index)

    def get(self, session_id: str, index: int) -> bytes:
        path = self.chunk_path(session_id, index)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise ChunkMissing(f"Chunk {index} of {session_id} is missing", session_id) from e
        except OSError as e:
            raise StorageFailure(f"Failed to read chunk {index} of {session_id}: {e}", session_id) from e

    def exists(self, session_id: str, index: int) -> bool:
        return self.chunk_path(session_id, index).is_file()

    def list_indices(self, session_id: str) -> List[int]:
        out_dir = self.session_dir(session_id)
        if not out_dir.is_dir():
            return []
        indices = []
        for name in os.listdir(out_dir):
            if name.startswith("part_"):
                try:
                    indices.append(int(name.split("_")[1]))
                except ValueError:
                    continue
        return sorted(indices)

    def delete(self, session_id: str) -> None:
        """Remove every chunk of a session."""
        out_dir = self.session_dir(session_id)
        try:
            shutil.rmtree(out_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageFailure(f"Failed to delete chunks of {session_id}: {e}", session_id) from e
        logger.info(f"Deleted chunks for {session_id}")
