"""
Session registry for the upload engine.
Uses SQLite for simplicity and reliability.

The registry is the single source of truth for upload completion: the
chunk bitmap lives in ``upload_chunks`` and the counter in
``upload_sessions.uploaded_chunks`` is only ever changed in the same
transaction as a bitmap insert.
"""

import sqlite3
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional
from pathlib import Path

from chunkflow.errors import StorageFailure
from chunkflow.models.upload import ChunkRecord, UploadSession, UploadStatus

logger = logging.getLogger(__name__)

_SESSION_COLUMNS = """
    id, owner_id, content_hash, original_name, declared_size, declared_media_type,
    total_chunks, uploaded_chunks, status, hash_algorithm, final_object_key,
    error_message, chunks_purged, created_at, updated_at, completed_at
"""


def _status_value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


class SessionRegistry:
    """SQLite-based durable record of upload sessions and their chunk bitmaps."""

    def __init__(self, db_path: str = "chunkflow.db"):
        self.db_path = Path(db_path)
        self._init_database()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot open session registry: {e}") from e
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA synchronous = FULL")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageFailure(f"Session registry error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        """Initialize the database with required tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA journal_mode = WAL")

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS upload_sessions (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    content_hash TEXT NOT NULL,
                    original_name TEXT NOT NULL,
                    declared_size INTEGER NOT NULL,
                    declared_media_type TEXT NOT NULL,
                    total_chunks INTEGER NOT NULL,
                    uploaded_chunks INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    hash_algorithm TEXT,
                    final_object_key TEXT,
                    error_message TEXT,
                    chunks_purged INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    CHECK (uploaded_chunks <= total_chunks)
                )
            """)

            # One row per accepted chunk; this is the bitmap
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS upload_chunks (
                    session_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    checksum TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (session_id, chunk_index),
                    FOREIGN KEY (session_id) REFERENCES upload_sessions(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS deleted_sessions (
                    session_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    deleted_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_owner_hash
                ON upload_sessions(owner_id, content_hash)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_sessions_status ON upload_sessions(status)
            """)

        logger.info(f"Session registry initialized at {self.db_path}")

    def create_session(self, session: UploadSession) -> UploadSession:
        """Insert a new upload session."""
        with self._connect() as conn:
            conn.execute(f"""
                INSERT INTO upload_sessions ({_SESSION_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session.id,
                session.owner_id,
                session.content_hash,
                session.original_name,
                session.declared_size,
                session.declared_media_type,
                session.total_chunks,
                session.uploaded_chunks,
                _status_value(session.status),
                session.hash_algorithm,
                session.final_object_key,
                session.error_message,
                int(session.chunks_purged),
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
                session.completed_at.isoformat() if session.completed_at else None,
            ))
        logger.info(f"Created upload session {session.id} in registry")
        return session

    def get_session(self, session_id: str) -> Optional[UploadSession]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM upload_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_by_content_hash(
        self,
        owner_id: str,
        content_hash: str,
        statuses: Iterable[UploadStatus],
    ) -> Optional[UploadSession]:
        """Newest session of ``owner_id`` for ``content_hash`` in one of ``statuses``."""
        status_values = [_status_value(s) for s in statuses]
        placeholders = ", ".join("?" for _ in status_values)
        with self._connect() as conn:
            row = conn.execute(f"""
                SELECT {_SESSION_COLUMNS} FROM upload_sessions
                WHERE owner_id = ? AND content_hash = ? AND status IN ({placeholders})
                ORDER BY created_at DESC
                LIMIT 1
            """, (owner_id, content_hash, *status_values)).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(self, owner_id: str, status: Optional[UploadStatus] = None) -> List[UploadSession]:
        query = f"SELECT {_SESSION_COLUMNS} FROM upload_sessions WHERE owner_id = ?"
        params: list = [owner_id]
        if status is not None:
            query += " AND status = ?"
            params.append(_status_value(status))
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_session(row) for row in rows]

    def get_chunk(self, session_id: str, index: int) -> Optional[ChunkRecord]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT session_id, chunk_index, checksum, size, created_at
                FROM upload_chunks WHERE session_id = ? AND chunk_index = ?
            """, (session_id, index)).fetchone()
        return self._row_to_chunk(row) if row else None

    def list_chunks(self, session_id: str) -> List[ChunkRecord]:
        """Accepted chunks of a session in index order."""
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT session_id, chunk_index, checksum, size, created_at
                FROM upload_chunks WHERE session_id = ?
                ORDER BY chunk_index ASC
            """, (session_id,)).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def missing_chunks(self, session_id: str, total_chunks: int) -> List[int]:
        present = {chunk.index for chunk in self.list_chunks(session_id)}
        return [i for i in range(total_chunks) if i not in present]

    def record_chunk(self, session_id: str, index: int, checksum: str, size: int) -> bool:
        """
        Add a chunk to the bitmap and bump the counter atomically.

        Returns False when the index was already recorded, in which case
        nothing changes.
        """
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO upload_chunks (session_id, chunk_index, checksum, size, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (session_id, index, checksum, size, now))
            if cursor.rowcount == 0:
                return False
            conn.execute("""
                UPDATE upload_sessions SET
                    uploaded_chunks = uploaded_chunks + 1,
                    status = CASE WHEN status = ? THEN ? ELSE status END,
                    updated_at = ?
                WHERE id = ?
            """, (UploadStatus.PENDING.value, UploadStatus.UPLOADING.value, now, session_id))
        return True

    def update_status(
        self,
        session_id: str,
        new_status: UploadStatus,
        expected: Iterable[UploadStatus],
    ) -> bool:
        """Compare-and-set the status; False if the current status is not in ``expected``."""
        expected_values = [_status_value(s) for s in expected]
        placeholders = ", ".join("?" for _ in expected_values)
        with self._connect() as conn:
            cursor = conn.execute(f"""
                UPDATE upload_sessions SET status = ?, updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
            """, (_status_value(new_status), datetime.now().isoformat(), session_id, *expected_values))
            return cursor.rowcount > 0

    def mark_completed(self, session_id: str, final_object_key: str) -> bool:
        """Record a successful publish. Only open sessions with a full bitmap qualify."""
        now = datetime.now().isoformat()
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE upload_sessions SET
                    status = ?, final_object_key = ?, completed_at = ?, updated_at = ?
                WHERE id = ? AND status IN (?, ?, ?) AND uploaded_chunks = total_chunks
            """, (
                UploadStatus.COMPLETED.value, final_object_key, now, now, session_id,
                UploadStatus.PENDING.value, UploadStatus.UPLOADING.value, UploadStatus.PAUSED.value,
            ))
            return cursor.rowcount > 0

    def mark_error(self, session_id: str, message: str) -> bool:
        """Move a session to ``error`` unless it already completed."""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE upload_sessions SET status = ?, error_message = ?, updated_at = ?
                WHERE id = ? AND status != ?
            """, (
                UploadStatus.ERROR.value, message, datetime.now().isoformat(), session_id,
                UploadStatus.COMPLETED.value,
            ))
            return cursor.rowcount > 0

    def mark_chunks_purged(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE upload_sessions SET chunks_purged = 1 WHERE id = ?",
                (session_id,),
            )

    def delete_session(self, session_id: str, owner_id: str) -> bool:
        """Remove a session and its bitmap, leaving a tombstone for the owner."""
        with self._connect() as conn:
            conn.execute("DELETE FROM upload_chunks WHERE session_id = ?", (session_id,))
            cursor = conn.execute("DELETE FROM upload_sessions WHERE id = ?", (session_id,))
            deleted = cursor.rowcount > 0
            if deleted:
                conn.execute("""
                    INSERT OR REPLACE INTO deleted_sessions (session_id, owner_id, deleted_at)
                    VALUES (?, ?, ?)
                """, (session_id, owner_id, datetime.now().isoformat()))
        if deleted:
            logger.info(f"Deleted upload session {session_id} from registry")
        return deleted

    def deleted_by(self, session_id: str) -> Optional[str]:
        """Owner who deleted ``session_id``, if it was deleted."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner_id FROM deleted_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return row[0] if row else None

    def list_unpurged_completed(self) -> List[UploadSession]:
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_SESSION_COLUMNS} FROM upload_sessions
                WHERE status = ? AND chunks_purged = 0
            """, (UploadStatus.COMPLETED.value,)).fetchall()
        return [self._row_to_session(row) for row in rows]

    def list_stale_sessions(self, updated_before: datetime) -> List[UploadSession]:
        """Sessions that never completed and have not been touched since ``updated_before``."""
        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT {_SESSION_COLUMNS} FROM upload_sessions
                WHERE status != ? AND updated_at < ?
            """, (UploadStatus.COMPLETED.value, updated_before.isoformat())).fetchall()
        return [self._row_to_session(row) for row in rows]

    def _row_to_session(self, row) -> UploadSession:
        """Convert database row to UploadSession object."""
        return UploadSession(
            id=row[0],
            owner_id=row[1],
            content_hash=row[2],
            original_name=row[3],
            declared_size=row[4],
            declared_media_type=row[5],
            total_chunks=row[6],
            uploaded_chunks=row[7],
            status=UploadStatus(row[8]),
            hash_algorithm=row[9],
            final_object_key=row[10],
            error_message=row[11],
            chunks_purged=bool(row[12]),
            created_at=datetime.fromisoformat(row[13]),
            updated_at=datetime.fromisoformat(row[14]),
            completed_at=datetime.fromisoformat(row[15]) if row[15] else None,
        )

    def _row_to_chunk(self, row) -> ChunkRecord:
        return ChunkRecord(
            session_id=row[0],
            index=row[1],
            checksum=row[2],
            size=row[3],
            created_at=datetime.fromisoformat(row[4]),
        )
