import asyncio
import logging
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from chunkflow.config import Settings, settings
from chunkflow.errors import (
    ChecksumConflict,
    Forbidden,
    IncompleteUpload,
    InvalidArgument,
    InvalidTransition,
    MergeTimeout,
    NotFound,
    OutOfRange,
    SessionAlreadyCompleted,
    SessionFailed,
    StorageFailure,
    UploadError,
)
from chunkflow.models.upload import (
    OPEN_STATUSES,
    ChunkAcceptResult,
    EventType,
    SessionStatusView,
    UploadEvent,
    UploadProgress,
    UploadSession,
    UploadStatus,
)
from chunkflow.services.checksums import SUPPORTED_ALGORITHMS, checksums_match, compute_checksum
from chunkflow.services.chunk_store import ChunkStore
from chunkflow.services.database import SessionRegistry
from chunkflow.services.locks import KeyedLock
from chunkflow.services.merger import Merger
from chunkflow.services.notifier import NullNotifier, ProgressNotifier, WebSocketNotifier, manager

logger = logging.getLogger(__name__)


class SessionStateMachine:
    """
    Status changes an owner may request.

    ``completed`` and ``error`` are engine outcomes, written only through the
    registry's conditional updates, so they never appear as targets here.
    """

    OWNER_TRANSITIONS = {
        UploadStatus.PENDING: {UploadStatus.PAUSED},
        UploadStatus.UPLOADING: {UploadStatus.PAUSED},
        UploadStatus.PAUSED: {UploadStatus.PENDING, UploadStatus.UPLOADING},
    }

    @staticmethod
    def can_transition(current: UploadStatus, new: UploadStatus) -> bool:
        return UploadStatus(new) in SessionStateMachine.OWNER_TRANSITIONS.get(UploadStatus(current), set())

    @staticmethod
    def check_owner_transition(current: UploadStatus, new: UploadStatus):
        if not SessionStateMachine.can_transition(current, new):
            raise InvalidTransition(f"Invalid transition: {UploadStatus(current).value} -> {UploadStatus(new).value}")


class UploadCoordinator:
    """
    Drives upload sessions from creation to a published object.

    Per session, "read bitmap -> commit chunk -> update bitmap -> check
    completion -> maybe merge" runs under a lock keyed by session id. Chunk
    bytes are hashed and staged to disk in worker threads before the lock is
    taken; commits and merges also run off the event loop.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        chunk_store: ChunkStore,
        merger: Merger,
        notifier: Optional[ProgressNotifier] = None,
        max_upload_size: Optional[int] = None,
        max_chunk_size: Optional[int] = None,
        chunk_checksum_alg: str = "md5",
        merge_timeout_seconds: float = 300.0,
        session_ttl: Optional[timedelta] = None,
        sweep_interval_seconds: float = 3600.0,
    ):
        self.registry = registry
        self.chunk_store = chunk_store
        self.merger = merger
        self.notifier = notifier or NullNotifier()
        self.max_upload_size = max_upload_size
        self.max_chunk_size = max_chunk_size
        self.chunk_checksum_alg = chunk_checksum_alg
        self.merge_timeout_seconds = merge_timeout_seconds
        self.session_ttl = session_ttl
        self.sweep_interval_seconds = sweep_interval_seconds

        self._locks = KeyedLock()
        self._sweeper: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # Session creation and lookup

    async def init_session(
        self,
        owner_id: str,
        content_hash: str,
        declared_size: int,
        declared_media_type: str,
        original_name: str,
        total_chunks: int,
        hash_algorithm: Optional[str] = None,
    ) -> UploadSession:
        """
        Create an upload session, or return the open one already tracking
        the same content for this owner.

        Completed sessions are never returned here; use ``find_completed``.
        """
        if not owner_id:
            raise InvalidArgument("owner_id is required")
        if not content_hash or not content_hash.strip():
            raise InvalidArgument("content_hash is required")
        if total_chunks <= 0:
            raise InvalidArgument("total_chunks must be > 0")
        if declared_size < 0:
            raise InvalidArgument("declared_size must be >= 0")
        if self.max_upload_size is not None and declared_size > self.max_upload_size:
            raise InvalidArgument("File too large")
        if hash_algorithm is not None:
            hash_algorithm = hash_algorithm.lower()
            if hash_algorithm not in SUPPORTED_ALGORITHMS:
                raise InvalidArgument(f"Unsupported hash algorithm: {hash_algorithm}")
        content_hash = content_hash.strip()

        async with self._locks.hold(f"init:{owner_id}:{content_hash}"):
            existing = self.registry.find_by_content_hash(owner_id, content_hash, OPEN_STATUSES)
            if existing is not None:
                logger.info(f"Resuming upload session {existing.id} for {owner_id}")
                return existing

            now = datetime.now()
            session = UploadSession(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                content_hash=content_hash,
                original_name=original_name,
                declared_size=declared_size,
                declared_media_type=declared_media_type,
                total_chunks=total_chunks,
                hash_algorithm=hash_algorithm,
                created_at=now,
                updated_at=now,
            )
            self.registry.create_session(session)

        logger.info(f"Created upload session {session.id} for {original_name} ({total_chunks} chunks)")
        return session

    async def find_completed(self, owner_id: str, content_hash: str) -> Optional[UploadSession]:
        """Existence check for content this owner has already uploaded."""
        return self.registry.find_by_content_hash(owner_id, content_hash.strip(), [UploadStatus.COMPLETED])

    async def list_sessions(self, owner_id: str, status: Optional[UploadStatus] = None) -> List[UploadSession]:
        return self.registry.list_sessions(owner_id, status)

    async def get_progress(self, session_id: str) -> UploadProgress:
        session = self.registry.get_session(session_id)
        if session is None:
            raise NotFound("Upload session not found", session_id)
        return UploadProgress.of(session)

    async def get_status(self, session_id: str, owner_id: str) -> SessionStatusView:
        session = self._load_owned(session_id, owner_id)
        missing = []
        if session.status != UploadStatus.COMPLETED:
            missing = self.registry.missing_chunks(session_id, session.total_chunks)
        return SessionStatusView(session=session, progress=UploadProgress.of(session), missing_chunks=missing)

    # Chunk intake

    async def accept_chunk(
        self,
        session_id: str,
        owner_id: str,
        index: int,
        checksum: str,
        payload: bytes,
    ) -> ChunkAcceptResult:
        """
        Store one chunk and, if it completes the bitmap, merge the upload.

        Re-sending an accepted index with identical content is a no-op, also
        after the session completed; different content raises
        ``ChecksumConflict``. Merge failures are raised after the chunk itself
        has been recorded.
        """
        session = self._load_owned(session_id, owner_id)
        if index < 0 or index >= session.total_chunks:
            raise OutOfRange(
                f"Chunk index {index} outside 0..{session.total_chunks - 1}", session_id
            )
        if session.status == UploadStatus.ERROR:
            raise SessionFailed(f"Upload session is in error: {session.error_message}", session_id)
        if self.max_chunk_size is not None and len(payload) > self.max_chunk_size:
            raise InvalidArgument("Chunk size exceeds configured maximum", session_id)
        if not checksum:
            raise InvalidArgument("Chunk checksum is required", session_id)

        # Completed sessions only answer retries, nothing gets written
        stage = session.status != UploadStatus.COMPLETED
        actual, staged = await asyncio.to_thread(
            self._prepare_chunk, session_id, index, checksum, payload, stage
        )
        committed = False
        try:
            async with self._locks.hold(session_id):
                session = self.registry.get_session(session_id)
                if session is None:
                    raise NotFound("Upload session not found", session_id)
                if session.status == UploadStatus.ERROR:
                    raise SessionFailed(f"Upload session is in error: {session.error_message}", session_id)

                existing = self.registry.get_chunk(session_id, index)
                if existing is not None:
                    if not checksums_match(existing.checksum, actual):
                        raise ChecksumConflict(
                            f"Chunk {index} was already accepted with different content", session_id
                        )
                    duplicate = True
                    if (
                        staged is not None
                        and session.is_open()
                        and not self.chunk_store.exists(session_id, index)
                    ):
                        # Payload lost after acceptance; restore it so the merge can run
                        await asyncio.to_thread(self.chunk_store.commit, staged, session_id, index)
                        committed = True
                        logger.info(f"Restored chunk {index} for {session_id}")
                elif session.status == UploadStatus.COMPLETED or staged is None:
                    raise SessionAlreadyCompleted("Upload session already completed", session_id)
                else:
                    await asyncio.to_thread(self.chunk_store.commit, staged, session_id, index)
                    committed = True
                    self.registry.record_chunk(session_id, index, actual, len(payload))
                    duplicate = False
                    session = self.registry.get_session(session_id)
                    logger.info(f"Received chunk {index} ({session.uploaded_chunks}/{session.total_chunks}) for {session_id}")
                    self._emit(EventType.PROGRESS, session_id, {
                        "session_id": session_id,
                        "uploaded_chunks": session.uploaded_chunks,
                        "total_chunks": session.total_chunks,
                    })

                # Paused sessions still merge once their bitmap is full
                if session.is_complete() and session.is_open():
                    await self._run_merge(session)
                    session = self.registry.get_session(session_id)
        finally:
            if staged is not None and not committed:
                self.chunk_store.discard(staged)

        return ChunkAcceptResult(
            session_id=session_id,
            index=index,
            duplicate=duplicate,
            uploaded_chunks=session.uploaded_chunks,
            total_chunks=session.total_chunks,
            status=session.status,
            final_object_key=session.final_object_key,
        )

    async def complete(self, session_id: str, owner_id: str) -> UploadSession:
        """Merge a fully uploaded session, or return it if it already completed."""
        self._load_owned(session_id, owner_id)
        async with self._locks.hold(session_id):
            session = self._load_owned(session_id, owner_id)
            if session.status == UploadStatus.COMPLETED:
                return session
            if session.status == UploadStatus.ERROR:
                raise SessionFailed(f"Upload session is in error: {session.error_message}", session_id)
            if not session.is_complete():
                missing = self.registry.missing_chunks(session_id, session.total_chunks)
                raise IncompleteUpload(f"Missing chunks: {missing}", session_id, missing=missing)
            await self._run_merge(session)
            return self.registry.get_session(session_id)

    # Owner actions

    async def set_status(self, session_id: str, owner_id: str, new_status) -> UploadSession:
        """Pause or resume a session on behalf of its owner."""
        try:
            requested = UploadStatus(new_status)
        except ValueError:
            raise InvalidArgument(f"Invalid status: {new_status}", session_id)

        async with self._locks.hold(session_id):
            session = self._load_owned(session_id, owner_id)
            current = UploadStatus(session.status)
            if current == requested:
                return session
            SessionStateMachine.check_owner_transition(current, requested)

            target = requested
            if current == UploadStatus.PAUSED:
                target = UploadStatus.UPLOADING if session.uploaded_chunks > 0 else UploadStatus.PENDING
            if target == current:
                return session

            if not self.registry.update_status(session_id, target, expected=[current]):
                raise InvalidTransition(f"Invalid transition: {current.value} -> {target.value}", session_id)
            logger.info(f"Upload {session_id} status {current.value} -> {target.value}")
            self._emit(EventType.STATUS_CHANGED, session_id, {
                "status": target.value,
                "previous": current.value,
            })
            return self.registry.get_session(session_id)

    async def delete_session(self, session_id: str, owner_id: str) -> None:
        """
        Remove the session, its chunks and any final object.

        Deleting again as the same owner is a silent success.
        """
        async with self._locks.hold(session_id):
            session = self.registry.get_session(session_id)
            if session is None:
                if self.registry.deleted_by(session_id) == owner_id:
                    return
                raise NotFound("Upload session not found", session_id)
            if session.owner_id != owner_id:
                raise Forbidden("You do not have permission to access this upload", session_id)
            self._purge(session)
        logger.info(f"Deleted upload session {session_id}")

    # Maintenance

    async def start(self):
        logger.info("Starting upload maintenance sweeper")
        self._stop_event = asyncio.Event()
        self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        logger.info("Stopping upload maintenance sweeper")
        self._stop_event.set()
        if self._sweeper is not None:
            await asyncio.gather(self._sweeper, return_exceptions=True)
        self._sweeper = None

    async def sweep(self) -> Dict[str, int]:
        """Retry deferred chunk cleanups and expire abandoned sessions."""
        purged = 0
        for session in self.registry.list_unpurged_completed():
            async with self._locks.hold(session.id):
                if self.merger.purge_chunks(session.id):
                    purged += 1

        expired = 0
        if self.session_ttl is not None:
            cutoff = datetime.now() - self.session_ttl
            for stale in self.registry.list_stale_sessions(cutoff):
                async with self._locks.hold(stale.id):
                    session = self.registry.get_session(stale.id)
                    if session is None or session.status == UploadStatus.COMPLETED or session.updated_at >= cutoff:
                        continue
                    try:
                        self._purge(session)
                        expired += 1
                    except StorageFailure as e:
                        logger.error(f"Failed to expire upload session {session.id}: {e}")

        if purged or expired:
            logger.info(f"Sweep purged chunks of {purged} sessions, expired {expired} sessions")
        return {"purged": purged, "expired": expired}

    async def _sweep_loop(self):
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Error in upload sweeper: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass

    # Internals

    def _load_owned(self, session_id: str, owner_id: str) -> UploadSession:
        session = self.registry.get_session(session_id)
        if session is None:
            raise NotFound("Upload session not found", session_id)
        if session.owner_id != owner_id:
            raise Forbidden("You do not have permission to access this upload", session_id)
        return session

    def _prepare_chunk(self, session_id: str, index: int, checksum: str, payload: bytes, stage: bool):
        """Hash the payload and stage it to disk; runs in a worker thread."""
        actual = compute_checksum(payload, self.chunk_checksum_alg)
        if not checksums_match(checksum, actual):
            raise InvalidArgument(f"Checksum mismatch for chunk {index}", session_id)
        staged = self.chunk_store.stage(session_id, index, payload) if stage else None
        return actual, staged

    async def _run_merge(self, session: UploadSession) -> str:
        """Run the merger in a worker thread; caller must hold the session lock."""
        cancel = threading.Event()
        try:
            key = await asyncio.wait_for(
                asyncio.to_thread(self.merger.merge, session.id, cancel),
                timeout=self.merge_timeout_seconds,
            )
        except asyncio.TimeoutError:
            cancel.set()
            if not self._fail(session, f"Merge timed out after {self.merge_timeout_seconds}s"):
                current = self.registry.get_session(session.id)
                if current is not None and current.status == UploadStatus.COMPLETED:
                    self._emit_completed(current)
                    return current.final_object_key
            raise MergeTimeout("Merge timed out", session.id)
        except IncompleteUpload as e:
            logger.warning(f"Merge of {session.id} postponed: {e.message}")
            raise
        except (NotFound, SessionFailed):
            raise
        except UploadError as e:
            logger.error(f"Merge of {session.id} failed: {e.message}")
            self._fail(session, e.message)
            raise
        except Exception as e:
            logger.exception(f"Merge of {session.id} failed: {e}")
            self._fail(session, str(e))
            raise StorageFailure(f"Merge failed: {e}", session.id) from e

        completed = self.registry.get_session(session.id)
        self._emit_completed(completed)
        return key

    def _fail(self, session: UploadSession, message: str) -> bool:
        if not self.registry.mark_error(session.id, message):
            return False
        self._emit(EventType.STATUS_CHANGED, session.id, {
            "status": UploadStatus.ERROR.value,
            "previous": UploadStatus(session.status).value,
            "error": message,
        })
        return True

    def _purge(self, session: UploadSession):
        self.chunk_store.delete(session.id)
        self.merger.delete_object(self.merger.object_key_for(session))
        if session.final_object_key and session.final_object_key != self.merger.object_key_for(session):
            self.merger.delete_object(session.final_object_key)
        self.registry.delete_session(session.id, session.owner_id)

    def _emit_completed(self, session: UploadSession):
        self._emit(EventType.COMPLETED, session.id, {
            "final_object_key": session.final_object_key,
            "size": session.declared_size,
        })

    def _emit(self, event_type: EventType, session_id: str, data: Dict[str, Any]):
        event = UploadEvent(type=event_type, session_id=session_id, data=data)
        try:
            self.notifier.notify(session_id, event)
        except Exception as e:
            logger.warning(f"Dropped {event_type.value} event for {session_id}: {e}")


def build_coordinator(config: Settings, notifier: Optional[ProgressNotifier] = None) -> UploadCoordinator:
    registry = SessionRegistry(config.database_path)
    chunk_store = ChunkStore(config.chunk_dir, fsync=config.fsync_writes)
    merger = Merger(
        registry,
        chunk_store,
        config.object_dir,
        chunk_checksum_alg=config.chunk_checksum_alg,
        fsync=config.fsync_writes,
    )
    return UploadCoordinator(
        registry,
        chunk_store,
        merger,
        notifier=notifier,
        max_upload_size=config.max_upload_size_bytes,
        max_chunk_size=config.max_chunk_size_bytes,
        chunk_checksum_alg=config.chunk_checksum_alg,
        merge_timeout_seconds=config.merge_timeout_seconds,
        session_ttl=timedelta(hours=config.session_ttl_hours) if config.session_ttl_hours > 0 else None,
        sweep_interval_seconds=config.sweep_interval_seconds,
    )


# Global coordinator instance for app
coordinator: Optional[UploadCoordinator] = None


def get_coordinator() -> UploadCoordinator:
    """Get the global coordinator, building it on first use."""
    global coordinator
    if coordinator is None:
        coordinator = build_coordinator(settings, WebSocketNotifier(manager))
    return coordinator


async def init_coordinator():
    global coordinator
    if coordinator is None:
        coordinator = build_coordinator(settings, WebSocketNotifier(manager))
    await coordinator.start()


async def shutdown_coordinator():
    global coordinator
    if coordinator is not None:
        await coordinator.stop()
        coordinator = None
