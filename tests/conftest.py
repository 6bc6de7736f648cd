import pytest

from chunkflow.services.chunk_store import ChunkStore
from chunkflow.services.coordinator import UploadCoordinator
from chunkflow.services.database import SessionRegistry
from chunkflow.services.merger import Merger
from chunkflow.services.notifier import RecordingNotifier


@pytest.fixture
def registry(tmp_path):
    return SessionRegistry(str(tmp_path / "registry.db"))


@pytest.fixture
def chunk_store(tmp_path):
    return ChunkStore(str(tmp_path / "chunks"), fsync=False)


@pytest.fixture
def merger(registry, chunk_store, tmp_path):
    return Merger(registry, chunk_store, str(tmp_path / "objects"), fsync=False)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def coordinator(registry, chunk_store, merger, notifier):
    return UploadCoordinator(
        registry,
        chunk_store,
        merger,
        notifier=notifier,
        max_upload_size=10 * 1024 * 1024,
        max_chunk_size=1024 * 1024,
        merge_timeout_seconds=10,
    )
