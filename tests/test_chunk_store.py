"""
Tests for on-disk chunk storage.
"""

import pytest

from chunkflow.errors import StorageFailure
from chunkflow.services.chunk_store import ChunkMissing, ChunkStore


class TestChunkStore:
    """Chunk payload storage keyed by session and index."""

    def test_put_and_get(self, chunk_store):
        chunk_store.put("s1", 0, b"hello")
        assert chunk_store.get("s1", 0) == b"hello"
        assert chunk_store.exists("s1", 0)
        assert not chunk_store.exists("s1", 1)

    def test_put_overwrites(self, chunk_store):
        chunk_store.put("s1", 0, b"first")
        chunk_store.put("s1", 0, b"second")
        assert chunk_store.get("s1", 0) == b"second"

    def test_get_missing_chunk(self, chunk_store):
        with pytest.raises(ChunkMissing):
            chunk_store.get("s1", 3)

    def test_chunk_missing_is_storage_failure(self):
        assert issubclass(ChunkMissing, StorageFailure)

    def test_staged_chunk_invisible_until_commit(self, chunk_store):
        staged = chunk_store.stage("s1", 2, b"data")
        assert staged.exists()
        assert not chunk_store.exists("s1", 2)
        assert chunk_store.list_indices("s1") == []

        chunk_store.commit(staged, "s1", 2)
        assert not staged.exists()
        assert chunk_store.get("s1", 2) == b"data"

    def test_concurrent_stages_do_not_collide(self, chunk_store):
        first = chunk_store.stage("s1", 0, b"a")
        second = chunk_store.stage("s1", 0, b"b")
        assert first != second

    def test_discard(self, chunk_store):
        staged = chunk_store.stage("s1", 0, b"data")
        chunk_store.discard(staged)
        assert not staged.exists()
        # Discarding twice is harmless
        chunk_store.discard(staged)

    def test_list_indices_sorted(self, chunk_store):
        for index in (5, 0, 12):
            chunk_store.put("s1", index, b"x")
        assert chunk_store.list_indices("s1") == [0, 5, 12]
        assert chunk_store.list_indices("unknown") == []

    def test_delete_session_chunks(self, chunk_store):
        chunk_store.put("s1", 0, b"x")
        chunk_store.put("s2", 0, b"y")
        chunk_store.delete("s1")
        assert chunk_store.list_indices("s1") == []
        assert chunk_store.get("s2", 0) == b"y"
        # Deleting an absent session is a no-op
        chunk_store.delete("s1")

    def test_fsync_enabled(self, tmp_path):
        store = ChunkStore(str(tmp_path / "durable"), fsync=True)
        store.put("s1", 0, b"durable")
        assert store.get("s1", 0) == b"durable"
