"""Tests for in-memory snapshots, leases and publication loading."""

import pytest

from code_seek.errors import StaleSnapshot, StoreCorruption
from code_seek.storage.embedding_cache import EmbeddingCache
from code_seek.storage.manifest import ChunkRecord, FileEntry, Manifest
from code_seek.storage.snapshot import IndexSnapshot, SnapshotHolder, load_published_snapshot
from code_seek.storage.snapshot_store import SnapshotStore
from code_seek.storage.vector_index import VectorIndex

TEXT = "import os\n\ndef f():\n    return 1\n"
HASH = "sha256:" + "12" * 32
FINGERPRINT = "p:m:2"


def make_records():
    split = TEXT.index("def")
    head = ChunkRecord("c-head", "a.py", "block", 0, split - 1, 1, 1)
    body = ChunkRecord("c-body", "a.py", "function", split, len(TEXT), 3, 4, name="f")
    return {head.chunk_id: head, body.chunk_id: body}


def make_snapshot(version: int, store=None) -> IndexSnapshot:
    chunks = make_records()
    entry = FileEntry("a.py", HASH, 0.0, len(TEXT), "python", ("c-head", "c-body"))
    manifest = Manifest(version=version, model_fingerprint=FINGERPRINT, files={"a.py": entry})
    return IndexSnapshot(manifest, chunks, VectorIndex(2), store)


class TestIndexSnapshot:
    def test_chunk_at_maps_offsets_to_chunks(self):
        snapshot = make_snapshot(1)
        assert snapshot.chunk_at("a.py", 0).chunk_id == "c-head"
        assert snapshot.chunk_at("a.py", TEXT.index("return")).chunk_id == "c-body"

    def test_chunk_at_outside_chunks(self):
        snapshot = make_snapshot(1)
        # The blank line between the two chunks belongs to neither.
        assert snapshot.chunk_at("a.py", TEXT.index("def") - 1) is None
        assert snapshot.chunk_at("missing.py", 0) is None

    def test_chunk_near_attaches_gaps_to_a_neighbour(self):
        snapshot = make_snapshot(1)
        assert snapshot.chunk_near("a.py", TEXT.index("def") - 1).chunk_id == "c-body"
        assert snapshot.chunk_near("a.py", len(TEXT) + 5).chunk_id == "c-body"
        assert snapshot.chunk_near("a.py", 0).chunk_id == "c-head"
        assert snapshot.chunk_near("missing.py", 0) is None

    def test_missing_text_of_a_retired_version_is_stale(self, tmp_path):
        store = SnapshotStore(tmp_path)
        store.publish(2)
        with pytest.raises(StaleSnapshot) as excinfo:
            make_snapshot(1, store).file_text("a.py")
        assert excinfo.value.published == 2

    def test_missing_text_of_the_published_version_is_corruption(self, tmp_path):
        store = SnapshotStore(tmp_path)
        store.publish(1)
        with pytest.raises(StoreCorruption, match="missing"):
            make_snapshot(1, store).file_text("a.py")

    def test_file_and_chunk_text_come_from_blobs(self, tmp_path):
        store = SnapshotStore(tmp_path)
        store.write_blob(HASH, TEXT)
        snapshot = make_snapshot(1, store)

        assert snapshot.file_text("a.py") == TEXT
        assert snapshot.chunk_text(snapshot.chunks["c-body"]) == "def f():\n    return 1\n"

    def test_file_text_without_store(self):
        with pytest.raises(KeyError):
            make_snapshot(1).file_text("a.py")


class TestSnapshotHolder:
    def test_publish_swaps_pointer(self):
        holder = SnapshotHolder()
        assert holder.current is None
        first = make_snapshot(1)
        assert holder.publish(first) is None
        assert holder.publish(make_snapshot(2)) is first
        assert holder.current.version == 2

    def test_lease_survives_publication(self):
        holder = SnapshotHolder(make_snapshot(1))
        with holder.lease() as snapshot:
            holder.publish(make_snapshot(2))
            assert snapshot.version == 1
            assert holder.leased_versions() == {1}
            assert [s.version for s in holder.leased_snapshots()] == [1]
        assert holder.leased_versions() == set()
        assert holder.leased_snapshots() == []

    def test_nested_leases_are_counted(self):
        holder = SnapshotHolder(make_snapshot(1))
        with holder.lease():
            with holder.lease():
                pass
            assert holder.leased_versions() == {1}
        assert holder.leased_versions() == set()

    def test_lease_of_empty_holder(self):
        with SnapshotHolder().lease() as snapshot:
            assert snapshot is None


class TestLoadPublishedSnapshot:
    def _publish(self, tmp_path):
        store = SnapshotStore(tmp_path)
        snapshot = make_snapshot(4)
        store.write_snapshot(snapshot.manifest, snapshot.chunks)
        store.publish(4)
        cache = EmbeddingCache(tmp_path, FINGERPRINT, 2)
        cache.put("c-head", [1, 0])
        cache.put("c-body", [0, 1])
        cache.save()
        return store

    def test_vectors_attached_for_matching_model(self, tmp_path):
        loaded = load_published_snapshot(self._publish(tmp_path), FINGERPRINT, 2)
        assert loaded.version == 4
        assert loaded.embedded_chunk_ids() == {"c-head", "c-body"}

    def test_other_model_gets_no_vectors(self, tmp_path):
        loaded = load_published_snapshot(self._publish(tmp_path), "p:other:2", 2)
        assert loaded.version == 4
        assert loaded.embedded_chunk_ids() == set()

    def test_nothing_published(self, tmp_path):
        assert load_published_snapshot(SnapshotStore(tmp_path), FINGERPRINT, 2) is None
