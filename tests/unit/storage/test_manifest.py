"""Tests for manifest records and checksums."""

from code_seek.storage.manifest import ChunkRecord, FileEntry, Manifest, checksum


def make_manifest(version: int = 1, fingerprint: str = "p:m:8") -> Manifest:
    entry = FileEntry(
        path="src/a.py",
        content_hash="sha256:abc",
        mtime=1.5,
        size=10,
        language="python",
        chunk_ids=("c2", "c1"),
    )
    other = FileEntry(
        path="docs/b.txt",
        content_hash="sha256:def",
        mtime=2.0,
        size=4,
        language="text",
        chunk_ids=("c3",),
        best_effort=True,
    )
    return Manifest(
        version=version,
        model_fingerprint=fingerprint,
        files={entry.path: entry, other.path: other},
        created_at="2024-01-01T00:00:00+00:00",
    )


class TestManifest:
    def test_round_trip_through_body(self):
        manifest = make_manifest()
        restored = Manifest.from_body(manifest.to_dict()["manifest"])
        assert restored == manifest

    def test_chunk_ids_follow_sorted_paths_then_file_order(self):
        assert list(make_manifest().iter_chunk_ids()) == ["c3", "c2", "c1"]

    def test_checksum_covers_body(self):
        data = make_manifest().to_dict()
        assert data["checksum"] == checksum(data["manifest"])
        data["manifest"]["files"][0]["size"] = 11
        assert data["checksum"] != checksum(data["manifest"])

    def test_same_content_ignores_version_and_timestamp(self):
        first = make_manifest(version=1)
        second = Manifest(
            version=7,
            model_fingerprint=first.model_fingerprint,
            files=dict(first.files),
            created_at="later",
        )
        assert first.same_content(second)
        assert not first.same_content(make_manifest(fingerprint="p:other:8"))

    def test_empty_manifest(self):
        empty = Manifest.empty("p:m:8")
        assert empty.version == 0
        assert empty.chunk_id_set() == set()
        assert empty.content_hashes() == set()


class TestChunkRecord:
    def test_dict_round_trip(self):
        record = ChunkRecord(
            chunk_id="c1",
            path="src/a.py",
            kind="function",
            start_byte=0,
            end_byte=12,
            line_start=1,
            line_end=2,
            name="f",
            part=None,
            token_estimate=3,
        )
        assert ChunkRecord.from_dict(record.to_dict()) == record
