"""Tests for the incremental indexer's passes, reuse and failure handling."""

import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from code_seek.errors import ConcurrencyConflict, IndexingCancelled
from code_seek.services.code_seek_service import CodeSeekService
from code_seek.services.incremental_indexer import IndexerState, IndexMode
from code_seek.services.indexing_lock import IndexingLock
from code_seek.storage.embedding_cache import EmbeddingCache
from code_seek.storage.snapshot_store import MANIFEST_FILE, snapshot_dir_name

from conftest import APP_PY, TEST_DIMENSIONS


def cached_ids(service) -> set:
    return EmbeddingCache(
        service.index_dir,
        service.embedding_provider.get_model_fingerprint(),
        TEST_DIMENSIONS,
    ).load().ids()


class TestFirstPass:
    def test_indexes_every_file(self, service, provider):
        outcome = service.index()

        assert outcome.version == 1
        assert outcome.mode == "incremental"
        assert outcome.files_added == 3
        assert outcome.files_touched == 3
        assert outcome.chunks_total == 7
        assert outcome.embeddings_computed == 7
        assert outcome.embeddings_reused == 0
        assert not outcome.partial
        assert len(provider.embedded_texts) == 7
        assert [len(batch) for batch in provider.batches] == [4, 3]
        assert service.indexer.state == IndexerState.IDLE

    def test_commit_publishes_snapshot(self, service):
        service.index()
        snapshot = service.holder.current
        assert snapshot.version == 1
        assert service.store.read_current_version() == 1
        assert sorted(snapshot.files) == ["docs/notes.txt", "src/app.py", "src/util.js"]
        assert snapshot.embedded_chunk_ids() == snapshot.manifest.chunk_id_set()
        assert snapshot.files["src/app.py"].language == "python"


class TestIdempotence:
    def test_unchanged_tree_embeds_nothing(self, service, provider):
        service.index()
        first = service.holder.current.manifest
        provider.reset()

        outcome = service.index()

        assert outcome.version == 2
        assert outcome.files_unchanged == 3
        assert outcome.files_touched == 0
        assert outcome.embeddings_computed == 0
        assert outcome.embeddings_reused == 7
        assert provider.batches == []
        second = service.holder.current.manifest
        assert second.same_content(first)
        assert cached_ids(service) == first.chunk_id_set()

    def test_trusted_mtime_skips_reading_unchanged_files(
        self, sample_repo, make_config, provider
    ):
        service = CodeSeekService(make_config(sample_repo, trust_mtime=True), provider)
        service.index()
        provider.reset()

        with patch.object(Path, "read_bytes", side_effect=AssertionError("file was read")):
            outcome = service.index()

        assert outcome.files_unchanged == 3
        assert provider.batches == []


class TestIncrementality:
    def test_one_changed_function_reembeds_one_chunk(self, service, provider, sample_repo):
        service.index()
        provider.reset()
        (sample_repo / "src/app.py").write_text(APP_PY.replace("total = 0", "total = 1"))

        outcome = service.index()

        assert outcome.files_modified == 1
        assert outcome.files_unchanged == 2
        assert outcome.chunks_added == 1
        assert outcome.chunks_removed == 1
        assert outcome.embeddings_computed == 1
        assert outcome.embeddings_reused == 6
        assert len(provider.embedded_texts) == 1
        assert provider.embedded_texts[0].startswith("def compute_total")
        assert "total = 1" in provider.embedded_texts[0]

    def test_moving_a_function_reuses_its_embedding(self, service, provider, sample_repo):
        service.index()
        provider.reset()
        (sample_repo / "src/app.py").write_text("# moved down\n\n\n" + APP_PY)

        outcome = service.index()

        # Only the new leading block is embedded; identities ignore offsets.
        assert outcome.files_modified == 1
        assert outcome.embeddings_computed == 1
        assert provider.embedded_texts[0].startswith("# moved down")

    def test_added_file(self, service, provider, sample_repo):
        service.index()
        provider.reset()
        (sample_repo / "src/extra.py").write_text("def extra():\n    return 42\n")

        outcome = service.index()

        assert outcome.files_added == 1
        assert outcome.embeddings_computed == 1
        assert "src/extra.py" in service.holder.current.files

    def test_full_mode_rebuilds_everything(self, service, provider):
        service.index()
        provider.reset()

        outcome = service.index(mode="full")

        assert outcome.mode == "full"
        assert outcome.version == 2
        assert outcome.files_added == 3
        assert outcome.embeddings_computed == 7
        assert outcome.embeddings_reused == 0


class TestDeletion:
    def test_deleted_file_leaves_all_results(self, service, sample_repo):
        service.index()
        removed_ids = set(service.holder.current.files["src/util.js"].chunk_ids)
        (sample_repo / "src/util.js").unlink()

        outcome = service.index()

        assert outcome.files_deleted == 1
        assert outcome.chunks_removed == 2
        snapshot = service.holder.current
        assert "src/util.js" not in snapshot.files
        assert not removed_ids & cached_ids(service)
        assert service.search("lexical", "formatPrice") == []
        semantic = service.search("semantic", "function formatPrice(value)", k=50)
        assert all(r.path != "src/util.js" for r in semantic)


class TestPartialFailures:
    def test_failed_batch_leaves_chunks_without_embeddings(
        self, sample_repo, make_config, provider_factory
    ):
        failing = provider_factory(
            fail_when=lambda texts: any("formatPrice" in text for text in texts)
        )
        service = CodeSeekService(make_config(sample_repo), embedding_provider=failing)

        outcome = service.index()

        assert outcome.version == 1
        assert outcome.partial
        assert [f.kind for f in outcome.partial_failures] == ["provider"]
        assert len(outcome.partial_failures[0].chunk_ids) == 3
        assert outcome.embeddings_computed == 4
        assert outcome.embeddings_missing == 3
        assert service.status().missing_embeddings == 3
        # Lexical search still covers every file.
        assert service.search("lexical", "formatPrice")

    def test_next_pass_embeds_only_missing_chunks(
        self, sample_repo, make_config, provider_factory
    ):
        failing = provider_factory(
            fail_when=lambda texts: any("formatPrice" in text for text in texts)
        )
        CodeSeekService(make_config(sample_repo), embedding_provider=failing).index()

        healthy = provider_factory()
        outcome = CodeSeekService(make_config(sample_repo), embedding_provider=healthy).index()

        assert outcome.embeddings_computed == 3
        assert outcome.embeddings_missing == 0
        assert len(healthy.embedded_texts) == 3

    def test_unreadable_file_keeps_previous_entry(self, service, sample_repo):
        service.index()
        original = Path.read_bytes

        def flaky_read(path):
            if path.name == "util.js":
                raise PermissionError("denied")
            return original(path)

        with patch.object(Path, "read_bytes", flaky_read):
            outcome = service.index()

        assert [f.kind for f in outcome.partial_failures] == ["read"]
        assert outcome.partial_failures[0].paths == ("src/util.js",)
        assert outcome.files_deleted == 0
        assert "src/util.js" in service.holder.current.files

    def test_syntax_error_is_best_effort(self, service, sample_repo):
        (sample_repo / "src/broken.py").write_text("def broken(:\n    pass\n")

        outcome = service.index()

        assert outcome.best_effort_files == 1
        assert [f.kind for f in outcome.partial_failures] == ["parse"]
        assert any("src/broken.py" in w for w in outcome.warnings)
        assert service.holder.current.files["src/broken.py"].best_effort


class TestModelChange:
    def test_new_model_reembeds_and_drops_old_vectors(
        self, sample_repo, make_config, provider, provider_factory
    ):
        old = CodeSeekService(make_config(sample_repo), embedding_provider=provider)
        old.index()
        old_cache = EmbeddingCache(
            old.index_dir, provider.get_model_fingerprint(), TEST_DIMENSIONS
        ).path
        assert old_cache.exists()

        other = provider_factory(model="other-model")
        service = CodeSeekService(make_config(sample_repo), embedding_provider=other)
        outcome = service.index()

        assert outcome.model_fingerprint == "recording:other-model:64"
        assert outcome.files_unchanged == 3
        assert outcome.embeddings_computed == 7
        assert outcome.embeddings_reused == 0
        assert not old_cache.exists()
        assert service.holder.current.manifest.model_fingerprint == outcome.model_fingerprint


class TestConcurrency:
    def test_second_pass_in_process_is_rejected(self, service):
        service.lock.acquire("elsewhere")
        try:
            with pytest.raises(ConcurrencyConflict):
                service.index()
        finally:
            service.lock.release()
        assert service.indexer.state == IndexerState.IDLE
        assert service.store.read_current_version() is None

    def test_pass_in_another_process_is_rejected(self, service):
        other = IndexingLock(service.index_dir)
        other.acquire("other")
        try:
            with pytest.raises(ConcurrencyConflict):
                service.index()
        finally:
            other.release()
        assert service.index().version == 1


class TestCancellation:
    def test_cancel_before_start_keeps_last_commit(self, service, sample_repo):
        service.index()
        (sample_repo / "src/app.py").write_text("changed = True\n")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(IndexingCancelled):
            service.index(cancel_event=cancel)

        assert service.indexer.state == IndexerState.IDLE
        assert service.store.read_current_version() == 1
        assert service.holder.current.version == 1
        assert service.search("lexical", "compute_total")

    def test_cancel_during_embedding(self, service):
        cancel = threading.Event()

        def on_progress(current, total, path, info=""):
            if info.startswith("embedded batch"):
                cancel.set()

        with pytest.raises(IndexingCancelled):
            service.index(cancel_event=cancel, progress_callback=on_progress)

        assert service.store.read_current_version() is None
        assert service.store.list_versions() == []
        assert service.holder.current is None


class TestFailures:
    def test_unexpected_error_leaves_failed_state(self, service):
        with patch.object(
            service.indexer.boundary_detector, "detect", side_effect=RuntimeError("boom")
        ):
            with pytest.raises(RuntimeError):
                service.index()

        assert service.indexer.state == IndexerState.FAILED
        assert isinstance(service.indexer.last_error, RuntimeError)
        assert not service.lock.held
        assert service.index().version == 1
        assert service.indexer.state == IndexerState.IDLE


class TestCorruptionRecovery:
    def test_corrupt_manifest_triggers_full_reindex(self, sample_repo, make_config, provider):
        CodeSeekService(make_config(sample_repo), embedding_provider=provider).index()
        service = CodeSeekService(make_config(sample_repo), embedding_provider=provider)
        manifest_path = service.store.snapshots_dir / snapshot_dir_name(1) / MANIFEST_FILE
        manifest_path.write_text(manifest_path.read_text().replace("src/app.py", "src/evil.py"))
        provider.reset()

        outcome = service.index()

        assert outcome.recovered_from_corruption
        assert outcome.mode == IndexMode.FULL.value
        assert outcome.version == 2
        assert outcome.warnings[0].startswith("Recovered from corrupt index")
        assert outcome.embeddings_computed == 7
        assert service.store.load_current()[0].version == 2
        assert service.search("lexical", "compute_total")

    def test_corrupt_current_pointer(self, sample_repo, make_config, provider):
        CodeSeekService(make_config(sample_repo), embedding_provider=provider).index()
        service = CodeSeekService(make_config(sample_repo), embedding_provider=provider)
        service.store.current_path.write_text("garbage\n")

        outcome = service.index()

        assert outcome.recovered_from_corruption
        assert outcome.version == 2
        assert service.store.read_current_version() == 2


class TestProgress:
    def test_callback_reports_files_and_batches(self, service):
        calls = []
        service.index(progress_callback=lambda *args, **kwargs: calls.append((args, kwargs)))

        scanning = [args for args, kwargs in calls if kwargs["info"] == "scanning"]
        batches = [kwargs["info"] for _, kwargs in calls if kwargs["info"] != "scanning"]
        assert [(current, total) for current, total, _ in scanning] == [(1, 3), (2, 3), (3, 3)]
        assert all(isinstance(path, Path) for _, _, path in scanning)
        assert sorted(batches) == ["embedded batch 1/2", "embedded batch 2/2"]
