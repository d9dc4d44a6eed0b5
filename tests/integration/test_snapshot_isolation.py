"""Readers keep a consistent snapshot while the indexer commits."""

import threading

import pytest

from code_seek.search.lexical import LexicalEngine
from code_seek.services.code_seek_service import CodeSeekService

from conftest import write_files

pytestmark = pytest.mark.integration


def generation_files(generation: int) -> dict:
    return {
        f"pkg/module_{name}.py": f"GENERATION = {generation}\n\n\ndef {name}():\n    return GENERATION\n"
        for name in ("alpha", "beta", "gamma")
    }


class TestSnapshotIsolation:
    def test_lease_holds_version_across_commit(self, service, sample_repo):
        service.index()
        app_hash = service.holder.current.files["src/app.py"].content_hash

        with service.holder.lease() as snapshot:
            (sample_repo / "src/app.py").write_text("def replaced():\n    pass\n")
            service.index()

            assert service.holder.current.version == 2
            assert snapshot.version == 1
            # The leased version's text is still readable after the commit.
            assert service.store.has_blob(app_hash)
            matches = LexicalEngine().search(snapshot, "compute_total").matches
            assert [m.path for m in matches] == ["src/app.py"]

        service.index()
        assert not service.store.has_blob(app_hash)
        assert service.store.list_versions() == [3]

    def test_query_sees_new_version_after_commit(self, service, sample_repo):
        service.index()
        (sample_repo / "src/app.py").write_text("def replaced():\n    pass\n")
        service.index()

        assert service.search("lexical", "compute_total") == []
        assert [r.name for r in service.search("lexical", "replaced")] == ["replaced"]

    @pytest.mark.slow
    def test_concurrent_readers_never_see_mixed_versions(self, tmp_path, make_config, provider):
        root = tmp_path / "gen"
        write_files(root, generation_files(0))
        service = CodeSeekService(make_config(root), embedding_provider=provider)
        service.index()

        stop = threading.Event()
        errors = []
        observed = []

        def reader():
            while not stop.is_set():
                try:
                    results = service.search("lexical", "GENERATION = ", k=50)
                    lines = {m.line for r in results for m in r.matches}
                    observed.append(len(results))
                    if len(lines) != 1:
                        errors.append(lines)
                except Exception as e:  # surfaced through the errors list
                    errors.append(e)

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for thread in threads:
            thread.start()
        try:
            for generation in range(1, 6):
                write_files(root, generation_files(generation))
                service.index()
        finally:
            stop.set()
            for thread in threads:
                thread.join(timeout=10)

        assert errors == []
        assert observed and set(observed) == {3}
        final = service.search("lexical", "GENERATION = ", k=50)
        assert {m.line for r in final for m in r.matches} == {"GENERATION = 5"}
