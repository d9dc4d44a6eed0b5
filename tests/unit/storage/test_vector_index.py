"""Tests for exact cosine nearest-neighbor search."""

import pytest

from code_seek.errors import DimensionMismatch
from code_seek.storage.vector_index import VectorIndex, normalize


@pytest.fixture
def index() -> VectorIndex:
    vectors = VectorIndex(3)
    vectors.upsert("x-axis", [1, 0, 0])
    vectors.upsert("y-axis", [0, 1, 0])
    vectors.upsert("diagonal", [1, 1, 0])
    return vectors


class TestVectorIndex:
    def test_best_match_first(self, index):
        results = index.query([1, 0.1, 0], k=3)
        assert [cid for cid, _ in results] == ["x-axis", "diagonal", "y-axis"]
        assert results[0][1] > results[1][1] > results[2][1]

    def test_vectors_are_normalized(self, index):
        results = index.query([5, 0, 0], k=1)
        assert results[0] == ("x-axis", pytest.approx(1.0))

    def test_equal_scores_break_ties_by_identity(self):
        vectors = VectorIndex(2)
        for cid in ("c", "a", "b"):
            vectors.upsert(cid, [1, 0])
        assert [cid for cid, _ in vectors.query([1, 0], k=3)] == ["a", "b", "c"]

    def test_remove(self, index):
        assert index.remove("x-axis")
        assert not index.remove("x-axis")
        assert "x-axis" not in index
        assert [cid for cid, _ in index.query([1, 0, 0], k=3)] == ["diagonal", "y-axis"]

    def test_k_limits_results(self, index):
        assert len(index.query([1, 1, 1], k=2)) == 2
        assert index.query([1, 1, 1], k=0) == []

    def test_threshold(self, index):
        results = index.query([1, 0, 0], k=10, threshold=0.5)
        assert [cid for cid, _ in results] == ["x-axis", "diagonal"]

    def test_allowed_restricts_candidates(self, index):
        results = index.query([1, 0, 0], k=10, allowed={"y-axis"})
        assert [cid for cid, _ in results] == ["y-axis"]

    def test_dimension_mismatch(self, index):
        with pytest.raises(DimensionMismatch):
            index.upsert("bad", [1, 0])
        with pytest.raises(DimensionMismatch):
            index.query([1, 0], k=1)

    def test_empty_index(self):
        assert VectorIndex(3).query([1, 0, 0], k=5) == []


def test_zero_vector_normalizes_to_zero():
    assert normalize([0, 0, 0], 3).tolist() == [0.0, 0.0, 0.0]
