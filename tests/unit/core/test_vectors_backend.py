"""Tests for the exact cosine-similarity vector backend."""

import numpy as np
import pytest

from hybrid_code_search.core.exceptions import DimensionMismatchError
from hybrid_code_search.core.vectors_backend import (
    VectorsBackend,
    VectorSearchBackend,
)


@pytest.fixture
def backend():
    return VectorsBackend()


class TestVectorsBackend:
    def test_satisfies_protocol(self, backend):
        assert isinstance(backend, VectorSearchBackend)

    def test_dimension_fixed_by_first_insert(self, backend):
        assert backend.dimension is None
        backend.add("a", [1.0, 0.0, 0.0])
        assert backend.dimension == 3

    def test_dimension_mismatch_rejected(self, backend):
        backend.add("a", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError) as exc_info:
            backend.add("b", [1.0, 0.0])
        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert "b" not in backend

    def test_update_with_wrong_dimension_keeps_old_vector(self, backend):
        backend.add("a", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            backend.update("a", [1.0, 0.0])
        assert backend.get("a") == pytest.approx([1.0, 0.0, 0.0])

    def test_cosine_ranking(self, backend):
        backend.add("same", [1.0, 0.0])
        backend.add("orthogonal", [0.0, 1.0])
        backend.add("opposite", [-2.0, 0.0])

        results = backend.search([3.0, 0.0])

        assert [cid for cid, _ in results] == ["same", "orthogonal", "opposite"]
        assert results[0][1] == pytest.approx(1.0)
        assert results[1][1] == pytest.approx(0.0, abs=1e-6)
        assert results[2][1] == pytest.approx(-1.0)

    def test_ties_break_by_chunk_id(self, backend):
        for cid in ["c", "a", "b"]:
            backend.add(cid, [0.5, 0.5])
        assert [cid for cid, _ in backend.search([1.0, 1.0])] == ["a", "b", "c"]

    def test_zero_vectors_score_zero(self, backend):
        backend.add("zero", [0.0, 0.0])
        backend.add("x", [1.0, 0.0])
        scores = dict(backend.search([1.0, 0.0]))
        assert scores["zero"] == 0.0
        assert all(score == 0.0 for _, score in backend.search([0.0, 0.0]))

    def test_query_dimension_mismatch(self, backend):
        backend.add("a", [1.0, 0.0, 0.0])
        with pytest.raises(DimensionMismatchError):
            backend.search([1.0, 0.0])

    def test_remove_swaps_rows(self, backend):
        backend.add("a", [1.0, 0.0])
        backend.add("b", [0.0, 1.0])
        backend.add("c", [1.0, 1.0])

        assert backend.remove("a") is True
        assert backend.remove("a") is False

        assert len(backend) == 2
        assert backend.get("c") == pytest.approx([1.0, 1.0])
        assert [cid for cid, _ in backend.search([0.0, 1.0])] == ["b", "c"]

    def test_growth_beyond_initial_capacity(self, backend):
        for i in range(200):
            backend.add(f"c{i:03d}", [float(i), 1.0])
        assert len(backend) == 200
        assert backend.get("c150") == pytest.approx([150.0, 1.0])

    def test_limit(self, backend):
        for i in range(5):
            backend.add(f"c{i}", [1.0, float(i)])
        assert len(backend.search([1.0, 0.0], limit=3)) == 3
        assert backend.search([1.0, 0.0], limit=0) == []

    def test_clear_resets_dimension(self, backend):
        backend.add("a", [1.0, 0.0])
        backend.clear()
        assert len(backend) == 0
        assert backend.dimension is None
        backend.add("b", [1.0, 0.0, 0.0])
        assert backend.dimension == 3


class TestExport:
    def test_round_trip(self, backend):
        backend.add("a", [3.0, 4.0])
        backend.add("b", [0.0, 2.0])

        data = backend.export()
        assert isinstance(data["embeddings"], np.ndarray)
        restored = VectorsBackend.from_export(
            {**data, "embeddings": data["embeddings"].tolist()}
        )

        assert restored.dimension == 2
        assert restored.get("a") == pytest.approx([3.0, 4.0])
        original = backend.search([1.0, 1.0])
        reloaded = restored.search([1.0, 1.0])
        assert [cid for cid, _ in reloaded] == [cid for cid, _ in original]
        assert [s for _, s in reloaded] == pytest.approx([s for _, s in original])

    def test_from_export_rejects_bad_rows(self):
        with pytest.raises(DimensionMismatchError):
            VectorsBackend.from_export(
                {
                    "dimension": 2,
                    "ids": ["a"],
                    "embeddings": [[1.0, 2.0, 3.0]],
                    "norms": [1.0],
                }
            )
        with pytest.raises(ValueError):
            VectorsBackend.from_export(
                {
                    "dimension": 2,
                    "ids": ["a", "b"],
                    "embeddings": [[1.0, 2.0]],
                    "norms": [1.0, 1.0],
                }
            )
