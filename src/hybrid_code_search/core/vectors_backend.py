"""Vectors backend: flat in-memory store of chunk embeddings.

Similarity search is exact brute-force cosine similarity over a numpy
matrix, which is fast enough for single-repository corpora (low thousands of
chunks). Callers depend on the ``VectorSearchBackend`` protocol so an
approximate index can be substituted later without changing them.
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import numpy as np
from loguru import logger
from numpy.typing import NDArray

from .exceptions import DimensionMismatchError

# Row-capacity growth step for the embedding matrix
_GROWTH_FACTOR = 2
_INITIAL_CAPACITY = 64


@runtime_checkable
class VectorSearchBackend(Protocol):
    """Operations the search engine needs from a vector store."""

    @property
    def dimension(self) -> int | None: ...

    def add(self, chunk_id: str, embedding: Sequence[float]) -> None: ...

    def update(self, chunk_id: str, embedding: Sequence[float]) -> None: ...

    def remove(self, chunk_id: str) -> bool: ...

    def search(
        self, query_embedding: Sequence[float], limit: int = 10
    ) -> list[tuple[str, float]]: ...

    def get(self, chunk_id: str) -> list[float] | None: ...

    def clear(self) -> None: ...

    def __contains__(self, chunk_id: object) -> bool: ...

    def __len__(self) -> int: ...


class VectorsBackend:
    """Exact cosine-similarity vector store.

    Embeddings are stored L2-normalized in a preallocated float32 matrix;
    removal swaps the last row into the freed slot so rows stay dense.

    Example:
        backend = VectorsBackend()
        backend.add("abc", [0.1, 0.2, 0.3])
        results = backend.search([0.1, 0.2, 0.25], limit=10)
        # Returns: [(chunk_id, cosine_similarity), ...]
    """

    def __init__(self, vector_dim: int | None = None) -> None:
        """Initialize vectors backend.

        Args:
            vector_dim: Expected vector dimension (fixed by the first insert
                if not provided)
        """
        self._dim = vector_dim
        self._matrix: NDArray[np.float32] | None = None
        self._ids: list[str] = []
        self._rows: dict[str, int] = {}
        # Original (unnormalized) norms, to return stored vectors unchanged
        self._norms: list[float] = []

    @property
    def dimension(self) -> int | None:
        return self._dim

    def _as_vector(
        self, embedding: Sequence[float], chunk_id: str | None = None
    ) -> NDArray[np.float32]:
        vector = np.asarray(embedding, dtype=np.float32)
        if vector.ndim != 1:
            raise DimensionMismatchError(
                self._dim or -1, int(vector.size), chunk_id=chunk_id
            )
        if self._dim is not None and vector.shape[0] != self._dim:
            raise DimensionMismatchError(self._dim, int(vector.shape[0]), chunk_id)
        return vector

    def _ensure_capacity(self, rows: int) -> None:
        assert self._dim is not None
        if self._matrix is None:
            capacity = max(_INITIAL_CAPACITY, rows)
            self._matrix = np.zeros((capacity, self._dim), dtype=np.float32)
        elif rows > self._matrix.shape[0]:
            capacity = max(rows, self._matrix.shape[0] * _GROWTH_FACTOR)
            grown = np.zeros((capacity, self._dim), dtype=np.float32)
            grown[: len(self._ids)] = self._matrix[: len(self._ids)]
            self._matrix = grown

    def add(self, chunk_id: str, embedding: Sequence[float]) -> None:
        """Store an embedding. An existing entry with the same id is replaced.

        Raises:
            DimensionMismatchError: If the dimension differs from the index's
        """
        vector = self._as_vector(embedding, chunk_id)
        if self._dim is None:
            self._dim = int(vector.shape[0])
            logger.debug(f"Vector index dimension fixed at {self._dim}")

        norm = float(np.linalg.norm(vector))
        normalized = vector / norm if norm > 0 else vector

        row = self._rows.get(chunk_id)
        if row is None:
            self._ensure_capacity(len(self._ids) + 1)
            row = len(self._ids)
            self._ids.append(chunk_id)
            self._norms.append(norm)
            self._rows[chunk_id] = row
        else:
            self._norms[row] = norm

        assert self._matrix is not None
        self._matrix[row] = normalized

    def update(self, chunk_id: str, embedding: Sequence[float]) -> None:
        """Replace a chunk's embedding (validated before the old one is dropped)."""
        self._as_vector(embedding, chunk_id)
        self.remove(chunk_id)
        self.add(chunk_id, embedding)

    def remove(self, chunk_id: str) -> bool:
        row = self._rows.pop(chunk_id, None)
        if row is None:
            return False

        assert self._matrix is not None
        last = len(self._ids) - 1
        if row != last:
            moved_id = self._ids[last]
            self._matrix[row] = self._matrix[last]
            self._ids[row] = moved_id
            self._norms[row] = self._norms[last]
            self._rows[moved_id] = row
        self._matrix[last] = 0.0
        self._ids.pop()
        self._norms.pop()
        return True

    def clear(self) -> None:
        """Drop all vectors and forget the fixed dimension."""
        self._matrix = None
        self._ids = []
        self._rows = {}
        self._norms = []
        self._dim = None

    def search(
        self, query_embedding: Sequence[float], limit: int = 10
    ) -> list[tuple[str, float]]:
        """Rank stored chunks by cosine similarity to the query.

        Args:
            query_embedding: Query vector
            limit: Maximum number of results

        Returns:
            List of (chunk_id, similarity) sorted by similarity descending,
            then chunk_id ascending. Similarity is in [-1, 1]; zero vectors
            score 0.

        Raises:
            DimensionMismatchError: If the query dimension differs
        """
        if limit <= 0 or not self._ids:
            return []

        query = self._as_vector(query_embedding)
        norm = float(np.linalg.norm(query))
        if norm == 0:
            similarities = np.zeros(len(self._ids), dtype=np.float32)
        else:
            assert self._matrix is not None
            similarities = self._matrix[: len(self._ids)] @ (query / norm)
            np.clip(similarities, -1.0, 1.0, out=similarities)

        scored = sorted(
            zip(self._ids, similarities.tolist(), strict=True),
            key=lambda item: (-item[1], item[0]),
        )
        return [(cid, float(score)) for cid, score in scored[:limit]]

    def get(self, chunk_id: str) -> list[float] | None:
        """Return the stored embedding (as originally supplied, up to float32)."""
        row = self._rows.get(chunk_id)
        if row is None:
            return None
        assert self._matrix is not None
        norm = self._norms[row]
        vector = self._matrix[row] * norm if norm > 0 else self._matrix[row]
        return vector.tolist()

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._rows

    def __len__(self) -> int:
        return len(self._ids)

    def chunk_ids(self) -> list[str]:
        return list(self._ids)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total": len(self._ids),
            "dimension": self._dim,
            "capacity": 0 if self._matrix is None else int(self._matrix.shape[0]),
        }

    def export(self) -> dict[str, Any]:
        """Export ids, unit-length rows (float32 matrix) and original norms.

        Rows are exported as stored so a reloaded backend scores bit-for-bit
        identically.
        """
        n = len(self._ids)
        if self._matrix is None or n == 0:
            embeddings = np.zeros((0, self._dim or 0), dtype=np.float32)
        else:
            embeddings = self._matrix[:n].copy()
        return {
            "dimension": self._dim,
            "ids": list(self._ids),
            "embeddings": embeddings,
            "norms": list(self._norms),
        }

    @classmethod
    def from_export(cls, data: dict[str, Any]) -> "VectorsBackend":
        """Rebuild a backend from ``export()`` output.

        Raises:
            DimensionMismatchError: If the rows disagree with ``dimension``
            KeyError, TypeError, ValueError: If the payload is malformed
        """
        backend = cls(vector_dim=data["dimension"])
        ids = [str(cid) for cid in data["ids"]]
        norms = [float(n) for n in data["norms"]]
        if not ids:
            return backend

        if len(set(ids)) != len(ids):
            raise ValueError("duplicate vector ids")
        if backend._dim is None:
            raise ValueError("vectors present but no dimension recorded")

        embeddings = np.asarray(data["embeddings"], dtype=np.float32)
        if embeddings.ndim != 2 or embeddings.shape[1] != backend._dim:
            actual = int(embeddings.shape[-1]) if embeddings.ndim else 0
            raise DimensionMismatchError(backend._dim, actual)
        if not (len(ids) == len(norms) == embeddings.shape[0]):
            raise ValueError(
                f"{len(ids)} vector ids, {len(norms)} norms and "
                f"{embeddings.shape[0]} embedding rows"
            )

        backend._matrix = np.array(embeddings, dtype=np.float32, order="C")
        backend._ids = ids
        backend._norms = norms
        backend._rows = {cid: row for row, cid in enumerate(ids)}
        return backend
