"""Typed exception hierarchy for hybrid-code-search.

Hierarchy
---------
HybridSearchError (base)
├── IndexingError                      – indexing-time failures
│   ├── InvalidChunkError              – malformed chunk rejected at the boundary
│   └── DimensionMismatchError         – embedding shape inconsistent with the index
├── SearchError                        – search-time failures
├── EmbeddingError                     – embedding generation errors
│   └── EmbeddingProviderUnavailableError – provider/network failure (transient)
├── PersistenceError                   – snapshot read/write errors
│   ├── IncompatibleVersionError       – schema version of snapshot != running engine
│   └── CorruptIndexError              – snapshot unreadable or structurally inconsistent
└── ConfigError                        – configuration / validation errors

Per-chunk errors (``InvalidChunkError``, ``DimensionMismatchError``, deferred
embedding failures) are collected in ``IndexingSummary`` and never abort a
batch.  Persistence errors are surfaced to the caller, who decides whether to
rebuild.
"""

from typing import Any


class HybridSearchError(Exception):
    """Base exception for hybrid-code-search."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Indexing layer ──────────────────────────────────────────────────────


class IndexingError(HybridSearchError):
    """Indexing operation failed."""

    pass


class InvalidChunkError(IndexingError):
    """Chunk violates a structural invariant (missing id, bad line range, ...)."""

    pass


class DimensionMismatchError(IndexingError):
    """Embedding dimension differs from the dimension fixed by the index."""

    def __init__(
        self,
        expected: int,
        actual: int,
        chunk_id: str | None = None,
    ) -> None:
        target = f" for chunk {chunk_id}" if chunk_id else ""
        super().__init__(
            f"Embedding dimension mismatch{target}: expected {expected}, got {actual}",
            context={"expected": expected, "actual": actual, "chunk_id": chunk_id},
        )
        self.expected = expected
        self.actual = actual
        self.chunk_id = chunk_id


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(HybridSearchError):
    """Search operation failed."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(HybridSearchError):
    """Embedding generation errors."""

    pass


class EmbeddingProviderUnavailableError(EmbeddingError):
    """Embedding provider failed (network, timeout, model error).

    Queries degrade to lexical-only ranking; indexing retries and then defers
    the affected chunks.
    """

    pass


# ── Persistence layer ───────────────────────────────────────────────────


class PersistenceError(HybridSearchError):
    """Snapshot save/load errors."""

    pass


class IncompatibleVersionError(PersistenceError):
    """Snapshot schema version does not match the running engine."""

    pass


class CorruptIndexError(PersistenceError):
    """Snapshot is unreadable or violates a structural invariant."""

    pass


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(HybridSearchError):
    """Configuration / validation errors."""

    pass


# Short aliases matching the names used in the design documents
InvalidChunk = InvalidChunkError
DimensionMismatch = DimensionMismatchError
EmbeddingProviderUnavailable = EmbeddingProviderUnavailableError
IncompatibleVersion = IncompatibleVersionError
CorruptIndex = CorruptIndexError
