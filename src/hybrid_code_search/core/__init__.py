"""Core functionality for hybrid code search."""

from .exceptions import (
    ConfigError,
    CorruptIndex,
    CorruptIndexError,
    DimensionMismatch,
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingProviderUnavailable,
    EmbeddingProviderUnavailableError,
    HybridSearchError,
    IncompatibleVersion,
    IncompatibleVersionError,
    IndexingError,
    InvalidChunk,
    InvalidChunkError,
    PersistenceError,
    SearchError,
)
from .models import (
    ChangeKind,
    ChunkError,
    ChunkType,
    CodeChunk,
    IndexingSummary,
    IndexMetadata,
    IndexStatus,
    QueryOptions,
    QueryResponse,
    SearchFilters,
    SearchResult,
)

__all__ = [
    "ChangeKind",
    "ChunkError",
    "ChunkType",
    "CodeChunk",
    "ConfigError",
    "CorruptIndex",
    "CorruptIndexError",
    "DimensionMismatch",
    "DimensionMismatchError",
    "EmbeddingError",
    "EmbeddingProviderUnavailable",
    "EmbeddingProviderUnavailableError",
    "HybridSearchError",
    "IncompatibleVersion",
    "IncompatibleVersionError",
    "IndexMetadata",
    "IndexStatus",
    "IndexingError",
    "IndexingSummary",
    "InvalidChunk",
    "InvalidChunkError",
    "PersistenceError",
    "QueryOptions",
    "QueryResponse",
    "SearchError",
    "SearchFilters",
    "SearchResult",
]
