"""Hybrid code search - BM25 + embedding retrieval over code chunks."""

__version__ = "0.1.0"

from .core.exceptions import HybridSearchError
from .core.models import CodeChunk, QueryOptions, QueryResponse, SearchFilters
from .core.search import HybridSearchEngine

__all__ = [
    "CodeChunk",
    "HybridSearchEngine",
    "HybridSearchError",
    "QueryOptions",
    "QueryResponse",
    "SearchFilters",
    "__version__",
]
