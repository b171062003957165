"""BM25 backend for keyword-based search over code chunks.

This module provides BM25 (Best Matching 25) keyword search as a complement
to vector similarity search. BM25 is a probabilistic retrieval function that
ranks documents based on term frequency and inverse document frequency.

Key features:
- Incremental inverted index: add/remove touch only the terms of one chunk
- Indexes code content plus lower-weighted metadata (name, signature,
  docstring, imports)
- Deterministic ranking (score descending, chunk id ascending)
- Exportable postings and statistics for snapshot persistence

Use cases:
- Exact keyword matching (e.g., "DatabaseConnection")
- API/function name searches (e.g., "parseConfig")
- Hybrid search combined with vector similarity
"""

import heapq
import math
import re
from typing import Any

from loguru import logger

from ..config.defaults import (
    DEFAULT_AUXILIARY_WEIGHT,
    DEFAULT_BM25_B,
    DEFAULT_BM25_K1,
    DEFAULT_MIN_TOKEN_LENGTH,
)
from .models import CodeChunk

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def tokenize(text: str, min_length: int = DEFAULT_MIN_TOKEN_LENGTH) -> list[str]:
    """Tokenize text for BM25 indexing.

    - Lowercase
    - Split on every non-alphanumeric character (``parse_config`` -> ``parse``,
      ``config``; ``parseConfig`` -> ``parseconfig``)
    - Drop tokens shorter than ``min_length``

    Args:
        text: Text to tokenize
        min_length: Minimum token length kept

    Returns:
        List of tokens in text order
    """
    return [t for t in _TOKEN_RE.findall(text.lower()) if len(t) >= min_length]


class BM25Backend:
    """BM25 keyword search backend for code chunks.

    Keeps per-term posting lists of ``(chunk_id, term_frequency)`` and the
    document length statistics needed for IDF and length normalization.
    Statistics are maintained incrementally on every add/remove.

    Example:
        backend = BM25Backend()
        backend.add(chunk)
        results = backend.search("parse file chunks", limit=10)
        # Returns: [(chunk_id, score), ...]
    """

    def __init__(
        self,
        k1: float = DEFAULT_BM25_K1,
        b: float = DEFAULT_BM25_B,
        min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH,
        auxiliary_weight: float = DEFAULT_AUXILIARY_WEIGHT,
    ) -> None:
        """Initialize BM25 backend.

        Args:
            k1: Term frequency saturation
            b: Document length normalization strength (0 = none, 1 = full)
            min_token_length: Tokens shorter than this are ignored
            auxiliary_weight: Term-frequency weight of metadata tokens
                (content tokens count 1.0)
        """
        self.k1 = k1
        self.b = b
        self.min_token_length = min_token_length
        self.auxiliary_weight = auxiliary_weight

        # term -> {chunk_id: weighted term frequency}
        self._postings: dict[str, dict[str, float]] = {}
        # chunk_id -> weighted document length
        self._doc_lengths: dict[str, float] = {}
        # chunk_id -> terms of that document (for O(terms) removal)
        self._doc_terms: dict[str, tuple[str, ...]] = {}
        self._total_length = 0.0

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def term_weights(self, chunk: CodeChunk) -> dict[str, float]:
        """Weighted term frequencies for a chunk.

        Content tokens count 1.0 each; name, signature, docstring and import
        tokens count ``auxiliary_weight`` each.
        """
        weights: dict[str, float] = {}
        for token in tokenize(chunk.content, self.min_token_length):
            weights[token] = weights.get(token, 0.0) + 1.0

        if self.auxiliary_weight > 0:
            auxiliary = " ".join([chunk.name, chunk.auxiliary_text])
            for token in tokenize(auxiliary, self.min_token_length):
                weights[token] = weights.get(token, 0.0) + self.auxiliary_weight

        return weights

    def add(self, chunk: CodeChunk) -> None:
        """Index a chunk. An existing entry with the same id is replaced."""
        if chunk.id in self._doc_lengths:
            self.remove(chunk.id)
        self._add_document(chunk.id, self.term_weights(chunk))

    def update(self, chunk: CodeChunk) -> None:
        """Replace a chunk's entry (remove then add)."""
        self.remove(chunk.id)
        self._add_document(chunk.id, self.term_weights(chunk))

    def remove(self, chunk_id: str) -> bool:
        """Remove a chunk from the index.

        Returns:
            False if the chunk was not indexed
        """
        terms = self._doc_terms.pop(chunk_id, None)
        if terms is None:
            return False

        for term in terms:
            posting = self._postings.get(term)
            if posting is None:
                continue
            posting.pop(chunk_id, None)
            if not posting:
                # Last document containing the term
                del self._postings[term]

        self._total_length -= self._doc_lengths.pop(chunk_id)
        if not self._doc_lengths:
            # Reset accumulated float drift once the index is empty
            self._total_length = 0.0
        return True

    def clear(self) -> None:
        self._postings.clear()
        self._doc_lengths.clear()
        self._doc_terms.clear()
        self._total_length = 0.0

    def _add_document(self, chunk_id: str, weights: dict[str, float]) -> None:
        for term, tf in weights.items():
            self._postings.setdefault(term, {})[chunk_id] = tf
        length = sum(weights.values())
        self._doc_terms[chunk_id] = tuple(weights)
        self._doc_lengths[chunk_id] = length
        self._total_length += length

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, limit: int = 10) -> list[tuple[str, float]]:
        """Search using BM25 keyword matching.

        Args:
            query: Search query string
            limit: Maximum number of results to return

        Returns:
            List of (chunk_id, score) tuples sorted by score descending, then
            chunk_id ascending. Empty when no query term matches.
        """
        if limit <= 0 or not self._doc_lengths:
            return []

        query_terms = list(dict.fromkeys(tokenize(query, self.min_token_length)))
        if not query_terms:
            return []

        n_docs = len(self._doc_lengths)
        avgdl = self._total_length / n_docs if n_docs else 0.0
        scores: dict[str, float] = {}

        for term in query_terms:
            posting = self._postings.get(term)
            if not posting:
                continue
            idf = self._idf(len(posting), n_docs)
            for chunk_id, tf in posting.items():
                scores[chunk_id] = scores.get(chunk_id, 0.0) + idf * self._tf_component(
                    tf, self._doc_lengths[chunk_id], avgdl
                )

        results = heapq.nsmallest(limit, scores.items(), key=lambda kv: (-kv[1], kv[0]))

        logger.debug(
            f"BM25 search for '{query}' returned {len(results)} results "
            f"(top score: {results[0][1]:.3f})"
            if results
            else f"BM25 search for '{query}' returned no results"
        )
        return results

    def matched_terms(self, query: str, chunk_id: str) -> list[str]:
        """Query terms (normalized) that occur in the given chunk."""
        terms = dict.fromkeys(tokenize(query, self.min_token_length))
        return [t for t in terms if chunk_id in self._postings.get(t, {})]

    @staticmethod
    def _idf(doc_freq: int, n_docs: int) -> float:
        # Lucene variant: always positive, even for terms in most documents
        return math.log(1.0 + (n_docs - doc_freq + 0.5) / (doc_freq + 0.5))

    def _tf_component(self, tf: float, doc_length: float, avgdl: float) -> float:
        norm = 1.0 - self.b + (self.b * doc_length / avgdl if avgdl > 0 else 0.0)
        return tf * (self.k1 + 1.0) / (tf + self.k1 * norm)

    # ------------------------------------------------------------------
    # Introspection / persistence
    # ------------------------------------------------------------------

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._doc_lengths

    def __len__(self) -> int:
        return len(self._doc_lengths)

    def document_ids(self) -> list[str]:
        return list(self._doc_lengths)

    def is_built(self) -> bool:
        """Check if the index holds at least one document."""
        return bool(self._doc_lengths)

    def get_stats(self) -> dict[str, Any]:
        """Get BM25 index statistics."""
        n_docs = len(self._doc_lengths)
        return {
            "built": self.is_built(),
            "chunk_count": n_docs,
            "term_count": len(self._postings),
            "avg_doc_length": self._total_length / n_docs if n_docs else 0.0,
            "k1": self.k1,
            "b": self.b,
        }

    def export(self) -> dict[str, Any]:
        """Export postings, statistics and parameters."""
        return {
            "params": {
                "k1": self.k1,
                "b": self.b,
                "min_token_length": self.min_token_length,
                "auxiliary_weight": self.auxiliary_weight,
            },
            "postings": {term: dict(p) for term, p in self._postings.items()},
            "doc_lengths": dict(self._doc_lengths),
            "total_length": self._total_length,
        }

    @classmethod
    def from_export(cls, data: dict[str, Any]) -> "BM25Backend":
        """Rebuild a backend from ``export()`` output.

        No consistency checks are made here; see ``find_inconsistencies``.

        Raises:
            KeyError, TypeError, ValueError: If the payload is malformed
        """
        backend = cls(**data["params"])
        doc_terms: dict[str, list[str]] = {}
        for term, posting in data["postings"].items():
            backend._postings[term] = {cid: float(tf) for cid, tf in posting.items()}
            for chunk_id in posting:
                doc_terms.setdefault(chunk_id, []).append(term)

        backend._doc_lengths = {
            cid: float(length) for cid, length in data["doc_lengths"].items()
        }
        backend._doc_terms = {
            cid: tuple(doc_terms.get(cid, ())) for cid in backend._doc_lengths
        }
        backend._total_length = float(data["total_length"])
        return backend

    def find_inconsistencies(self, known_ids: set[str] | None = None) -> list[str]:
        """Check structural invariants.

        Args:
            known_ids: Chunk ids the index may reference (ChunkStore ids)

        Returns:
            Human-readable problems (empty when consistent)
        """
        problems: list[str] = []
        recomputed: dict[str, float] = {}

        for term, posting in self._postings.items():
            if not posting:
                problems.append(f"empty posting list for term '{term}'")
            for chunk_id, tf in posting.items():
                if chunk_id not in self._doc_lengths:
                    problems.append(
                        f"posting for '{term}' references unknown document {chunk_id}"
                    )
                if tf <= 0:
                    problems.append(f"non-positive tf for '{term}' in {chunk_id}")
                recomputed[chunk_id] = recomputed.get(chunk_id, 0.0) + tf

        for chunk_id, length in self._doc_lengths.items():
            if not math.isclose(
                recomputed.get(chunk_id, 0.0), length, rel_tol=1e-6, abs_tol=1e-6
            ):
                problems.append(f"document length mismatch for {chunk_id}")

        if not math.isclose(
            sum(self._doc_lengths.values()),
            self._total_length,
            rel_tol=1e-6,
            abs_tol=1e-6,
        ):
            problems.append("total document length does not match documents")

        if known_ids is not None:
            unknown = [cid for cid in self._doc_lengths if cid not in known_ids]
            if unknown:
                problems.append(
                    f"{len(unknown)} lexical entries reference chunks not in the "
                    f"store (e.g. {unknown[0]})"
                )

        return problems
