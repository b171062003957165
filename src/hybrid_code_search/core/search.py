"""Hybrid search engine: incremental indexing and fused lexical/vector queries."""

import asyncio
import re
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.defaults import MAX_AUXILIARY_EMBEDDING_CHARS
from ..config.settings import SearchConfig
from .bm25_backend import BM25Backend
from .chunk_store import ChunkStore
from .embeddings import BatchEmbeddingProcessor, EmbeddingProvider, Vector, embed_query
from .exceptions import (
    CorruptIndexError,
    DimensionMismatchError,
    EmbeddingProviderUnavailableError,
    IncompatibleVersionError,
    InvalidChunkError,
    PersistenceError,
    SearchError,
)
from .fusion import FusedHit, FusionRanker
from .locks import AsyncReadWriteLock
from .models import (
    ChangeKind,
    ChunkError,
    CodeChunk,
    IndexingSummary,
    IndexMetadata,
    IndexStatus,
    QueryOptions,
    QueryResponse,
    SearchResult,
    coerce_chunk,
    embedding_text,
)
from .persistence import IndexPersistence
from .vectors_backend import VectorsBackend, VectorSearchBackend

# Punctuation stripped from the edges of query words before highlighting
_EDGE_PUNCTUATION = "\"'`.,;:!?()[]{}<>"


def extract_highlights(query: str, content: str, max_highlights: int) -> list[str]:
    """Literal query words found in ``content``.

    Matching is case-insensitive; each highlight is the text as it appears
    in ``content``. The first ``max_highlights`` distinct occurrences are
    returned in content order.
    """
    if max_highlights <= 0:
        return []
    words = [w.strip(_EDGE_PUNCTUATION) for w in query.split()]
    words = [w for w in dict.fromkeys(words) if w]
    if not words:
        return []

    # Longest first so "parseConfig" wins over "parse"
    pattern = re.compile(
        "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True)),
        re.IGNORECASE,
    )
    found: dict[str, None] = {}
    for match in pattern.finditer(content):
        found.setdefault(match.group(0), None)
        if len(found) >= max_highlights:
            break
    return list(found)


class HybridSearchEngine:
    """Indexes code chunks and answers queries by fusing BM25 and vector search.

    The engine owns its ChunkStore, BM25 index and vector index. Every chunk
    mutation touches all three under the write side of a reader-writer lock
    held for that one chunk, so concurrent queries see each chunk either
    before or after its update. A batch lock serializes indexing, removal,
    clearing and snapshot save/load.

    Example:
        engine = HybridSearchEngine(provider, index_path=Path(".hcs/index.snapshot"))
        summary = await engine.index_chunks(chunks, reconcile=True)
        response = await engine.query("parse config", QueryOptions(limit=5))
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        index_path: Path | None = None,
        config: SearchConfig | None = None,
        vector_backend: VectorSearchBackend | None = None,
    ) -> None:
        """Initialize search engine.

        Args:
            embedding_provider: Text-to-vector provider (sync or async)
            index_path: Snapshot file used by ``save``/``load_state``
            config: Engine configuration (defaults if None)
            vector_backend: Vector store; exact ``VectorsBackend`` if None
        """
        self.config = config or SearchConfig()
        self.embedding_provider = embedding_provider
        self.index_path = Path(index_path) if index_path is not None else None

        bm25 = self.config.bm25
        fusion = self.config.fusion
        self._store = ChunkStore()
        self._lexical = BM25Backend(
            k1=bm25.k1,
            b=bm25.b,
            min_token_length=bm25.min_token_length,
            auxiliary_weight=bm25.auxiliary_weight,
        )
        self._vectors: VectorSearchBackend = (
            vector_backend if vector_backend is not None else VectorsBackend()
        )
        self._ranker = FusionRanker(
            lexical_weight=fusion.lexical_weight,
            vector_weight=fusion.vector_weight,
            strategy=fusion.strategy,
            rrf_k=fusion.rrf_k,
        )
        self._embedder = BatchEmbeddingProcessor.from_settings(
            embedding_provider, self.config.embedding
        )
        self._metadata = IndexMetadata(embedding_model=self._provider_name())

        self._lock = AsyncReadWriteLock()
        self._batch_lock = asyncio.Lock()

    def _provider_name(self) -> str:
        return getattr(
            self.embedding_provider,
            "model_name",
            type(self.embedding_provider).__name__,
        )

    # ------------------------------------------------------------------
    # Component access (read-only use)
    # ------------------------------------------------------------------

    @property
    def chunk_store(self) -> ChunkStore:
        return self._store

    @property
    def lexical_index(self) -> BM25Backend:
        return self._lexical

    @property
    def vector_index(self) -> VectorSearchBackend:
        return self._vectors

    @property
    def metadata(self) -> IndexMetadata:
        return self._metadata

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_chunks(
        self,
        chunks: Iterable[CodeChunk | Mapping[str, Any]],
        *,
        reconcile: bool = False,
        cancel_event: Any = None,
    ) -> IndexingSummary:
        """Index a batch of chunks incrementally.

        Chunks whose hash matches the stored one are not re-embedded.
        Per-chunk failures are collected in the summary and never abort the
        batch.

        Args:
            chunks: CodeChunk objects or chunk records (camelCase or
                snake_case keys)
            reconcile: Treat the input as the complete chunk set and remove
                stored chunks missing from it
            cancel_event: Object with ``is_set()`` (e.g. ``asyncio.Event``),
                checked between per-chunk steps

        Returns:
            IndexingSummary with per-kind counts, errors and deferred ids
        """
        start_time = time.perf_counter()
        summary = IndexingSummary()

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        async with self._batch_lock:
            present_ids: list[str] = []
            valid: dict[str, CodeChunk] = {}
            for item in chunks:
                try:
                    chunk = coerce_chunk(item)
                except InvalidChunkError as e:
                    raw_id = e.context.get("chunk_id")
                    if raw_id:
                        present_ids.append(str(raw_id))
                    summary.errors.append(
                        ChunkError(
                            chunk_id=str(raw_id) if raw_id else None,
                            error_type="InvalidChunk",
                            message=str(e),
                        )
                    )
                    logger.warning(f"Rejected chunk: {e}")
                    continue
                present_ids.append(chunk.id)
                # Last occurrence of a repeated id wins
                valid[chunk.id] = chunk

            # Split into no-op, store-only and embed-needed chunks
            needs_embedding: list[CodeChunk] = []
            for chunk in valid.values():
                change = self._store.classify(chunk)
                if change is ChangeKind.UNCHANGED:
                    summary.unchanged += 1
                elif change is not ChangeKind.METADATA_CHANGED:
                    needs_embedding.append(chunk)

            embeddings: dict[str, Vector] = {}
            if needs_embedding and not cancelled():
                result = await self._embedder.embed_batches_parallel(
                    [
                        (c.id, embedding_text(c, MAX_AUXILIARY_EMBEDDING_CHARS))
                        for c in needs_embedding
                    ]
                )
                embeddings = result.embeddings
                summary.deferred.extend(result.deferred)

            deferred = set(summary.deferred)
            for chunk in valid.values():
                if cancelled():
                    summary.cancelled = True
                    break
                if chunk.id in deferred:
                    continue
                change = self._store.classify(chunk)
                if change is ChangeKind.UNCHANGED:
                    continue
                embedding = embeddings.get(chunk.id)
                if change is not ChangeKind.METADATA_CHANGED and embedding is None:
                    # Embedding skipped because the batch was cancelled
                    summary.cancelled = True
                    break

                async with self._lock.write():
                    try:
                        change = self._apply_chunk(chunk, embedding)
                    except DimensionMismatchError as e:
                        summary.errors.append(
                            ChunkError(
                                chunk_id=chunk.id,
                                error_type="DimensionMismatch",
                                message=str(e),
                            )
                        )
                        logger.warning(f"Skipped chunk {chunk.id}: {e}")
                        continue

                if change is ChangeKind.ADDED:
                    summary.added += 1
                elif change is ChangeKind.UPDATED:
                    summary.updated += 1
                elif change is ChangeKind.METADATA_CHANGED:
                    summary.metadata_updated += 1

            if reconcile and not summary.cancelled:
                for chunk_id in self._store.ids_not_in(present_ids):
                    if cancelled():
                        summary.cancelled = True
                        break
                    async with self._lock.write():
                        if self._remove_chunk(chunk_id):
                            summary.removed += 1

            summary.duration_ms = (time.perf_counter() - start_time) * 1000
            self._metadata.embedding_model = self._provider_name()
            self._metadata.last_indexed = datetime.now(UTC)
            self._metadata.index_duration_ms = summary.duration_ms

        logger.info(
            f"Indexed batch: {summary.added} added, {summary.updated} updated, "
            f"{summary.unchanged} unchanged, {summary.metadata_updated} metadata-only, "
            f"{summary.removed} removed, {len(summary.errors)} errors, "
            f"{len(summary.deferred)} deferred"
            + (" (cancelled)" if summary.cancelled else "")
            + f" in {summary.duration_ms:.1f}ms"
        )
        return summary

    def _apply_chunk(self, chunk: CodeChunk, embedding: Vector | None) -> ChangeKind:
        """Apply one chunk to all three structures. Caller holds the write lock."""
        if embedding is None:
            # Metadata-only change: no index side effects
            return self._store.upsert(chunk)

        # Vectors first: a dimension mismatch must leave every structure as it was
        if chunk.id in self._vectors:
            self._vectors.update(chunk.id, embedding)
        else:
            self._vectors.add(chunk.id, embedding)
        self._lexical.add(chunk)
        return self._store.upsert(chunk)

    def _remove_chunk(self, chunk_id: str) -> bool:
        """Remove one chunk from all three structures. Caller holds the write lock."""
        self._vectors.remove(chunk_id)
        self._lexical.remove(chunk_id)
        return self._store.remove(chunk_id)

    async def remove_chunks(self, chunk_ids: Iterable[str]) -> int:
        """Remove chunks by id.

        Returns:
            Number of chunks that were present and removed
        """
        removed = 0
        async with self._batch_lock:
            for chunk_id in chunk_ids:
                async with self._lock.write():
                    if self._remove_chunk(chunk_id):
                        removed += 1
        if removed:
            logger.info(f"Removed {removed} chunks")
        return removed

    async def rebuild_lexical_index(self) -> int:
        """Rebuild BM25 postings from the chunk store (no embedding calls).

        Returns:
            Number of chunks indexed
        """
        async with self._batch_lock:
            bm25 = self.config.bm25
            rebuilt = BM25Backend(
                k1=bm25.k1,
                b=bm25.b,
                min_token_length=bm25.min_token_length,
                auxiliary_weight=bm25.auxiliary_weight,
            )
            for chunk in self._store.chunks():
                rebuilt.add(chunk)
            async with self._lock.write():
                self._lexical = rebuilt
        logger.info(f"Rebuilt lexical index for {len(rebuilt)} chunks")
        return len(rebuilt)

    async def clear(self) -> None:
        """Drop every chunk and index entry (the snapshot file is kept)."""
        async with self._batch_lock:
            async with self._lock.write():
                self._store.clear()
                self._lexical.clear()
                self._vectors.clear()
                self._metadata = IndexMetadata(embedding_model=self._provider_name())
        logger.info("Cleared index")

    def clear_index_file(self) -> bool:
        """Delete the snapshot file.

        Returns:
            True if a file was removed
        """
        if self.index_path is None or not self.index_path.exists():
            return False
        self.index_path.unlink()
        logger.info(f"Deleted index snapshot {self.index_path}")
        return True

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    async def query(
        self, text: str, options: QueryOptions | None = None
    ) -> QueryResponse:
        """Search with fused lexical and vector ranking.

        Ordering of steps: fuse, drop scores below ``min_score``, apply
        filters, truncate to ``limit``. When the embedding provider fails the
        query falls back to lexical-only ranking and ``degraded`` is set.

        Args:
            text: Natural-language or keyword query
            options: Limit, score threshold and filters

        Returns:
            QueryResponse with ranked results

        Raises:
            SearchError: If ``limit`` is not positive
        """
        start_time = time.perf_counter()
        options = options or QueryOptions()
        limit = options.limit if options.limit is not None else self.config.default_limit
        if limit < 1:
            raise SearchError(f"limit must be >= 1, got {limit}")

        if not text or not text.strip():
            return QueryResponse(search_time_ms=_elapsed_ms(start_time))

        pool = max(limit * self.config.over_fetch_factor, limit)
        degraded = False
        query_vector: Vector | None = None
        try:
            query_vector = await embed_query(
                self.embedding_provider, text, self.config.embedding.timeout
            )
        except EmbeddingProviderUnavailableError as e:
            logger.warning(f"Falling back to lexical-only search: {e}")
            degraded = True

        async with self._lock.read():
            lexical_search = asyncio.to_thread(self._lexical.search, text, pool)
            if query_vector is None:
                lexical_hits = await lexical_search
                vector_hits: list[tuple[str, float]] = []
            else:
                lexical_hits, vector_outcome = await asyncio.gather(
                    lexical_search,
                    asyncio.to_thread(self._vectors.search, query_vector, pool),
                    return_exceptions=True,
                )
                if isinstance(lexical_hits, BaseException):
                    raise lexical_hits
                if isinstance(vector_outcome, DimensionMismatchError):
                    logger.warning(
                        f"Query embedding unusable ({vector_outcome}); "
                        f"falling back to lexical-only search"
                    )
                    degraded = True
                    vector_hits = []
                elif isinstance(vector_outcome, BaseException):
                    raise vector_outcome
                else:
                    vector_hits = vector_outcome

            if degraded:
                fused = self._ranker.lexical_only(lexical_hits)
            else:
                fused = self._ranker.fuse(lexical_hits, vector_hits)
            results = self._select_results(fused, options, limit)

        for rank, result in enumerate(results, 1):
            result.rank = rank
            result.highlights = extract_highlights(
                text, result.chunk.content, self.config.max_highlights
            )

        elapsed = _elapsed_ms(start_time)
        logger.debug(
            f"Query '{text}' returned {len(results)} results "
            f"(lexical={len(lexical_hits)}, vector={len(vector_hits)}, "
            f"degraded={degraded}) in {elapsed:.1f}ms"
        )
        return QueryResponse(results=results, degraded=degraded, search_time_ms=elapsed)

    def _select_results(
        self, fused: list[FusedHit], options: QueryOptions, limit: int
    ) -> list[SearchResult]:
        results: list[SearchResult] = []
        for hit in fused:
            if options.min_score is not None and hit.score < options.min_score:
                continue
            chunk = self._store.get(hit.chunk_id)
            if chunk is None or not options.filters.matches(chunk):
                continue
            results.append(
                SearchResult(
                    chunk=chunk,
                    score=hit.score,
                    lexical_score=hit.lexical_score,
                    vector_score=hit.vector_score,
                )
            )
            if len(results) >= limit:
                break
        return results

    def get_chunk(self, chunk_id: str) -> CodeChunk | None:
        return self._store.get(chunk_id)

    async def find_similar(self, chunk_id: str, limit: int = 10) -> list[SearchResult]:
        """Chunks nearest to a stored chunk's embedding, excluding itself.

        Returns:
            Results scored by cosine similarity; empty if the chunk is unknown
        """
        if limit < 1:
            return []
        async with self._lock.read():
            embedding = self._vectors.get(chunk_id)
            if embedding is None:
                return []
            hits = self._vectors.search(embedding, limit + 1)
            results = []
            for other_id, similarity in hits:
                chunk = self._store.get(other_id)
                if other_id == chunk_id or chunk is None:
                    continue
                results.append(
                    SearchResult(chunk=chunk, score=similarity, vector_score=similarity)
                )
        results = results[:limit]
        for rank, result in enumerate(results, 1):
            result.rank = rank
        return results

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> IndexStatus:
        chunks = self._store.chunks()
        return IndexStatus(
            indexed=bool(chunks),
            total_chunks=len(chunks),
            total_files=len({c.file_path for c in chunks}),
            languages=sorted({c.language for c in chunks}),
            last_indexed=self._metadata.last_indexed,
            embedding_model=self._metadata.embedding_model,
            embedding_dimension=self._vectors.dimension,
            embedded_chunks=len(self._vectors),
            index_duration_ms=self._metadata.index_duration_ms,
        )

    def get_stats(self) -> dict[str, Any]:
        """Per-component statistics."""
        get_vector_stats = getattr(self._vectors, "get_stats", None)
        return {
            "chunks": len(self._store),
            "lexical": self._lexical.get_stats(),
            "vectors": get_vector_stats()
            if get_vector_stats
            else {"total": len(self._vectors), "dimension": self._vectors.dimension},
            "embedding": self._embedder.get_stats(),
            "fusion": {
                "strategy": self._ranker.strategy,
                "lexical_weight": self._ranker.lexical_weight,
                "vector_weight": self._ranker.vector_weight,
            },
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _resolve_path(self, path: Path | None) -> Path:
        resolved = Path(path) if path is not None else self.index_path
        if resolved is None:
            raise PersistenceError("No index path configured")
        return resolved

    async def save(self, path: Path | None = None) -> Path:
        """Write a snapshot. Waits for any in-flight indexing batch.

        Returns:
            Path written
        """
        target = self._resolve_path(path)
        export = getattr(self._vectors, "export", None)
        if export is None:
            raise PersistenceError(
                f"Vector backend {type(self._vectors).__name__} cannot be exported"
            )
        async with self._batch_lock:
            await asyncio.to_thread(
                IndexPersistence.save,
                target,
                self._store,
                self._lexical,
                export(),
                self._metadata,
            )
        return target

    async def load_state(self, path: Path | None = None) -> None:
        """Replace the in-memory index with a snapshot.

        Nothing changes unless the whole snapshot verifies.

        Raises:
            PersistenceError: If the snapshot is missing or unreadable
            IncompatibleVersionError: On schema version mismatch
            CorruptIndexError: If the snapshot violates an invariant
        """
        source = self._resolve_path(path)
        async with self._batch_lock:
            state = await asyncio.to_thread(IndexPersistence.load, source)

            if (state.lexical.k1, state.lexical.b) != (
                self.config.bm25.k1,
                self.config.bm25.b,
            ):
                logger.warning(
                    "Snapshot BM25 parameters differ from configuration; "
                    "call rebuild_lexical_index() to apply the configured values"
                )

            async with self._lock.write():
                self._store = state.store
                self._lexical = state.lexical
                if isinstance(self._vectors, VectorsBackend):
                    self._vectors = state.vectors
                else:
                    self._vectors.clear()
                    for chunk_id in state.vectors.chunk_ids():
                        self._vectors.add(chunk_id, state.vectors.get(chunk_id))
                self._metadata = state.metadata

    @classmethod
    async def load(
        cls,
        path: Path,
        embedding_provider: EmbeddingProvider,
        config: SearchConfig | None = None,
        vector_backend: VectorSearchBackend | None = None,
    ) -> "HybridSearchEngine":
        """Create an engine from a snapshot.

        Raises:
            IncompatibleVersionError, CorruptIndexError, PersistenceError
        """
        engine = cls(
            embedding_provider,
            index_path=path,
            config=config,
            vector_backend=vector_backend,
        )
        await engine.load_state()
        return engine

    @classmethod
    async def open(
        cls,
        embedding_provider: EmbeddingProvider,
        index_path: Path,
        config: SearchConfig | None = None,
        vector_backend: VectorSearchBackend | None = None,
        discard_invalid: bool = True,
    ) -> "HybridSearchEngine":
        """Create an engine, loading the snapshot at ``index_path`` if present.

        An incompatible or corrupt snapshot is deleted and the engine starts
        empty so the caller can rebuild, unless ``discard_invalid`` is False.
        """
        engine = cls(
            embedding_provider,
            index_path=index_path,
            config=config,
            vector_backend=vector_backend,
        )
        if not Path(index_path).exists():
            return engine
        try:
            await engine.load_state()
        except (IncompatibleVersionError, CorruptIndexError) as e:
            if not discard_invalid:
                raise
            logger.warning(f"Discarding unusable index snapshot, rebuild required: {e}")
            engine.clear_index_file()
        return engine


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
