"""Data models for hybrid code search.

``CodeChunk`` is the unit of indexing and retrieval. It is an immutable
pydantic model, so chunks handed back to callers are read-only views of the
store. Result and summary types are plain dataclasses.
"""

from __future__ import annotations

import hashlib
from collections.abc import Iterator, Mapping
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import InvalidChunkError


class ChunkType(StrEnum):
    """Known chunk type tags. ``CodeChunk.type`` accepts any string."""

    FUNCTION = "function"
    CLASS = "class"
    OTHER = "other"


class ChangeKind(StrEnum):
    """Outcome of storing a chunk."""

    ADDED = "added"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    METADATA_CHANGED = "content_unchanged_metadata_changed"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def ordered_unique(values: Any) -> tuple[str, ...]:
    """Insertion-order-preserving set union of string values."""
    if values is None:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(dict.fromkeys(str(v) for v in values))


def compute_content_hash(text: str) -> str:
    """Content fingerprint used when a chunk arrives without a hash."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class CodeChunk(BaseModel):
    """A named, line-ranged fragment of source code."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., min_length=1, description="Stable unique identifier")
    file_path: str = Field(..., alias="filePath")
    name: str = ""
    type: str = ChunkType.OTHER.value
    language: str = "unknown"
    start_line: int = Field(..., ge=1, alias="startLine")
    end_line: int = Field(..., ge=1, alias="endLine")
    content: str = ""
    signature: str = ""
    docstring: str = ""
    imports: tuple[str, ...] = ()
    hash: str = ""
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # UUIDs and ints are accepted and stored as strings
        if value is None:
            return value
        return str(value).strip()

    @field_validator("signature", "docstring", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("imports", mode="before")
    @classmethod
    def _dedupe_imports(cls, value: Any) -> tuple[str, ...]:
        return ordered_unique(value)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> CodeChunk:
        if self.start_line > self.end_line:
            raise ValueError(
                f"start_line ({self.start_line}) must be <= end_line ({self.end_line})"
            )
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must be >= created_at")
        if not self.hash:
            # Frozen model: bypass __setattr__ for the derived default
            object.__setattr__(
                self, "hash", compute_content_hash(embedding_text(self))
            )
        return self

    @property
    def auxiliary_text(self) -> str:
        """Signature, docstring and imports joined for lower-weight indexing."""
        parts = [self.signature, self.docstring, " ".join(self.imports)]
        return "\n".join(p for p in parts if p)

    def to_record(self) -> dict[str, Any]:
        """JSON-compatible dict (snake_case keys)."""
        return self.model_dump(mode="json")


def embedding_text(chunk: CodeChunk, max_auxiliary_chars: int | None = None) -> str:
    """Text sent to the embedding provider for a chunk.

    Content comes first; auxiliary text follows and may be truncated so it
    carries less weight than the code itself.
    """
    auxiliary = chunk.auxiliary_text
    if max_auxiliary_chars is not None:
        auxiliary = auxiliary[:max_auxiliary_chars]
    if not auxiliary:
        return chunk.content
    return f"{chunk.content}\n{auxiliary}"


def check_chunk(chunk: CodeChunk) -> CodeChunk:
    """Re-check structural invariants of an already-built chunk.

    Guards against instances created with ``model_construct`` which skips
    validation.

    Raises:
        InvalidChunkError: If an invariant is violated
    """
    chunk_id = getattr(chunk, "id", None)
    if not chunk_id or not str(chunk_id).strip():
        raise InvalidChunkError("Chunk is missing an id", context={"chunk_id": None})
    start = getattr(chunk, "start_line", None)
    end = getattr(chunk, "end_line", None)
    if not isinstance(start, int) or not isinstance(end, int):
        raise InvalidChunkError(
            f"Chunk {chunk_id} has no line range", context={"chunk_id": chunk_id}
        )
    if start < 1 or start > end:
        raise InvalidChunkError(
            f"Chunk {chunk_id} has invalid line range {start}-{end}",
            context={"chunk_id": chunk_id},
        )
    if chunk.updated_at < chunk.created_at:
        raise InvalidChunkError(
            f"Chunk {chunk_id} has updated_at before created_at",
            context={"chunk_id": chunk_id},
        )
    if not chunk.hash:
        raise InvalidChunkError(
            f"Chunk {chunk_id} has no hash", context={"chunk_id": chunk_id}
        )
    return chunk


def coerce_chunk(item: CodeChunk | Mapping[str, Any]) -> CodeChunk:
    """Turn a chunk or chunk record into a validated ``CodeChunk``.

    Raises:
        InvalidChunkError: If the record is malformed
    """
    if isinstance(item, CodeChunk):
        return check_chunk(item)
    if not isinstance(item, Mapping):
        raise InvalidChunkError(
            f"Expected CodeChunk or mapping, got {type(item).__name__}"
        )
    try:
        return CodeChunk.model_validate(dict(item))
    except ValidationError as e:
        chunk_id = item.get("id")
        raise InvalidChunkError(
            f"Invalid chunk {chunk_id!r}: {e.errors()[0]['msg']}",
            context={"chunk_id": chunk_id, "errors": e.errors()},
        ) from e


@dataclass
class SearchFilters:
    """Post-fusion result filters. Empty lists mean "no filter"."""

    languages: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)

    def matches(self, chunk: CodeChunk) -> bool:
        if self.languages and chunk.language not in self.languages:
            return False
        if self.types and chunk.type not in self.types:
            return False
        if self.paths and not any(p in chunk.file_path for p in self.paths):
            return False
        return True

    def is_empty(self) -> bool:
        return not (self.languages or self.types or self.paths)


@dataclass
class QueryOptions:
    """Options recognized by ``HybridSearchEngine.query``."""

    limit: int | None = None
    min_score: float | None = None
    filters: SearchFilters = field(default_factory=SearchFilters)


@dataclass
class SearchResult:
    """A single ranked chunk."""

    chunk: CodeChunk
    score: float
    highlights: list[str] = field(default_factory=list)
    rank: int = 0
    lexical_score: float | None = None  # raw BM25 score, if matched lexically
    vector_score: float | None = None  # raw cosine similarity, if available

    @property
    def chunk_id(self) -> str:
        return self.chunk.id


@dataclass
class QueryResponse:
    """Ranked results plus degrade annotation."""

    results: list[SearchResult] = field(default_factory=list)
    degraded: bool = False
    search_time_ms: float = 0.0

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[SearchResult]:
        return iter(self.results)


@dataclass
class ChunkError:
    """Per-chunk failure recorded during a batch."""

    chunk_id: str | None
    error_type: str
    message: str


@dataclass
class IndexingSummary:
    """Outcome of one ``index_chunks`` call."""

    added: int = 0
    updated: int = 0
    unchanged: int = 0
    metadata_updated: int = 0
    removed: int = 0
    errors: list[ChunkError] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    cancelled: bool = False
    duration_ms: float = 0.0

    @property
    def changed(self) -> int:
        return self.added + self.updated + self.metadata_updated + self.removed

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "metadata_updated": self.metadata_updated,
            "removed": self.removed,
            "errors": [asdict(e) for e in self.errors],
            "deferred": list(self.deferred),
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
        }


@dataclass
class IndexMetadata:
    """Bookkeeping about the last indexing run, persisted with the snapshot."""

    embedding_model: str | None = None
    last_indexed: datetime | None = None
    index_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "embedding_model": self.embedding_model,
            "last_indexed": self.last_indexed.isoformat()
            if self.last_indexed
            else None,
            "index_duration_ms": self.index_duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IndexMetadata:
        last_indexed = data.get("last_indexed")
        return cls(
            embedding_model=data.get("embedding_model"),
            last_indexed=datetime.fromisoformat(last_indexed) if last_indexed else None,
            index_duration_ms=float(data.get("index_duration_ms", 0.0)),
        )


@dataclass
class IndexStatus:
    """Snapshot of what the engine currently holds."""

    indexed: bool
    total_chunks: int
    total_files: int
    languages: list[str]
    last_indexed: datetime | None
    embedding_model: str | None
    embedding_dimension: int | None
    embedded_chunks: int
    index_duration_ms: float
