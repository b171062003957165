"""Snapshot persistence for the hybrid index.

A snapshot is a single orjson document::

    {
        "format": "hybrid-code-search/index",
        "schema_version": "1.0.0",
        "created_at": "...",
        "chunks": [<chunk record>, ...],
        "lexical": {"params": ..., "postings": ..., "doc_lengths": ...,
                    "total_length": ...},
        "vectors": {"dimension": 384, "ids": [...], "embeddings": [[...], ...],
                    "norms": [...]},
        "metadata": {"embedding_model": ..., "last_indexed": ...,
                     "index_duration_ms": ...}
    }

The format tag and schema version are checked before anything else is read.
Loading builds fresh structures and hands them back only once every
invariant has been verified, so a failed load never leaves partial state.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import orjson
from loguru import logger
from pydantic import ValidationError

from .bm25_backend import BM25Backend
from .chunk_store import ChunkStore
from .exceptions import (
    CorruptIndexError,
    DimensionMismatchError,
    IncompatibleVersionError,
    PersistenceError,
)
from .models import CodeChunk, IndexMetadata
from .schema import CURRENT_SCHEMA, FORMAT_TAG, SchemaVersion
from .vectors_backend import VectorsBackend


@dataclass
class IndexState:
    """Everything a snapshot restores."""

    store: ChunkStore
    lexical: BM25Backend
    vectors: VectorsBackend
    metadata: IndexMetadata


class IndexPersistence:
    """Reads and writes index snapshots."""

    @staticmethod
    def save(
        path: Path,
        store: ChunkStore,
        lexical: BM25Backend,
        vectors: dict[str, Any],
        metadata: IndexMetadata,
    ) -> None:
        """Write a snapshot atomically (temp file + rename).

        Args:
            path: Snapshot file path
            store: Chunk table
            lexical: BM25 index
            vectors: Vector export (``dimension``, ``ids``, ``embeddings``,
                ``norms``)
            metadata: Index bookkeeping

        Raises:
            PersistenceError: If the file cannot be written
        """
        embeddings = np.ascontiguousarray(vectors["embeddings"], dtype=np.float32)
        document = {
            "format": FORMAT_TAG,
            "schema_version": str(CURRENT_SCHEMA),
            "created_at": datetime.now(UTC).isoformat(),
            "chunks": [chunk.to_record() for chunk in store.chunks()],
            "lexical": lexical.export(),
            "vectors": {**vectors, "embeddings": embeddings},
            "metadata": metadata.to_dict(),
        }

        try:
            payload = orjson.dumps(document, option=orjson.OPT_SERIALIZE_NUMPY)
        except TypeError as e:
            raise PersistenceError(f"Failed to serialize index: {e}") from e

        path.parent.mkdir(parents=True, exist_ok=True)

        # Atomic write: temp file + rename
        temp_file = path.with_name(path.name + ".tmp")
        try:
            with open(temp_file, "wb") as f:
                f.write(payload)
            temp_file.replace(path)
        except OSError as e:
            logger.error(f"Failed to save index snapshot to {path}: {e}")
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError(
                f"Failed to save index: {e}", context={"path": str(path)}
            ) from e

        logger.info(
            f"Saved index snapshot ({len(store)} chunks, "
            f"{len(vectors['ids'])} vectors) to {path}"
        )

    @staticmethod
    def load(path: Path) -> IndexState:
        """Read and verify a snapshot.

        Raises:
            PersistenceError: If the file does not exist or cannot be read
            IncompatibleVersionError: If the snapshot schema differs from the
                running engine's
            CorruptIndexError: If the data is unreadable, carries the wrong
                format tag, or violates an index invariant
        """
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except FileNotFoundError as e:
            raise PersistenceError(
                f"No index snapshot at {path}", context={"path": str(path)}
            ) from e
        except OSError as e:
            raise PersistenceError(
                f"Failed to read index snapshot: {e}", context={"path": str(path)}
            ) from e

        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise CorruptIndexError(
                f"Index snapshot is not readable: {e}", context={"path": str(path)}
            ) from e

        if not isinstance(data, dict) or data.get("format") != FORMAT_TAG:
            raise CorruptIndexError(
                "File is not a hybrid-code-search index snapshot",
                context={"path": str(path)},
            )

        _check_version(data.get("schema_version"), path)

        try:
            state = _build_state(data)
        except (CorruptIndexError, IncompatibleVersionError):
            raise
        except (
            KeyError,
            TypeError,
            ValueError,
            AttributeError,
            ValidationError,
            DimensionMismatchError,
        ) as e:
            raise CorruptIndexError(
                f"Index snapshot is malformed: {e}", context={"path": str(path)}
            ) from e

        logger.info(
            f"Loaded index snapshot ({len(state.store)} chunks, "
            f"{len(state.vectors)} vectors) from {path}"
        )
        return state


def _check_version(version: Any, path: Path) -> None:
    if not isinstance(version, str):
        raise CorruptIndexError(
            "Index snapshot has no schema version", context={"path": str(path)}
        )
    try:
        found = SchemaVersion(version)
    except ValueError as e:
        raise CorruptIndexError(
            f"Invalid schema version '{version}'", context={"path": str(path)}
        ) from e

    if not found.is_compatible_with(CURRENT_SCHEMA):
        raise IncompatibleVersionError(
            f"Index schema {found} is incompatible with {CURRENT_SCHEMA}; "
            f"rebuild the index",
            context={
                "path": str(path),
                "found": str(found),
                "expected": str(CURRENT_SCHEMA),
            },
        )


def _build_state(data: dict[str, Any]) -> IndexState:
    store = ChunkStore()
    for record in data["chunks"]:
        chunk = CodeChunk.model_validate(record)
        if chunk.id in store:
            raise CorruptIndexError(f"Duplicate chunk id {chunk.id} in snapshot")
        store.upsert(chunk)

    known_ids = set(store.ids())

    lexical = BM25Backend.from_export(data["lexical"])
    problems = lexical.find_inconsistencies(known_ids)
    if problems:
        raise CorruptIndexError(
            f"Lexical index is inconsistent: {problems[0]}",
            context={"problems": problems},
        )
    missing = known_ids.difference(lexical.document_ids())
    if missing:
        raise CorruptIndexError(
            f"{len(missing)} chunks have no lexical entry",
            context={"chunk_ids": sorted(missing)},
        )

    vectors = VectorsBackend.from_export(data["vectors"])
    unknown = [cid for cid in vectors.chunk_ids() if cid not in known_ids]
    if unknown:
        raise CorruptIndexError(
            f"{len(unknown)} vectors reference chunks not in the store",
            context={"chunk_ids": unknown},
        )

    metadata = IndexMetadata.from_dict(data.get("metadata") or {})
    return IndexState(store=store, lexical=lexical, vectors=vectors, metadata=metadata)
