"""Authoritative chunk table: chunk id -> latest chunk."""

from collections.abc import Iterable, Iterator

from .models import ChangeKind, CodeChunk

TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at"})


def defaulted_timestamps(chunk: CodeChunk) -> set[str]:
    """Timestamp fields the record left out and validation filled with now."""
    return set(TIMESTAMP_FIELDS - chunk.model_fields_set)


class ChunkStore:
    """Latest content and metadata per chunk id.

    Change detection is hash based: a chunk whose ``hash`` matches the stored
    one never needs re-embedding, even if its metadata moved. Timestamps a
    record did not carry take no part in the comparison.
    """

    def __init__(self) -> None:
        self._chunks: dict[str, CodeChunk] = {}

    def classify(self, chunk: CodeChunk) -> ChangeKind:
        """Return what ``upsert`` would report, without storing."""
        existing = self._chunks.get(chunk.id)
        if existing is None:
            return ChangeKind.ADDED
        if existing.hash != chunk.hash:
            return ChangeKind.UPDATED
        ignored = defaulted_timestamps(chunk)
        if existing.model_dump(exclude=ignored) == chunk.model_dump(exclude=ignored):
            return ChangeKind.UNCHANGED
        return ChangeKind.METADATA_CHANGED

    def upsert(self, chunk: CodeChunk) -> ChangeKind:
        change = self.classify(chunk)
        if change is ChangeKind.UNCHANGED:
            return change
        existing = self._chunks.get(chunk.id)
        if existing is not None:
            chunk = self._keep_created_at(existing, chunk)
        self._chunks[chunk.id] = chunk
        return change

    @staticmethod
    def _keep_created_at(existing: CodeChunk, chunk: CodeChunk) -> CodeChunk:
        if "created_at" not in defaulted_timestamps(chunk):
            return chunk
        if existing.created_at > chunk.updated_at:
            return chunk
        return chunk.model_copy(update={"created_at": existing.created_at})

    def remove(self, chunk_id: str) -> bool:
        return self._chunks.pop(chunk_id, None) is not None

    def get(self, chunk_id: str) -> CodeChunk | None:
        return self._chunks.get(chunk_id)

    def ids_not_in(self, present_ids: Iterable[str]) -> list[str]:
        """Stored ids missing from ``present_ids`` (reconciliation deletions)."""
        present = set(present_ids)
        return [cid for cid in self._chunks if cid not in present]

    def ids(self) -> list[str]:
        return list(self._chunks)

    def chunks(self) -> list[CodeChunk]:
        return list(self._chunks.values())

    def clear(self) -> None:
        self._chunks.clear()

    def __len__(self) -> int:
        return len(self._chunks)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._chunks

    def __iter__(self) -> Iterator[CodeChunk]:
        return iter(list(self._chunks.values()))
