"""Fusion of lexical and vector result lists into one ranking.

Default rule is normalized weighted-sum fusion:

1. Min-max normalize each list's scores independently into [0, 1]. A list
   with a single element or zero score range normalizes to all 1.0.
2. ``fused = lexical_weight * norm_lex + vector_weight * norm_vec`` where a
   chunk missing from one list contributes 0 for that term.
3. Sort by fused score descending, tie-break by chunk id ascending.

The result depends only on the two raw score lists and the weights. A
weighted Reciprocal Rank Fusion strategy is available as an alternative.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from ..config.defaults import (
    DEFAULT_LEXICAL_WEIGHT,
    DEFAULT_VECTOR_WEIGHT,
    FUSION_RRF,
    FUSION_STRATEGIES,
    FUSION_WEIGHTED,
    RRF_K,
)
from .exceptions import ConfigError

ScoredIds = Sequence[tuple[str, float]]


@dataclass(frozen=True)
class FusedHit:
    """One fused candidate with its raw sub-scores."""

    chunk_id: str
    score: float
    lexical_score: float | None = None
    vector_score: float | None = None


def normalize_scores(hits: ScoredIds) -> dict[str, float]:
    """Min-max normalize a score list into [0, 1].

    Single-element lists and lists with zero score range map every entry to
    1.0. Duplicate ids keep their best raw score.
    """
    best = _best_raw(hits)
    if not best:
        return {}

    low = min(best.values())
    high = max(best.values())
    span = high - low
    if len(best) == 1 or span <= 0:
        return dict.fromkeys(best, 1.0)
    return {cid: (score - low) / span for cid, score in best.items()}


class FusionRanker:
    """Merges two independently-scaled ranked lists."""

    def __init__(
        self,
        lexical_weight: float = DEFAULT_LEXICAL_WEIGHT,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        strategy: str = FUSION_WEIGHTED,
        rrf_k: int = RRF_K,
    ) -> None:
        if strategy not in FUSION_STRATEGIES:
            raise ConfigError(f"Unknown fusion strategy '{strategy}'")
        if lexical_weight < 0 or vector_weight < 0:
            raise ConfigError("Fusion weights must be non-negative")
        self.lexical_weight = lexical_weight
        self.vector_weight = vector_weight
        self.strategy = strategy
        self.rrf_k = rrf_k

    def fuse(self, lexical: ScoredIds, vector: ScoredIds) -> list[FusedHit]:
        """Fuse lexical (BM25) and vector (cosine) results.

        Args:
            lexical: (chunk_id, bm25_score) pairs
            vector: (chunk_id, cosine_similarity) pairs

        Returns:
            Fused hits sorted by score descending, chunk id ascending
        """
        if self.strategy == FUSION_RRF:
            fused = self._rrf_scores(lexical, vector)
        else:
            fused = self._weighted_scores(lexical, vector)

        raw_lex = _best_raw(lexical)
        raw_vec = _best_raw(vector)
        hits = [
            FusedHit(
                chunk_id=cid,
                score=score,
                lexical_score=raw_lex.get(cid),
                vector_score=raw_vec.get(cid),
            )
            for cid, score in fused.items()
        ]
        hits.sort(key=lambda h: (-h.score, h.chunk_id))
        return hits

    def lexical_only(self, lexical: ScoredIds) -> list[FusedHit]:
        """Degraded ranking: normalized BM25 score is the fused score."""
        raw_lex = _best_raw(lexical)
        hits = [
            FusedHit(chunk_id=cid, score=score, lexical_score=raw_lex[cid])
            for cid, score in normalize_scores(lexical).items()
        ]
        hits.sort(key=lambda h: (-h.score, h.chunk_id))
        return hits

    def _weighted_scores(
        self, lexical: ScoredIds, vector: ScoredIds
    ) -> dict[str, float]:
        norm_lex = normalize_scores(lexical)
        norm_vec = normalize_scores(vector)
        return {
            cid: self.lexical_weight * norm_lex.get(cid, 0.0)
            + self.vector_weight * norm_vec.get(cid, 0.0)
            for cid in norm_lex.keys() | norm_vec.keys()
        }

    def _rrf_scores(self, lexical: ScoredIds, vector: ScoredIds) -> dict[str, float]:
        # RRF formula: score(d) = sum(w_i / (k + rank_i)) over retrieval methods
        # Ranks come from each list re-sorted deterministically.
        scores: dict[str, float] = {}
        for weight, hits in (
            (self.lexical_weight, lexical),
            (self.vector_weight, vector),
        ):
            ordered = sorted(_best_raw(hits).items(), key=lambda kv: (-kv[1], kv[0]))
            for rank, (cid, _) in enumerate(ordered, 1):
                scores[cid] = scores.get(cid, 0.0) + weight / (self.rrf_k + rank)

        # Normalize RRF scores to 0.0-1.0 range for consistent display
        max_score = max(scores.values(), default=0.0)
        if max_score > 0:
            scores = {cid: s / max_score for cid, s in scores.items()}
        return scores


def _best_raw(hits: ScoredIds) -> dict[str, float]:
    best: dict[str, float] = {}
    for chunk_id, score in hits:
        if chunk_id not in best or score > best[chunk_id]:
            best[chunk_id] = score
    return best
