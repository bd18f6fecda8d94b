"""
Score normalization and fusion for hybrid search.

Lexical and semantic scores are mapped into [0, 1] before fusion, so the
weighted sum needs no per-request max-normalization.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from taskmail.db.models import EntityType
from taskmail.retrieval.lexical_index import LexicalHit
from taskmail.retrieval.results import MatchKind, SearchResult

ResultKey = tuple[int, EntityType]

FULLTEXT_FLOOR = 0.5


def normalize_lexical(hit: LexicalHit, fuzzy_weight: float = 0.5) -> float:
    """
    Map a lexical hit to a score in [0, 1).

    Full-text ranks (already rank / (rank + 1)) land in [0.5, 1); trigram
    similarities are scaled by `fuzzy_weight` (at most 0.5), so a fuzzy-only
    match never outranks a full-text one.
    """
    rank = min(max(hit.rank, 0.0), 1.0)
    if hit.kind == "fulltext":
        return FULLTEXT_FLOOR + (1.0 - FULLTEXT_FLOOR) * min(rank, 0.999999)
    return fuzzy_weight * rank


def collect_best(scored: Iterable[tuple[ResultKey, float]]) -> dict[ResultKey, float]:
    """Keep the highest score per (entity_id, entity_type)."""
    best: dict[ResultKey, float] = {}
    for key, score in scored:
        if key not in best or score > best[key]:
            best[key] = score
    return best


def fuse_weighted_sum(
    lexical: Mapping[ResultKey, float],
    semantic: Mapping[ResultKey, float],
    lexical_weight: float = 0.7,
    semantic_weight: float = 0.3,
) -> list[SearchResult]:
    """
    Fuse both signals.

    Entities found by both sub-searches are `hybrid` with
    `lexical_weight * L + semantic_weight * S`; single-source entities keep
    their own score. Output is unsorted; see `rank_results`.
    """
    fused: list[SearchResult] = []
    for key in lexical.keys() | semantic.keys():
        lex = lexical.get(key)
        sem = semantic.get(key)
        kind: MatchKind
        if lex is not None and sem is not None:
            kind = "hybrid"
            score = lexical_weight * lex + semantic_weight * sem
        elif lex is not None:
            kind = "lexical"
            score = lex
        else:
            kind = "semantic"
            score = float(sem or 0.0)
        entity_id, entity_type = key
        fused.append(
            SearchResult(
                entity_id=entity_id,
                entity_type=entity_type,
                score=score,
                match_kind=kind,
                lexical_score=lex,
                semantic_score=sem,
            )
        )
    return fused


def rank_results(results: Iterable[SearchResult], limit: int) -> list[SearchResult]:
    """Total order: score desc, entity id asc, entity type; then truncate."""
    ordered = sorted(
        results,
        key=lambda r: (-r.score, r.entity_id, EntityType(r.entity_type).value),
    )
    return ordered[: max(0, limit)]
