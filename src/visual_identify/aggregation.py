"""
Candidate aggregation and ranking.

Raw nearest-neighbour hits are grouped per (category, family) into
MatchCandidates, which are then put into a deterministic total order.
Hits from several categories are pooled before ranking, so a lookalike in
another category competes on equal terms with same-category families.
"""

from __future__ import annotations

import logging
from functools import cmp_to_key
from typing import Iterable

from visual_identify.models import ImageHit, MatchCandidate

_LOGGER = logging.getLogger(__name__)

TOP_N_RESULTS = 8
TIE_EPSILON = 0.01


def aggregate_hits(hits: Iterable[ImageHit]) -> list[MatchCandidate]:
    """Group hits by (category, family_id) and score each group.

    The returned list is in first-seen order; use rank_candidates() to order it.
    """
    groups: dict[tuple[str, str], list[ImageHit]] = {}
    for hit in hits:
        groups.setdefault((hit.category, hit.family_id), []).append(hit)

    candidates: list[MatchCandidate] = []
    for (category, family_id), group in groups.items():
        ordered = sorted(group, key=lambda h: h.similarity, reverse=True)
        best = ordered[0]
        top3 = [max(0.0, min(1.0, float(h.similarity))) for h in ordered[:3]]
        best_score = top3[0]
        avg_top3 = sum(top3) / len(top3)
        candidates.append(
            MatchCandidate(
                family_id=family_id,
                category=category,
                brand=best.brand,
                family_name=best.family_name,
                image_url=best.image_path,
                best_score=best_score,
                # float summation may land a hair above the max
                avg_top3_score=min(avg_top3, best_score),
                support_count=len(group),
            )
        )

    _LOGGER.debug("Aggregated %d hits into %d candidates", sum(len(g) for g in groups.values()), len(candidates))
    return candidates


def _comparator(epsilon: float):
    def compare(a: MatchCandidate, b: MatchCandidate) -> int:
        if abs(a.best_score - b.best_score) > epsilon:
            return -1 if a.best_score > b.best_score else 1
        if abs(a.avg_top3_score - b.avg_top3_score) > epsilon:
            return -1 if a.avg_top3_score > b.avg_top3_score else 1
        if a.support_count != b.support_count:
            return -1 if a.support_count > b.support_count else 1
        if a.best_score != b.best_score:
            return -1 if a.best_score > b.best_score else 1
        return 0

    return compare


def rank_candidates(
    candidates: Iterable[MatchCandidate],
    *,
    limit: int | None = TOP_N_RESULTS,
    epsilon: float = TIE_EPSILON,
) -> tuple[MatchCandidate, ...]:
    """
    Order candidates by best score, then mean of top-3 scores, then support.

    Scores within `epsilon` of each other count as tied and fall through to
    the next key. Candidates are first put into (category, family_id) order
    so the result never depends on the order hits arrived in.
    """
    canonical = sorted(candidates, key=lambda c: (c.category, c.family_id))
    ranked = sorted(canonical, key=cmp_to_key(_comparator(epsilon)))
    if limit is not None:
        ranked = ranked[:limit]
    return tuple(ranked)


def score_gap(ranked: tuple[MatchCandidate, ...] | list[MatchCandidate]) -> tuple[float, float]:
    """Return (best, best - second) for a ranked list; missing entries count as 0."""
    best = ranked[0].best_score if ranked else 0.0
    second = ranked[1].best_score if len(ranked) > 1 else 0.0
    return best, best - second
