from __future__ import annotations

from typing import Sequence

from visual_identify.aggregation import score_gap
from visual_identify.config import IdentifyConfig
from visual_identify.models import (
    AutoSelected,
    Decision,
    LibraryBuilding,
    MatchCandidate,
    NoConfidentMatch,
    UserRequired,
)

BAND_BUILDING = "building"
BAND_LIMITED = "limited"
BAND_FULL = "full"


def library_band(image_count: int, config: IdentifyConfig | None = None) -> str:
    cfg = config or IdentifyConfig()
    if image_count < cfg.library_building_threshold:
        return BAND_BUILDING
    if image_count < cfg.library_limited_threshold:
        return BAND_LIMITED
    return BAND_FULL


def decide(
    ranked: Sequence[MatchCandidate],
    image_count: int,
    config: IdentifyConfig | None = None,
    *,
    brand_confirmed: bool = False,
) -> Decision:
    """
    Apply the threshold policy to a ranked candidate list.

    Rules are evaluated in order and the first one that fires wins:
    readiness gate, high-score auto-select, medium-score auto-select (full
    libraries only, needs both a gap to the runner-up and enough supporting
    images), user pick, no confident match.
    """
    cfg = config or IdentifyConfig()
    top_matches = tuple(ranked)
    best, gap = score_gap(top_matches)
    band = library_band(image_count, cfg)

    if band == BAND_BUILDING:
        return LibraryBuilding(
            image_count=image_count,
            threshold=cfg.library_building_threshold,
            top_matches=top_matches,
            best_score=best,
            score_gap=gap,
        )

    if not top_matches:
        return NoConfidentMatch(reason="no_candidates", brand_confirmed=brand_confirmed)

    top = top_matches[0]
    if best >= cfg.high_threshold:
        return AutoSelected(
            candidate=top,
            top_matches=top_matches,
            best_score=best,
            score_gap=gap,
            brand_confirmed=brand_confirmed,
        )

    if (
        band == BAND_FULL
        and best >= cfg.medium_threshold
        and gap >= cfg.min_gap
        and top.support_count >= cfg.min_support
    ):
        return AutoSelected(
            candidate=top,
            top_matches=top_matches,
            best_score=best,
            score_gap=gap,
            brand_confirmed=brand_confirmed,
        )

    if best >= cfg.user_required_threshold:
        return UserRequired(
            top_matches=top_matches,
            best_score=best,
            score_gap=gap,
            brand_confirmed=brand_confirmed,
        )

    return NoConfidentMatch(
        reason="low_similarity",
        top_matches=top_matches,
        best_score=best,
        score_gap=gap,
        brand_confirmed=brand_confirmed,
    )
