"""
Brand/model disambiguation.

Visual similarity cannot separate same-brand variants that differ only in
printed text, or product lines that are structurally identical from the
front. When a scan needs verification, the OCR/vision signals are used to
re-filter the candidate pool to the brand actually printed on the item and,
where several models of that brand remain plausible, to hand the choice back
to the user.

Terminal states:
    resolved         the (possibly re-filtered) top candidate is accepted as the
                     identity, unless the library is still building
    blocked          no usable brand signal, or the brand has no families in
                     the library; the caller must retry or enter it manually
    model_selection  2..5 same-brand families are offered for the user to pick
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

from visual_identify.aggregation import rank_candidates, score_gap
from visual_identify.config import IdentifyConfig
from visual_identify.decision import BAND_BUILDING, decide, library_band
from visual_identify.models import (
    AutoSelected,
    Blocked,
    Decision,
    MatchCandidate,
    ModelCandidate,
    ModelSelectionRequired,
    VisionSignals,
)

_LOGGER = logging.getLogger(__name__)

VERIFY_REQUIRED = "required"
VERIFY_OPPORTUNISTIC = "opportunistic"

STATE_RESOLVED = "resolved"
STATE_BLOCKED = "blocked"
STATE_MODEL_SELECTION = "model_selection"
STATE_SKIPPED = "skipped"

RULE_FORCE_MODEL_SELECTION = "force_model_selection"


@dataclass(frozen=True)
class ModelSelectionRule:
    """Families of one brand that cannot be told apart from a photo."""

    brand: str
    family_ids: frozenset[str]
    rule: str = RULE_FORCE_MODEL_SELECTION

    @property
    def forces_selection(self) -> bool:
        return self.rule == RULE_FORCE_MODEL_SELECTION

    def applies_to(self, brand: str | None, family_id: str) -> bool:
        return self.forces_selection and brands_match(self.brand, brand) and family_id in self.family_ids

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ModelSelectionRule":
        family_ids = payload.get("family_ids") or []
        if not payload.get("brand") or not family_ids:
            raise ValueError("Model selection rule needs a brand and at least one family id.")
        return cls(
            brand=str(payload["brand"]),
            family_ids=frozenset(str(fid) for fid in family_ids),
            rule=str(payload.get("rule", RULE_FORCE_MODEL_SELECTION)),
        )


def load_rules(path: Path | None) -> list[ModelSelectionRule]:
    if path is None or not path.exists():
        return []
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of rules.")
    rules = [ModelSelectionRule.from_dict(item) for item in raw]
    _LOGGER.info("Loaded %d model selection rules from %s", len(rules), path)
    return rules


@dataclass(frozen=True)
class DisambiguationOutcome:
    state: str
    decision: Decision
    ranked: tuple[MatchCandidate, ...]
    detected_brand: str | None = None


def _normalize_brand(value: str | None) -> str:
    return re.sub(r"[^a-z0-9 ]", "", str(value or "").lower()).strip()


def brands_match(a: str | None, b: str | None) -> bool:
    left = _normalize_brand(a)
    right = _normalize_brand(b)
    if not left or not right:
        return False
    return left in right or right in left


def needs_verification(ranked: Sequence[MatchCandidate], config: IdentifyConfig) -> str | None:
    if not ranked:
        return None
    if ranked[0].category.lower() in config.text_confirmation_categories:
        return VERIFY_REQUIRED
    if len(ranked) > 1 and ranked[0].best_score - ranked[1].best_score < config.verification_gap:
        return VERIFY_OPPORTUNISTIC
    return None


def brand_alternatives(pool: Sequence[MatchCandidate], *, window: int = 10, limit: int = 3) -> tuple[str, ...]:
    seen: list[str] = []
    for candidate in pool[:window]:
        brand = (candidate.brand or "").strip()
        if brand and brand not in seen:
            seen.append(brand)
    return tuple(seen[:limit])


def _blocked(
    reason: str,
    pool: tuple[MatchCandidate, ...],
    config: IdentifyConfig,
    detected_brand: str | None = None,
) -> DisambiguationOutcome:
    top_matches = pool[: config.top_n_results]
    best, gap = score_gap(top_matches)
    decision = Blocked(
        reason=reason,
        detected_brand=detected_brand,
        brand_alternatives=brand_alternatives(pool),
        top_matches=top_matches,
        best_score=best,
        score_gap=gap,
    )
    return DisambiguationOutcome(STATE_BLOCKED, decision, pool, detected_brand)


def _model_candidates(
    same_brand: list[MatchCandidate],
    forced: list[MatchCandidate],
    config: IdentifyConfig,
) -> list[MatchCandidate]:
    chosen = [c for c in same_brand if c.best_score >= config.candidate_threshold][: config.max_model_candidates]
    if len(chosen) < config.min_model_candidates:
        chosen = same_brand[: config.min_model_candidates]

    for member in forced:
        if member not in chosen:
            chosen.append(member)

    # Trim from the bottom, never dropping a forced sibling.
    while len(chosen) > config.max_model_candidates:
        for idx in range(len(chosen) - 1, 0, -1):
            if chosen[idx] not in forced:
                del chosen[idx]
                break
        else:
            del chosen[-1]
    return chosen


def disambiguate(
    pool: Sequence[MatchCandidate],
    engine_decision: Decision,
    signals: VisionSignals | None,
    *,
    required: bool,
    image_count: int,
    config: IdentifyConfig | None = None,
    rules: Iterable[ModelSelectionRule] = (),
) -> DisambiguationOutcome:
    """
    Run the brand/model state machine over the full ranked candidate pool.

    `signals` is None when the OCR call failed or timed out. With
    `required=False` a missing brand leaves `engine_decision` untouched;
    with `required=True` it is a hard stop.
    """
    cfg = config or IdentifyConfig()
    ranked_pool = tuple(pool)
    if not ranked_pool:
        return DisambiguationOutcome(STATE_SKIPPED, engine_decision, ranked_pool)

    if signals is None or not signals.has_brand:
        reason = "ocr_unavailable" if signals is None else "brand_unreadable"
        if required:
            _LOGGER.info("Disambiguation blocked: %s", reason)
            return _blocked(reason, ranked_pool, cfg)
        return DisambiguationOutcome(STATE_SKIPPED, engine_decision, ranked_pool)

    brand = str(signals.brand_text).strip()
    working = ranked_pool
    if not brands_match(brand, working[0].brand):
        filtered = [c for c in ranked_pool if brands_match(brand, c.brand)]
        if not filtered:
            _LOGGER.info("OCR brand %r has no families among %d candidates", brand, len(ranked_pool))
            return _blocked("brand_not_in_library", ranked_pool, cfg, detected_brand=brand)
        working = rank_candidates(filtered, limit=None, epsilon=cfg.tie_epsilon)
        _LOGGER.info(
            "Brand mismatch: OCR %r vs top %r, re-ranked %d same-brand candidates",
            brand,
            ranked_pool[0].brand,
            len(working),
        )

    top = working[0]
    same_brand = [c for c in working if brands_match(brand, c.brand)]
    matching_rules = [rule for rule in rules if rule.applies_to(brand, top.family_id)]
    forced: list[MatchCandidate] = []
    for rule in matching_rules:
        forced.extend(c for c in same_brand if c.family_id in rule.family_ids and c not in forced)

    close_alternative = len(same_brand) > 1 and top.best_score - same_brand[1].best_score < cfg.model_selection_gap
    if close_alternative or matching_rules:
        chosen = _model_candidates(same_brand, forced, cfg)
        if len(chosen) >= cfg.min_model_candidates:
            display_brand = top.brand or brand
            top_matches = working[: cfg.top_n_results]
            best, gap = score_gap(top_matches)
            decision = ModelSelectionRequired(
                brand=display_brand,
                candidates=tuple(
                    ModelCandidate(
                        family_id=c.family_id,
                        family_name=c.family_name,
                        display_name=f"{display_brand} {c.family_name or ''}".strip(),
                        score=c.best_score,
                    )
                    for c in chosen
                ),
                top_matches=top_matches,
                best_score=best,
                score_gap=gap,
            )
            _LOGGER.info(
                "Model selection needed for %s: %d candidates (rule=%s)",
                display_brand,
                len(chosen),
                bool(matching_rules),
            )
            return DisambiguationOutcome(STATE_MODEL_SELECTION, decision, working, brand)

    top_matches = working[: cfg.top_n_results]
    if library_band(image_count, cfg) == BAND_BUILDING:
        decision = decide(top_matches, image_count, cfg, brand_confirmed=True)
        return DisambiguationOutcome(STATE_RESOLVED, decision, working, brand)

    # The printed brand settles the identity; the score thresholds no longer apply.
    best, gap = score_gap(top_matches)
    decision = AutoSelected(
        candidate=top,
        top_matches=top_matches,
        best_score=best,
        score_gap=gap,
        brand_confirmed=True,
    )
    return DisambiguationOutcome(STATE_RESOLVED, decision, working, brand)
