"""
Session & cache management.

Two layers with different jobs:

* MatchSession rows are the durable record of what was decided for a
  (user, category, image) scan. A scan that reaches a final decision writes
  exactly one row; repeats read it back and are never recomputed.
* The result cache is a pure speed-up for repeated photos, keyed by
  (image hash, category). It can be evicted or bypassed at any time.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from visual_identify.cache import DecisionCache, encode_decision
from visual_identify.db import IdentifyDB
from visual_identify.errors import SessionNotFound
from visual_identify.models import AutoSelected, Decision, RETRY_DECISIONS, decision_from_dict

_LOGGER = logging.getLogger(__name__)

ALL_CATEGORIES = "all"


@dataclass(frozen=True)
class MatchSession:
    id: int
    user_id: str | None
    category: str
    image_hash: str
    decision: Decision
    best_score: float
    score_gap: float
    created_at: str

    @property
    def auto_selected_family_id(self) -> str | None:
        if isinstance(self.decision, AutoSelected):
            return self.decision.candidate.family_id
        return None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MatchSession":
        return cls(
            id=int(row["id"]),
            user_id=row["user_id"],
            category=row["category"],
            image_hash=row["image_hash"],
            decision=decision_from_dict(json.loads(row["decision_payload"])),
            best_score=float(row["best_score"]),
            score_gap=float(row["score_gap"]),
            created_at=row["created_at"],
        )


def session_category(category: str | None) -> str:
    return category or ALL_CATEGORIES


class SessionCacheManager:
    def __init__(self, db: IdentifyDB, cache: DecisionCache) -> None:
        self.db = db
        self.cache = cache

    def resolve(self, user_id: str | None, category: str | None, image_hash: str) -> MatchSession | None:
        row = self.db.find_session(user_id=user_id, category=session_category(category), image_hash=image_hash)
        if row is None:
            return None
        session = MatchSession.from_row(row)
        _LOGGER.info("Session hit %s for %s (%s)", session.id, image_hash[:16], session.decision.decision)
        return session

    def lookup_cached(self, image_hash: str, category: str | None) -> Decision | None:
        hit = self.cache.get(image_hash, category)
        if hit is None:
            return None
        decision, _ = hit
        _LOGGER.info("Cache hit for %s-%s", image_hash[:16], category or ALL_CATEGORIES)
        return decision

    def record(
        self,
        user_id: str | None,
        category: str | None,
        image_hash: str,
        decision: Decision,
        *,
        ttl_category: str | None = None,
        cache: bool = True,
    ) -> MatchSession | None:
        """
        Persist a final decision and cache it.

        Returns the surviving session, which is the pre-existing row when a
        concurrent identical scan won the insert. Blocked outcomes (a retry or
        manual brand entry is needed) are neither stored nor cached.
        """
        if decision.decision in RETRY_DECISIONS:
            return None

        payload = encode_decision(decision)
        top = decision.top_match
        row = self.db.insert_session(
            user_id=user_id,
            category=session_category(category),
            image_hash=image_hash,
            decision=decision.decision,
            decision_payload=payload,
            top_matches=[m.to_dict() for m in decision.top_matches],
            best_family_id=top.family_id if top else None,
            best_score=float(decision.best_score),
            score_gap=float(decision.score_gap),
        )
        session = MatchSession.from_row(row)
        if row["decision_payload"] != payload:
            _LOGGER.info("Concurrent scan already stored session %s; keeping it", session.id)

        if cache:
            self.cache.put(image_hash, category, session.decision, ttl_category=ttl_category)
        return session

    def get(self, session_id: int) -> MatchSession:
        row = self.db.get_session(session_id)
        if row is None:
            raise SessionNotFound(f"Match session {session_id} not found.")
        return MatchSession.from_row(row)
