from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from visual_identify.db import IdentifyDB
from visual_identify.sessions import SessionCacheManager

_LOGGER = logging.getLogger(__name__)

ACTION_CONFIRMED = "confirmed"
ACTION_CORRECTED = "corrected"


class FeedbackSink(Protocol):
    """Downstream library-learning system; write-only from here."""

    def record_feedback(self, session_id: int, chosen_family_id: str, was_auto_selected: bool) -> None:
        ...


@dataclass(frozen=True)
class Feedback:
    id: int
    session_id: int
    chosen_family_id: str
    was_auto_selected: bool
    action: str
    auto_selected_family_id: str | None
    auto_selected_score: float | None
    created_at: str


class FeedbackRecorder:
    def __init__(self, db: IdentifyDB, sessions: SessionCacheManager, sink: FeedbackSink | None = None) -> None:
        self.db = db
        self.sessions = sessions
        self.sink = sink

    def record(self, session_id: int, chosen_family_id: str) -> Feedback:
        """
        Store the user's resolution of a session, once.

        A pick counts as a confirmation only when the session auto-selected
        that very family; anything else (including a pick from a user-required
        or model-selection list) is a correction.
        """
        chosen = str(chosen_family_id).strip()
        if not chosen:
            raise ValueError("chosen_family_id must not be empty.")

        session = self.sessions.get(session_id)
        auto_family = session.auto_selected_family_id
        was_auto_selected = auto_family is not None and auto_family == chosen
        action = ACTION_CONFIRMED if was_auto_selected else ACTION_CORRECTED

        row = self.db.insert_feedback(
            session_id=session.id,
            chosen_family_id=chosen,
            was_auto_selected=was_auto_selected,
            auto_selected_family_id=auto_family,
            auto_selected_score=session.best_score if auto_family else None,
            action=action,
        )
        _LOGGER.info("Feedback for session %s: %s %s", session.id, action, chosen)

        if self.sink is not None:
            try:
                self.sink.record_feedback(session.id, chosen, was_auto_selected)
            except Exception:
                _LOGGER.warning("Feedback sink rejected session %s; row kept locally.", session.id, exc_info=True)

        return Feedback(
            id=int(row["id"]),
            session_id=int(row["session_id"]),
            chosen_family_id=row["chosen_family_id"],
            was_auto_selected=bool(row["was_auto_selected"]),
            action=row["action"],
            auto_selected_family_id=row["auto_selected_family_id"],
            auto_selected_score=row["auto_selected_score"],
            created_at=row["created_at"],
        )
