from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from visual_identify.errors import FeedbackAlreadyRecorded

_SESSION_COLUMNS = """
    id, user_id, category, image_hash, decision, decision_payload, top_matches,
    best_family_id, best_score, score_gap, created_at
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session_row(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    data = dict(row)
    data["top_matches"] = json.loads(data["top_matches"] or "[]")
    return data


class IdentifyDB:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS match_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    category TEXT NOT NULL,
                    image_hash TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    decision_payload TEXT NOT NULL,
                    top_matches TEXT NOT NULL,
                    best_family_id TEXT,
                    best_score REAL NOT NULL,
                    score_gap REAL NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_match_sessions_scan
                    ON match_sessions(COALESCE(user_id, ''), category, image_hash);
                CREATE INDEX IF NOT EXISTS idx_match_sessions_category ON match_sessions(category);
                CREATE INDEX IF NOT EXISTS idx_match_sessions_created_at ON match_sessions(created_at);

                CREATE TABLE IF NOT EXISTS match_feedback (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL UNIQUE,
                    chosen_family_id TEXT NOT NULL,
                    was_auto_selected INTEGER NOT NULL,
                    auto_selected_family_id TEXT,
                    auto_selected_score REAL,
                    action TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES match_sessions(id) ON DELETE CASCADE
                );
                """
            )

    def find_session(self, *, user_id: str | None, category: str, image_hash: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM match_sessions
                WHERE COALESCE(user_id, '') = ? AND category = ? AND image_hash = ?
                """,
                (user_id or "", category, image_hash),
            ).fetchone()
        return _session_row(row)

    def insert_session(
        self,
        *,
        user_id: str | None,
        category: str,
        image_hash: str,
        decision: str,
        decision_payload: str,
        top_matches: list[dict[str, Any]],
        best_family_id: str | None,
        best_score: float,
        score_gap: float,
    ) -> dict[str, Any]:
        """Insert a session unless one already exists for the scan; return the surviving row."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO match_sessions (
                    user_id, category, image_hash, decision, decision_payload, top_matches,
                    best_family_id, best_score, score_gap, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
                """,
                (
                    user_id,
                    category,
                    image_hash,
                    decision,
                    decision_payload,
                    json.dumps(top_matches),
                    best_family_id,
                    best_score,
                    score_gap,
                    _utc_now(),
                ),
            )
            row = conn.execute(
                f"""
                SELECT {_SESSION_COLUMNS}
                FROM match_sessions
                WHERE COALESCE(user_id, '') = ? AND category = ? AND image_hash = ?
                """,
                (user_id or "", category, image_hash),
            ).fetchone()
        return _session_row(row)  # type: ignore[return-value]

    def get_session(self, session_id: int) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM match_sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
        return _session_row(row)

    def insert_feedback(
        self,
        *,
        session_id: int,
        chosen_family_id: str,
        was_auto_selected: bool,
        auto_selected_family_id: str | None,
        auto_selected_score: float | None,
        action: str,
    ) -> dict[str, Any]:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO match_feedback (
                        session_id, chosen_family_id, was_auto_selected,
                        auto_selected_family_id, auto_selected_score, action, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session_id,
                        chosen_family_id,
                        int(was_auto_selected),
                        auto_selected_family_id,
                        auto_selected_score,
                        action,
                        _utc_now(),
                    ),
                )
                row = conn.execute("SELECT * FROM match_feedback WHERE id = ?", (cursor.lastrowid,)).fetchone()
        except sqlite3.IntegrityError as exc:
            raise FeedbackAlreadyRecorded(f"Feedback already recorded for session {session_id}.") from exc
        data = dict(row)
        data["was_auto_selected"] = bool(data["was_auto_selected"])
        return data

    def get_feedback(self, session_id: int) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM match_feedback WHERE session_id = ?", (session_id,)).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["was_auto_selected"] = bool(data["was_auto_selected"])
        return data

    def stats(self, category: str | None = None) -> dict[str, Any]:
        where = "WHERE s.category = ?" if category else ""
        params: tuple[Any, ...] = (category,) if category else ()
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT
                  COUNT(*) AS session_count,
                  COALESCE(SUM(CASE WHEN s.decision = 'auto_selected' THEN 1 ELSE 0 END), 0) AS auto_selected_count,
                  COUNT(f.id) AS feedback_count,
                  COALESCE(SUM(CASE WHEN f.action = 'corrected' THEN 1 ELSE 0 END), 0) AS corrected_count
                FROM match_sessions s
                LEFT JOIN match_feedback f ON f.session_id = s.id
                {where}
                """,
                params,
            ).fetchone()
        counts = dict(row) if row else {}
        sessions = int(counts.get("session_count") or 0)
        feedback = int(counts.get("feedback_count") or 0)
        return {
            "session_count": sessions,
            "auto_selected_count": int(counts.get("auto_selected_count") or 0),
            "feedback_count": feedback,
            "corrected_count": int(counts.get("corrected_count") or 0),
            "auto_select_rate": (int(counts.get("auto_selected_count") or 0) * 100.0 / sessions) if sessions else 0.0,
            "correction_rate": (int(counts.get("corrected_count") or 0) * 100.0 / feedback) if feedback else 0.0,
        }
