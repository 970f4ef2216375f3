from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable

import numpy as np

from visual_identify.aggregation import aggregate_hits, rank_candidates
from visual_identify.cache import DecisionCache, InMemoryResultCache, ResultCache
from visual_identify.config import IdentifyConfig
from visual_identify.db import IdentifyDB
from visual_identify.decision import decide, library_band
from visual_identify.disambiguation import (
    VERIFY_REQUIRED,
    ModelSelectionRule,
    disambiguate,
    load_rules,
    needs_verification,
)
from visual_identify.embeddings import EmbeddingClient, content_hash
from visual_identify.errors import EmbeddingFailure, IndexQueryFailure, OCRFailure
from visual_identify.feedback import Feedback, FeedbackRecorder, FeedbackSink
from visual_identify.library import CategoryIndex
from visual_identify.models import (
    LIBRARY_BUILDING,
    Decision,
    ImageHit,
    ModelSelectionRequired,
    VisionSignals,
)
from visual_identify.sessions import MatchSession, SessionCacheManager
from visual_identify.vision import VisionClient

_LOGGER = logging.getLogger(__name__)
_CALL_EXECUTOR = ThreadPoolExecutor(max_workers=16, thread_name_prefix="identify-call")

SOURCE_SESSION = "session"
SOURCE_CACHE = "cache"
SOURCE_COMPUTED = "computed"


@dataclass(frozen=True)
class IdentifyResult:
    decision: Decision
    source: str
    image_hash: str
    category: str | None
    session_id: int | None = None
    vision: VisionSignals | None = None
    processing_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "source": self.source,
            "image_hash": self.image_hash,
            "category": self.category,
            "processing_ms": self.processing_ms,
            "vision": None
            if self.vision is None
            else {
                "brand": self.vision.brand_text,
                "model": self.vision.model_text,
                "attributes": dict(self.vision.attributes),
                "confident": self.vision.confident,
            },
            **self.decision.to_dict(),
        }


class IdentificationService:
    def __init__(
        self,
        embedder: EmbeddingClient,
        index: CategoryIndex,
        vision: VisionClient | None = None,
        *,
        config: IdentifyConfig | None = None,
        db: IdentifyDB | None = None,
        cache: ResultCache | None = None,
        rules: Iterable[ModelSelectionRule] | None = None,
        feedback_sink: FeedbackSink | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.config = config or IdentifyConfig.from_env()
        self.embedder = embedder
        self.index = index
        self.vision = vision
        self.db = db or IdentifyDB(self.config.db_path)
        self.sessions = SessionCacheManager(self.db, DecisionCache(cache or InMemoryResultCache()))
        self.feedback = FeedbackRecorder(self.db, self.sessions, feedback_sink)
        self.rules = list(rules) if rules is not None else load_rules(self.config.rules_path)
        self._executor = executor or _CALL_EXECUTOR

    def _run_with_timeout(self, operation: str, fn: Callable[[], Any], timeout_seconds: float, error_cls: type):
        safe_timeout = max(0.1, float(timeout_seconds))
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=safe_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise error_cls(f"{operation} timed out after {safe_timeout:g}s.") from exc
        except error_cls:
            raise
        except Exception as exc:
            raise error_cls(f"{operation} failed: {exc}") from exc

    def _normalize_category(self, category: str | None) -> str | None:
        if category is None:
            return None
        cleaned = category.strip().lower()
        if not cleaned:
            return None
        if cleaned not in self.index.categories():
            raise ValueError(f"Unknown category: {category!r}")
        return cleaned

    @staticmethod
    def _remaining_timeout(deadline: float) -> float:
        return max(0.0, deadline - time.monotonic())

    def _search_categories(self, categories: list[str], vector: np.ndarray, k: int) -> list[ImageHit]:
        futures = [(cat, self._executor.submit(self.index.search, cat, vector, k)) for cat in categories]
        deadline = time.monotonic() + self.config.index_timeout_seconds
        hits: list[ImageHit] = []
        # Collect in category order so the pooled snapshot never depends on completion order.
        for cat, future in futures:
            try:
                hits.extend(future.result(timeout=self._remaining_timeout(deadline)))
            except FutureTimeoutError:
                future.cancel()
                _LOGGER.warning("Index query for %s timed out; treating as zero hits.", cat)
            except IndexQueryFailure as exc:
                _LOGGER.warning("Index query failed (%s); treating as zero hits.", exc)
            except Exception:
                _LOGGER.warning("Index query for %s failed; treating as zero hits.", cat, exc_info=True)
        return hits

    def _collect_signals(
        self,
        speculative: Future | None,
        image_bytes: bytes,
        category: str | None,
    ) -> VisionSignals | None:
        if speculative is not None:
            try:
                return speculative.result(timeout=self.config.ocr_timeout_seconds)
            except FutureTimeoutError:
                speculative.cancel()
                _LOGGER.warning("Speculative OCR timed out.")
                return None
            except Exception:
                _LOGGER.warning("Speculative OCR failed.", exc_info=True)
                return None

        if self.vision is None:
            return None
        vision = self.vision
        try:
            return self._run_with_timeout(
                "Vision request",
                lambda: vision.extract_signals(image_bytes, category),
                self.config.ocr_timeout_seconds,
                OCRFailure,
            )
        except OCRFailure as exc:
            _LOGGER.warning("OCR unavailable: %s", exc)
            return None

    def _readiness_count(self, readiness_category: str | None) -> int:
        if readiness_category:
            return self.index.image_count(readiness_category)
        return sum(self.index.image_count(cat) for cat in self.index.categories())

    def identify(
        self,
        image_bytes: bytes,
        category: str | None = None,
        user_id: str | None = None,
    ) -> IdentifyResult:
        """
        Identify the item in `image_bytes`.

        Only EmbeddingFailure (and bad input) escapes; every other degraded
        path ends in a Decision the caller can act on.
        """
        if not image_bytes:
            raise ValueError("Image payload is empty.")
        start = time.monotonic()
        cat = self._normalize_category(category)
        image_hash = content_hash(image_bytes)

        def _elapsed() -> int:
            return int(round((time.monotonic() - start) * 1000))

        session = self.sessions.resolve(user_id, cat, image_hash)
        if session is not None:
            return IdentifyResult(session.decision, SOURCE_SESSION, image_hash, cat, session.id, None, _elapsed())

        cached = self.sessions.lookup_cached(image_hash, cat)
        if cached is not None:
            stored = self.sessions.record(user_id, cat, image_hash, cached, cache=False)
            return IdentifyResult(
                stored.decision if stored else cached,
                SOURCE_CACHE,
                image_hash,
                cat,
                stored.id if stored else None,
                None,
                _elapsed(),
            )

        # OCR does not depend on the embedding, so start it now when it will almost surely be needed.
        speculative: Future | None = None
        if cat is not None and cat in self.config.text_confirmation_categories and self.vision is not None:
            speculative = self._executor.submit(self.vision.extract_signals, image_bytes, cat)

        try:
            embedding = self._run_with_timeout(
                "Embedding request",
                lambda: self.embedder.embed(image_bytes),
                self.config.embed_timeout_seconds,
                EmbeddingFailure,
            )
        except EmbeddingFailure:
            if speculative is not None:
                speculative.cancel()
            _LOGGER.warning("Embedding failed for %s; scan aborted.", image_hash[:16])
            raise

        categories = [cat] if cat else self.index.categories()
        k = self.config.top_k_images if cat else self.config.cross_category_k
        hits = self._search_categories(categories, embedding.vector, k)

        pool = rank_candidates(aggregate_hits(hits), limit=None, epsilon=self.config.tie_epsilon)
        top_matches = pool[: self.config.top_n_results]
        readiness_category = cat or (pool[0].category if pool else None)
        image_count = self._readiness_count(readiness_category)

        decision = decide(top_matches, image_count, self.config)
        signals: VisionSignals | None = None
        mode = needs_verification(top_matches, self.config) if decision.decision != LIBRARY_BUILDING else None
        if mode is not None:
            signals = self._collect_signals(speculative, image_bytes, readiness_category)
            outcome = disambiguate(
                pool,
                decision,
                signals,
                required=mode == VERIFY_REQUIRED,
                image_count=image_count,
                config=self.config,
                rules=self.rules,
            )
            decision = outcome.decision
        elif speculative is not None:
            speculative.cancel()

        _LOGGER.info(
            "Scan %s (%s): %d hits, %d candidates -> %s (best=%.3f gap=%.3f)",
            image_hash[:16],
            cat or "all",
            len(hits),
            len(pool),
            decision.decision,
            decision.best_score,
            decision.score_gap,
        )

        stored = self.sessions.record(user_id, cat, image_hash, decision, ttl_category=readiness_category)
        return IdentifyResult(
            stored.decision if stored else decision,
            SOURCE_COMPUTED,
            image_hash,
            cat,
            stored.id if stored else None,
            signals,
            _elapsed(),
        )

    def get_session(self, session_id: int) -> MatchSession:
        return self.sessions.get(session_id)

    def record_feedback(self, session_id: int, chosen_family_id: str) -> Feedback:
        return self.feedback.record(session_id, chosen_family_id)

    def select_model(self, session_id: int, family_id: str) -> Feedback:
        """Resolve a pending model selection with the user's pick."""
        session = self.sessions.get(session_id)
        decision = session.decision
        if not isinstance(decision, ModelSelectionRequired):
            raise ValueError(f"Session {session_id} is not waiting for a model selection.")
        if family_id not in {c.family_id for c in decision.candidates}:
            raise ValueError(f"Family {family_id!r} was not offered for session {session_id}.")
        return self.feedback.record(session_id, family_id)

    def stats(self, category: str | None = None) -> dict[str, Any]:
        details = self.db.stats(category)
        categories = [category] if category else self.index.categories()
        details["library"] = {
            cat: {
                "image_count": self.index.image_count(cat),
                "band": library_band(self.index.image_count(cat), self.config),
            }
            for cat in categories
        }
        details["vision_enabled"] = self.vision is not None
        return details
