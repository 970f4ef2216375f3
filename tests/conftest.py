"""Shared fakes and fixtures for identification tests."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
import pytest

from visual_identify.cache import InMemoryResultCache
from visual_identify.config import IdentifyConfig
from visual_identify.db import IdentifyDB
from visual_identify.embeddings import EmbeddingResult, content_hash
from visual_identify.errors import EmbeddingFailure, IndexQueryFailure
from visual_identify.models import ImageHit, MatchCandidate, VisionSignals
from visual_identify.service import IdentificationService


def hits_for(
    family_id: str,
    scores: list[float],
    *,
    category: str = "shoe",
    brand: str | None = "Nike",
    family_name: str | None = None,
) -> list[ImageHit]:
    return [
        ImageHit(
            family_id=family_id,
            category=category,
            brand=brand,
            family_name=family_name or family_id,
            image_path=f"/img/{family_id}/{i}.jpg",
            similarity=score,
        )
        for i, score in enumerate(scores)
    ]


def candidate(
    family_id: str,
    best: float,
    *,
    avg: float | None = None,
    support: int = 3,
    category: str = "shoe",
    brand: str | None = "Nike",
    family_name: str | None = None,
) -> MatchCandidate:
    return MatchCandidate(
        family_id=family_id,
        category=category,
        brand=brand,
        family_name=family_name or family_id,
        image_url=None,
        best_score=best,
        avg_top3_score=best if avg is None else avg,
        support_count=support,
    )


class FakeEmbedder:
    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def embed(self, image_bytes: bytes) -> EmbeddingResult:
        with self._lock:
            self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        if self.fail:
            raise EmbeddingFailure("provider unreachable")
        return EmbeddingResult(vector=np.ones(4, dtype=np.float32), content_hash=content_hash(image_bytes))


@dataclass
class FakeIndex:
    hits: dict[str, list[ImageHit]] = field(default_factory=dict)
    counts: dict[str, int] = field(default_factory=dict)
    failing: set[str] = field(default_factory=set)
    searched: list[tuple[str, int]] = field(default_factory=list)
    delays: dict[str, float] = field(default_factory=dict)

    def categories(self) -> list[str]:
        return sorted(set(self.hits) | set(self.counts))

    def image_count(self, category: str) -> int:
        return self.counts.get(category, 0)

    def search(self, category: str, vector: np.ndarray, k: int) -> list[ImageHit]:
        self.searched.append((category, k))
        if category in self.delays:
            threading.Event().wait(self.delays[category])
        if category in self.failing:
            raise IndexQueryFailure(category, "connection reset")
        ordered = sorted(self.hits.get(category, []), key=lambda h: h.similarity, reverse=True)
        return ordered[:k]


class FakeVision:
    def __init__(self, signals: VisionSignals | None = None, fail: bool = False, delay: float = 0.0) -> None:
        self.signals = signals or VisionSignals()
        self.fail = fail
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def extract_signals(self, image_bytes: bytes, category: str | None = None) -> VisionSignals:
        with self._lock:
            self.calls += 1
        if self.delay:
            threading.Event().wait(self.delay)
        if self.fail:
            raise RuntimeError("vision service down")
        return self.signals


@pytest.fixture
def config(tmp_path: Path) -> IdentifyConfig:
    return IdentifyConfig(db_path=tmp_path / "identify.db", embed_timeout_seconds=2.0, ocr_timeout_seconds=2.0)


@pytest.fixture
def db(config: IdentifyConfig) -> IdentifyDB:
    return IdentifyDB(config.db_path)


@pytest.fixture
def make_service(config: IdentifyConfig, db: IdentifyDB):
    def _make(index: FakeIndex, *, embedder=None, vision=None, rules=(), cache=None, sink=None, **overrides):
        return IdentificationService(
            embedder or FakeEmbedder(),
            index,
            vision,
            config=replace(config, **overrides),
            db=db,
            cache=cache or InMemoryResultCache(),
            rules=rules,
            feedback_sink=sink,
        )

    return _make
