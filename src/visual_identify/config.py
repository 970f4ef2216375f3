from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_set(name: str, default: frozenset[str]) -> frozenset[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return frozenset(part.strip().lower() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class IdentifyConfig:
    # Decision engine
    high_threshold: float = 0.86
    medium_threshold: float = 0.82
    min_gap: float = 0.04
    min_support: int = 3
    user_required_threshold: float = 0.75
    library_building_threshold: int = 500
    library_limited_threshold: int = 1500
    tie_epsilon: float = 0.01

    # Retrieval
    top_k_images: int = 60
    top_n_results: int = 8
    cross_category_k: int = 10

    # Disambiguation
    model_selection_gap: float = 0.05
    verification_gap: float = 0.05
    candidate_threshold: float = 0.55
    min_model_candidates: int = 2
    max_model_candidates: int = 5
    text_confirmation_categories: frozenset[str] = field(default_factory=lambda: frozenset({"watch"}))

    # External call timeouts, seconds
    embed_timeout_seconds: float = 20.0
    index_timeout_seconds: float = 10.0
    ocr_timeout_seconds: float = 15.0

    db_path: Path = Path("data/visual_identify.db")
    rules_path: Path | None = None

    @classmethod
    def from_env(cls) -> "IdentifyConfig":
        rules_raw = os.getenv("VI_MODEL_SELECTION_RULES")
        return cls(
            high_threshold=_env_float("VI_HIGH_THRESHOLD", 0.86),
            medium_threshold=_env_float("VI_MEDIUM_THRESHOLD", 0.82),
            min_gap=_env_float("VI_MIN_GAP", 0.04),
            min_support=_env_int("VI_MIN_SUPPORT", 3),
            user_required_threshold=_env_float("VI_USER_REQUIRED_THRESHOLD", 0.75),
            library_building_threshold=_env_int("VI_LIBRARY_BUILDING_THRESHOLD", 500),
            library_limited_threshold=_env_int("VI_LIBRARY_LIMITED_THRESHOLD", 1500),
            top_k_images=_env_int("VI_TOP_K_IMAGES", 60),
            top_n_results=_env_int("VI_TOP_N_RESULTS", 8),
            cross_category_k=_env_int("VI_CROSS_CATEGORY_K", 10),
            model_selection_gap=_env_float("VI_MODEL_SELECTION_GAP", 0.05),
            verification_gap=_env_float("VI_VERIFICATION_GAP", 0.05),
            candidate_threshold=_env_float("VI_CANDIDATE_THRESHOLD", 0.55),
            text_confirmation_categories=_env_set("VI_TEXT_CONFIRMATION_CATEGORIES", frozenset({"watch"})),
            embed_timeout_seconds=_env_float("VI_EMBED_TIMEOUT_SECONDS", 20.0),
            index_timeout_seconds=_env_float("VI_INDEX_TIMEOUT_SECONDS", 10.0),
            ocr_timeout_seconds=_env_float("VI_OCR_TIMEOUT_SECONDS", 15.0),
            db_path=Path(os.getenv("VI_DB_PATH", "data/visual_identify.db")),
            rules_path=Path(rules_raw) if rules_raw else None,
        )
