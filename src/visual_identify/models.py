from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Union

LIBRARY_BUILDING = "library_building"
AUTO_SELECTED = "auto_selected"
USER_REQUIRED = "user_required"
NO_CONFIDENT_MATCH = "no_confident_match"
BLOCKED = "blocked"
MODEL_SELECTION = "model_selection"

# Hard stops that need a retry or manual input; nothing is recorded for them.
RETRY_DECISIONS = frozenset({BLOCKED})


@dataclass(frozen=True)
class ImageHit:
    family_id: str
    category: str
    brand: str | None
    family_name: str | None
    image_path: str | None
    similarity: float


@dataclass(frozen=True)
class MatchCandidate:
    family_id: str
    category: str
    brand: str | None
    family_name: str | None
    image_url: str | None
    best_score: float
    avg_top3_score: float
    support_count: int

    @property
    def title(self) -> str:
        return f"{self.brand or ''} {self.family_name or ''}".strip()

    def confidence(self, high: float = 0.86, medium: float = 0.75) -> str:
        if self.best_score >= high:
            return "high"
        if self.best_score >= medium:
            return "medium"
        return "low"

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "category": self.category,
            "brand": self.brand,
            "family_name": self.family_name,
            "title": self.title,
            "image_url": self.image_url,
            "best_score": self.best_score,
            "avg_top3_score": self.avg_top3_score,
            "support_count": self.support_count,
            "confidence": self.confidence(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MatchCandidate":
        return cls(
            family_id=str(payload["family_id"]),
            category=str(payload["category"]),
            brand=payload.get("brand"),
            family_name=payload.get("family_name"),
            image_url=payload.get("image_url"),
            best_score=float(payload["best_score"]),
            avg_top3_score=float(payload["avg_top3_score"]),
            support_count=int(payload["support_count"]),
        )


@dataclass(frozen=True)
class ModelCandidate:
    family_id: str
    family_name: str | None
    display_name: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "family_name": self.family_name,
            "display_name": self.display_name,
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ModelCandidate":
        return cls(
            family_id=str(payload["family_id"]),
            family_name=payload.get("family_name"),
            display_name=str(payload["display_name"]),
            score=float(payload["score"]),
        )


@dataclass(frozen=True)
class VisionSignals:
    brand_text: str | None = None
    model_text: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)
    confident: bool = False

    @property
    def has_brand(self) -> bool:
        return self.confident and bool((self.brand_text or "").strip())


class _DecisionBase:
    decision: ClassVar[str]
    needs_model_selection: ClassVar[bool] = False

    @property
    def top_match(self) -> MatchCandidate | None:
        matches = getattr(self, "top_matches", ())
        return matches[0] if matches else None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "decision": self.decision,
            "needs_model_selection": self.needs_model_selection,
        }
        for f in fields(self):
            payload[f.name] = _encode(getattr(self, f.name))
        return payload


@dataclass(frozen=True)
class LibraryBuilding(_DecisionBase):
    image_count: int
    threshold: int
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0

    decision: ClassVar[str] = LIBRARY_BUILDING


@dataclass(frozen=True)
class AutoSelected(_DecisionBase):
    candidate: MatchCandidate
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0
    brand_confirmed: bool = False

    decision: ClassVar[str] = AUTO_SELECTED


@dataclass(frozen=True)
class UserRequired(_DecisionBase):
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0
    brand_confirmed: bool = False

    decision: ClassVar[str] = USER_REQUIRED


@dataclass(frozen=True)
class NoConfidentMatch(_DecisionBase):
    reason: str
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0
    brand_confirmed: bool = False

    decision: ClassVar[str] = NO_CONFIDENT_MATCH


@dataclass(frozen=True)
class Blocked(_DecisionBase):
    reason: str
    detected_brand: str | None = None
    brand_alternatives: tuple[str, ...] = ()
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0

    decision: ClassVar[str] = BLOCKED


@dataclass(frozen=True)
class ModelSelectionRequired(_DecisionBase):
    brand: str
    candidates: tuple[ModelCandidate, ...]
    top_matches: tuple[MatchCandidate, ...] = ()
    best_score: float = 0.0
    score_gap: float = 0.0

    decision: ClassVar[str] = MODEL_SELECTION
    needs_model_selection: ClassVar[bool] = True


Decision = Union[
    LibraryBuilding,
    AutoSelected,
    UserRequired,
    NoConfidentMatch,
    Blocked,
    ModelSelectionRequired,
]

_DECISION_TYPES: dict[str, type] = {
    LIBRARY_BUILDING: LibraryBuilding,
    AUTO_SELECTED: AutoSelected,
    USER_REQUIRED: UserRequired,
    NO_CONFIDENT_MATCH: NoConfidentMatch,
    BLOCKED: Blocked,
    MODEL_SELECTION: ModelSelectionRequired,
}


def _encode(value: Any) -> Any:
    if isinstance(value, (MatchCandidate, ModelCandidate)):
        return value.to_dict()
    if isinstance(value, tuple):
        return [_encode(item) for item in value]
    return value


def decision_from_dict(payload: dict[str, Any]) -> Decision:
    kind = payload.get("decision")
    decision_type = _DECISION_TYPES.get(str(kind))
    if decision_type is None:
        raise ValueError(f"Unknown decision kind: {kind!r}")

    kwargs: dict[str, Any] = {}
    for f in fields(decision_type):
        if f.name not in payload:
            continue
        raw = payload[f.name]
        if f.name == "top_matches":
            kwargs[f.name] = tuple(MatchCandidate.from_dict(item) for item in raw or [])
        elif f.name == "candidate":
            kwargs[f.name] = MatchCandidate.from_dict(raw)
        elif f.name == "candidates":
            kwargs[f.name] = tuple(ModelCandidate.from_dict(item) for item in raw or [])
        elif f.name == "brand_alternatives":
            kwargs[f.name] = tuple(str(item) for item in raw or [])
        else:
            kwargs[f.name] = raw
    return decision_type(**kwargs)
