from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Iterable, Protocol

import numpy as np

from visual_identify.errors import IndexQueryFailure
from visual_identify.models import ImageHit

_LOGGER = logging.getLogger(__name__)

# Images gathered only to route scans to a category; never used for identity scores.
BOOTSTRAP_SOURCE = "serp_bootstrap"


@dataclass(frozen=True)
class LibraryImage:
    image_id: str
    family_id: str
    category: str
    brand: str | None
    family_name: str | None
    image_path: str | None
    source: str | None = None

    @property
    def is_bootstrap(self) -> bool:
        return self.source == BOOTSTRAP_SOURCE


class CategoryIndex(Protocol):
    def categories(self) -> list[str]:
        ...

    def image_count(self, category: str) -> int:
        ...

    def search(self, category: str, vector: np.ndarray, k: int) -> list[ImageHit]:
        ...


@dataclass(frozen=True)
class _CategorySlice:
    images: list[LibraryImage]
    embeddings: np.ndarray  # shape (n, d), float32, bootstrap rows removed
    norms: np.ndarray  # shape (n,), float32
    bootstrap_count: int


def top_k_cosine(
    query: np.ndarray,
    embeddings: np.ndarray,
    norms: np.ndarray,
    k: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Return (indices, scores) for top-k cosine similarity, best first."""
    if query.ndim != 1:
        raise ValueError("query must be 1D")
    if embeddings.ndim != 2:
        raise ValueError("embeddings must be 2D")
    if embeddings.shape[0] != norms.shape[0]:
        raise ValueError("norms must match embeddings rows")
    if embeddings.shape[0] == 0 or k <= 0:
        return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.float32)
    if embeddings.shape[1] != query.shape[0]:
        raise ValueError(f"query has {query.shape[0]} dims, index has {embeddings.shape[1]}")

    query = query.astype(np.float32, copy=False)
    qn = np.linalg.norm(query).astype(np.float32)
    if qn == 0:
        raise ValueError("zero-norm query embedding")

    scores = (embeddings @ query) / (norms * qn + 1e-8)
    k = min(int(k), scores.shape[0])
    idx = np.argpartition(-scores, k - 1)[:k]
    # stable on ties so equal scores keep library order
    idx = idx[np.argsort(-scores[idx], kind="stable")]
    return idx, scores[idx]


def cosine_to_similarity(scores: np.ndarray) -> np.ndarray:
    """Map cosine scores onto the [0, 1] similarity scale used by the decision thresholds."""
    return np.clip(scores, 0.0, 1.0)


class ReferenceLibrary:
    """In-process per-category nearest-neighbour index over reference images."""

    def __init__(self) -> None:
        self._slices: dict[str, _CategorySlice] = {}
        self._lock = threading.Lock()

    def categories(self) -> list[str]:
        with self._lock:
            return sorted(self._slices)

    def image_count(self, category: str) -> int:
        with self._lock:
            piece = self._slices.get(category)
        return len(piece.images) if piece else 0

    def bootstrap_count(self, category: str) -> int:
        with self._lock:
            piece = self._slices.get(category)
        return piece.bootstrap_count if piece else 0

    def add_images(self, images: list[LibraryImage], vectors: np.ndarray) -> None:
        if len(images) != vectors.shape[0]:
            raise ValueError("images and vectors must have the same length")

        by_category: dict[str, list[int]] = {}
        for row, image in enumerate(images):
            by_category.setdefault(image.category, []).append(row)

        for category, rows in by_category.items():
            keep = [r for r in rows if not images[r].is_bootstrap]
            new_images = [images[r] for r in keep]
            new_vectors = vectors[keep].astype(np.float32) if keep else np.empty((0, vectors.shape[1]), np.float32)
            with self._lock:
                current = self._slices.get(category)
                if current is not None:
                    new_images = current.images + new_images
                    new_vectors = np.concatenate([current.embeddings, new_vectors], axis=0)
                self._slices[category] = _CategorySlice(
                    images=new_images,
                    embeddings=new_vectors,
                    norms=np.linalg.norm(new_vectors, axis=1).astype(np.float32),
                    bootstrap_count=(current.bootstrap_count if current else 0) + len(rows) - len(keep),
                )
            _LOGGER.info("Library %s: %d scorable images", category, len(new_images))

    def search(self, category: str, vector: np.ndarray, k: int) -> list[ImageHit]:
        with self._lock:
            piece = self._slices.get(category)
        if piece is None:
            raise IndexQueryFailure(category, "category is not in the reference library")

        try:
            idx, scores = top_k_cosine(np.asarray(vector, dtype=np.float32), piece.embeddings, piece.norms, k)
        except ValueError as exc:
            raise IndexQueryFailure(category, str(exc)) from exc

        hits: list[ImageHit] = []
        for row, similarity in zip(idx.tolist(), cosine_to_similarity(scores).tolist()):
            image = piece.images[row]
            hits.append(
                ImageHit(
                    family_id=image.family_id,
                    category=category,
                    brand=image.brand,
                    family_name=image.family_name,
                    image_path=image.image_path,
                    similarity=float(similarity),
                )
            )
        return hits

    def save(self, cache_dir: Path) -> None:
        cache_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            slices = dict(self._slices)
        for category, piece in slices.items():
            np.savez_compressed(
                cache_dir / f"{category}.npz",
                embeddings=piece.embeddings,
                norms=piece.norms,
                bootstrap_count=np.array(piece.bootstrap_count),
            )
            with (cache_dir / f"{category}.jsonl").open("w", encoding="utf-8") as f:
                for image in piece.images:
                    f.write(json.dumps(asdict(image)) + "\n")

    @classmethod
    def load(cls, cache_dir: Path, categories: Iterable[str] | None = None) -> "ReferenceLibrary":
        library = cls()
        wanted = set(categories) if categories is not None else None
        for npz_path in sorted(cache_dir.glob("*.npz")):
            category = npz_path.stem
            meta_path = cache_dir / f"{category}.jsonl"
            if (wanted is not None and category not in wanted) or not meta_path.exists():
                continue
            with np.load(npz_path) as arrays:
                embeddings = arrays["embeddings"].astype(np.float32)
                bootstrap_count = int(arrays["bootstrap_count"]) if "bootstrap_count" in arrays.files else 0
            images: list[LibraryImage] = []
            with meta_path.open("r", encoding="utf-8") as f:
                for line in f:
                    if line.strip():
                        images.append(LibraryImage(**json.loads(line)))
            library.add_images(images, embeddings)
            with library._lock:
                piece = library._slices.get(category)
                if piece is None:
                    piece = _CategorySlice(
                        images=[],
                        embeddings=embeddings[:0],
                        norms=np.empty(0, dtype=np.float32),
                        bootstrap_count=0,
                    )
                library._slices[category] = replace(piece, bootstrap_count=piece.bootstrap_count + bootstrap_count)
        return library
