"""Tests for the in-process reference library index."""

import numpy as np
import pytest

from visual_identify.errors import IndexQueryFailure
from visual_identify.library import BOOTSTRAP_SOURCE, LibraryImage, ReferenceLibrary, top_k_cosine


def image(image_id, family_id, category="shoe", source=None):
    return LibraryImage(
        image_id=image_id,
        family_id=family_id,
        category=category,
        brand="Nike",
        family_name=family_id.title(),
        image_path=f"/lib/{image_id}.jpg",
        source=source,
    )


@pytest.fixture
def library():
    lib = ReferenceLibrary()
    images = [
        image("1", "air-max"),
        image("2", "cortez"),
        image("3", "air-max", source=BOOTSTRAP_SOURCE),
        image("4", "speedmaster", category="watch"),
    ]
    vectors = np.array([[1.0, 0.0], [0.6, 0.8], [1.0, 0.0], [0.0, 1.0]], dtype=np.float32)
    lib.add_images(images, vectors)
    return lib


class TestTopKCosine:

    def test_orders_best_first(self):
        emb = np.array([[0.0, 1.0], [1.0, 0.0], [0.7, 0.7]], dtype=np.float32)
        idx, scores = top_k_cosine(np.array([1.0, 0.0]), emb, np.linalg.norm(emb, axis=1), k=2)
        assert idx.tolist() == [1, 2]
        assert scores[0] == pytest.approx(1.0, abs=1e-6)

    def test_k_larger_than_library(self):
        emb = np.eye(2, dtype=np.float32)
        idx, _ = top_k_cosine(np.array([1.0, 0.0]), emb, np.ones(2, dtype=np.float32), k=10)
        assert len(idx) == 2

    def test_empty_library(self):
        idx, scores = top_k_cosine(np.ones(3), np.empty((0, 3), np.float32), np.empty(0, np.float32), k=5)
        assert idx.size == 0 and scores.size == 0

    def test_dimension_mismatch(self):
        with pytest.raises(ValueError):
            top_k_cosine(np.ones(3), np.eye(2, dtype=np.float32), np.ones(2, dtype=np.float32), k=1)

    def test_zero_query(self):
        with pytest.raises(ValueError):
            top_k_cosine(np.zeros(2), np.eye(2, dtype=np.float32), np.ones(2, dtype=np.float32), k=1)


class TestReferenceLibrary:

    def test_counts_exclude_bootstrap_images(self, library):
        assert library.categories() == ["shoe", "watch"]
        assert library.image_count("shoe") == 2
        assert library.bootstrap_count("shoe") == 1
        assert library.image_count("handbag") == 0

    def test_search_returns_hits_best_first(self, library):
        hits = library.search("shoe", np.array([1.0, 0.0]), k=5)
        assert [h.family_id for h in hits] == ["air-max", "cortez"]
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-6)
        assert hits[1].similarity == pytest.approx(0.6, abs=1e-6)
        assert all(h.category == "shoe" for h in hits)

    def test_similarity_clipped_to_unit_range(self, library):
        (hit,) = library.search("watch", np.array([0.0, -1.0]), k=1)
        assert hit.similarity == 0.0

    def test_unknown_category(self, library):
        with pytest.raises(IndexQueryFailure) as excinfo:
            library.search("handbag", np.array([1.0, 0.0]), k=5)
        assert excinfo.value.category == "handbag"

    def test_bad_vector(self, library):
        with pytest.raises(IndexQueryFailure):
            library.search("shoe", np.array([1.0, 0.0, 0.0]), k=5)

    def test_add_appends_to_existing_category(self, library):
        library.add_images([image("5", "blazer")], np.array([[0.0, 1.0]], dtype=np.float32))
        assert library.image_count("shoe") == 3

    def test_add_rejects_length_mismatch(self, library):
        with pytest.raises(ValueError):
            library.add_images([image("5", "blazer")], np.zeros((2, 2), dtype=np.float32))

    def test_save_and_load(self, library, tmp_path):
        library.save(tmp_path / "index")
        loaded = ReferenceLibrary.load(tmp_path / "index")
        assert loaded.categories() == ["shoe", "watch"]
        assert loaded.image_count("shoe") == 2
        assert loaded.bootstrap_count("shoe") == 1
        assert loaded.bootstrap_count("watch") == 0
        hits = loaded.search("shoe", np.array([1.0, 0.0]), k=1)
        assert hits[0].image_path == "/lib/1.jpg"

    def test_load_subset(self, library, tmp_path):
        library.save(tmp_path)
        loaded = ReferenceLibrary.load(tmp_path, categories=["watch"])
        assert loaded.categories() == ["watch"]

    def test_bootstrap_only_category_survives_reload(self, tmp_path):
        lib = ReferenceLibrary()
        lib.add_images(
            [image("1", "air-max"), image("9", "speedy", category="handbag", source=BOOTSTRAP_SOURCE)],
            np.array([[1.0, 0.0], [0.0, 1.0]], dtype=np.float32),
        )
        lib.save(tmp_path)
        loaded = ReferenceLibrary.load(tmp_path)
        assert loaded.image_count("handbag") == 0
        assert loaded.bootstrap_count("handbag") == 1
