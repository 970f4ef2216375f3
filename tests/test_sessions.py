"""Tests for match session persistence."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import candidate

from visual_identify.cache import DecisionCache, InMemoryResultCache, encode_decision
from visual_identify.errors import SessionNotFound
from visual_identify.models import AutoSelected, Blocked, LibraryBuilding, UserRequired
from visual_identify.sessions import SessionCacheManager


def auto(family_id="a", score=0.9):
    top = candidate(family_id, score)
    return AutoSelected(candidate=top, top_matches=(top,), best_score=score, score_gap=score)


@pytest.fixture
def backend():
    return InMemoryResultCache()


@pytest.fixture
def manager(db, backend):
    return SessionCacheManager(db, DecisionCache(backend))


class TestRecord:

    def test_round_trip(self, manager):
        session = manager.record("u1", "shoe", "h1", auto())
        assert session.category == "shoe"
        assert session.auto_selected_family_id == "a"
        assert manager.get(session.id).decision == auto()

    def test_resolve_finds_existing(self, manager):
        stored = manager.record("u1", "shoe", "h1", auto())
        assert manager.resolve("u1", "shoe", "h1").id == stored.id
        assert manager.resolve("u2", "shoe", "h1") is None
        assert manager.resolve("u1", "watch", "h1") is None

    def test_no_category_stored_as_all(self, manager):
        session = manager.record(None, None, "h1", auto())
        assert session.category == "all"
        assert manager.resolve(None, None, "h1").id == session.id

    def test_second_write_keeps_first_row(self, manager):
        first = manager.record("u1", "shoe", "h1", auto("a"))
        second = manager.record("u1", "shoe", "h1", UserRequired(top_matches=(candidate("b", 0.8),)))
        assert second.id == first.id
        assert second.decision == first.decision

    def test_anonymous_scans_are_unique_too(self, manager, db):
        first = manager.record(None, "shoe", "h1", auto("a"))
        second = manager.record(None, "shoe", "h1", auto("b"))
        assert second.id == first.id
        assert db.stats()["session_count"] == 1

    def test_blocked_not_stored(self, manager, backend):
        assert manager.record("u1", "watch", "h1", Blocked(reason="ocr_unavailable")) is None
        assert manager.resolve("u1", "watch", "h1") is None
        assert len(backend) == 0

    def test_library_building_stored_and_cached(self, manager, backend):
        decision = LibraryBuilding(image_count=10, threshold=500)
        session = manager.record("u1", "watch", "h1", decision)
        assert session.decision == decision
        assert manager.resolve("u1", "watch", "h1").id == session.id
        assert manager.lookup_cached("h1", "watch") == decision

    def test_record_caches_surviving_decision(self, manager):
        manager.record("u1", "shoe", "h1", auto("a"))
        manager.record("u2", "shoe", "h1", auto("a"))
        assert manager.lookup_cached("h1", "shoe") == auto("a")

    def test_record_without_cache(self, manager, backend):
        manager.record("u1", "shoe", "h1", auto(), cache=False)
        assert len(backend) == 0

    def test_payload_is_byte_identical(self, manager, db):
        session = manager.record("u1", "shoe", "h1", auto())
        row = db.get_session(session.id)
        assert row["decision_payload"] == encode_decision(auto())
        assert row["best_family_id"] == "a"
        assert row["top_matches"][0]["family_id"] == "a"


class TestConcurrentScans:

    def test_one_row_per_scan(self, manager, db):
        def write(i):
            return manager.record("u1", "shoe", "same-hash", auto(f"f{i}")).id

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = set(pool.map(write, range(16)))

        assert len(ids) == 1
        assert db.stats()["session_count"] == 1


class TestGet:

    def test_missing_session(self, manager):
        with pytest.raises(SessionNotFound):
            manager.get(999)
