"""Tests for the local draft recovery cache and its debouncer."""
import pytest

from storyloop.drafts.cache import DraftCache, DraftDebouncer


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    return DraftCache(directory=tmp_path, min_length=3, ttl_seconds=60, clock=clock)


class TestDraftCache:
    def test_stage_and_recover(self, cache):
        assert cache.stage("s1", "I open the door")
        assert cache.recover("s1") == "I open the door"

    def test_stage_overwrites(self, cache):
        cache.stage("s1", "first draft")
        cache.stage("s1", "second draft")
        assert cache.recover("s1") == "second draft"

    def test_short_drafts_ignored(self, cache):
        assert not cache.stage("s1", " hi ")
        assert cache.recover("s1") is None

    def test_sessions_are_isolated(self, cache):
        cache.stage("s1", "for one")
        assert cache.recover("s2") is None

    def test_clear(self, cache):
        cache.stage("s1", "draft text")
        cache.clear("s1")
        assert cache.recover("s1") is None
        cache.clear("s1")  # clearing twice is fine

    def test_expired_draft_is_dropped(self, cache, clock):
        cache.stage("s1", "old draft")
        clock.now += 61
        assert cache.recover("s1") is None

    def test_corrupt_file_is_discarded(self, cache):
        cache.stage("s1", "draft text")
        cache._path("s1").write_text("{not json", encoding="utf-8")
        assert cache.recover("s1") is None
        assert not cache._path("s1").exists()


class TestDraftDebouncer:
    def test_stages_only_after_pause(self, cache, clock):
        debouncer = DraftDebouncer(cache, delay_seconds=1.0, clock=clock)
        debouncer.keystroke("s1", "I wal")
        clock.now += 0.5
        debouncer.keystroke("s1", "I walk to")
        assert debouncer.poll() == 0
        clock.now += 1.0
        assert debouncer.poll() == 1
        assert cache.recover("s1") == "I walk to"

    def test_cancel_drops_pending(self, cache, clock):
        debouncer = DraftDebouncer(cache, delay_seconds=1.0, clock=clock)
        debouncer.keystroke("s1", "never mind")
        debouncer.cancel("s1")
        clock.now += 5
        assert debouncer.poll() == 0
        assert cache.recover("s1") is None
