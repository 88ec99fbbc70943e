"""
Deduplicator 单元测试（可控时钟，无需等待真实 TTL）
"""

from core.bridge.dedup import DEFAULT_TTL_SECONDS, Deduplicator


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ===========================================================================
# is_duplicate
# ===========================================================================


class TestIsDuplicate:

    def setup_method(self):
        self.clock = FakeClock()
        self.dedup = Deduplicator(clock=self.clock)

    def test_first_sight_is_not_duplicate(self):
        assert self.dedup.is_duplicate("om_1") is False
        assert "om_1" in self.dedup

    def test_second_sight_within_ttl_is_duplicate(self):
        self.dedup.is_duplicate("om_1")
        self.clock.advance(DEFAULT_TTL_SECONDS - 1)
        assert self.dedup.is_duplicate("om_1") is True

    def test_sight_after_ttl_is_not_duplicate(self):
        self.dedup.is_duplicate("om_1")
        self.clock.advance(DEFAULT_TTL_SECONDS + 1)
        assert self.dedup.is_duplicate("om_1") is False

    def test_repeat_does_not_refresh_first_seen(self):
        self.dedup.is_duplicate("om_1")
        first_seen = self.dedup.lookup("om_1")
        self.clock.advance(300)
        self.dedup.is_duplicate("om_1")
        assert self.dedup.lookup("om_1") == first_seen

        self.clock.advance(DEFAULT_TTL_SECONDS - 299)
        assert self.dedup.is_duplicate("om_1") is False

    def test_empty_id_is_never_duplicate(self):
        assert self.dedup.is_duplicate("") is False
        assert self.dedup.is_duplicate("") is False
        assert self.dedup.is_duplicate(None) is False
        assert len(self.dedup) == 0

    def test_ids_are_independent(self):
        self.dedup.is_duplicate("om_1")
        assert self.dedup.is_duplicate("om_2") is False


# ===========================================================================
# purge
# ===========================================================================


class TestPurge:

    def test_purge_drops_only_expired(self):
        clock = FakeClock()
        dedup = Deduplicator(ttl_seconds=60, clock=clock)
        dedup.insert("old")
        clock.advance(50)
        dedup.insert("new")
        clock.advance(20)

        assert dedup.purge() == 1
        assert "old" not in dedup
        assert "new" in dedup

    def test_lookup_sweeps_expired_records(self):
        clock = FakeClock()
        dedup = Deduplicator(ttl_seconds=60, clock=clock)
        dedup.insert("a")
        dedup.insert("b")
        clock.advance(61)

        dedup.is_duplicate("c")
        assert len(dedup) == 1
