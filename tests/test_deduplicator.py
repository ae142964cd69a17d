from datetime import timedelta

from conftest import NOW

from copybot.core.events import synthetic_key
from copybot.services.deduplicator import Deduplicator


class TestDeduplicator:

    def test_first_sighting_passes_second_drops(self):
        dedup = Deduplicator(timedelta(minutes=1))
        assert dedup.check_and_mark("0xabc", NOW) is True
        assert dedup.check_and_mark("0xabc", NOW + timedelta(seconds=5)) is False
        assert len(dedup) == 1

    def test_keys_expire_after_horizon(self):
        dedup = Deduplicator(timedelta(minutes=1))
        dedup.check_and_mark("0xabc", NOW)
        assert dedup.check_and_mark("0xabc", NOW + timedelta(minutes=2)) is True

    def test_restore_drops_stale_keys(self):
        dedup = Deduplicator(timedelta(minutes=1))
        dedup.restore({"fresh": NOW - timedelta(seconds=30), "stale": NOW - timedelta(minutes=5)}, NOW)
        assert dedup.seen("fresh")
        assert not dedup.seen("stale")
        assert dedup.check_and_mark("fresh", NOW) is False


class TestSyntheticKey:

    def test_same_bucket_same_key(self):
        a = synthetic_key("0xAA", "m1", "Yes", NOW, 15)
        b = synthetic_key("0xaa", "m1", "Yes", NOW + timedelta(seconds=10), 15)
        assert a == b

    def test_next_bucket_differs(self):
        a = synthetic_key("0xaa", "m1", "Yes", NOW, 15)
        b = synthetic_key("0xaa", "m1", "Yes", NOW + timedelta(seconds=15), 15)
        assert a != b

    def test_tx_hash_wins_over_synthetic(self, make_event):
        assert make_event(tx_hash="0xDEAD").idempotency_key == "0xdead"
        assert make_event(tx_hash=None).idempotency_key.startswith("0x00000000000000000000000000000000000000aa:market-1:Yes:")
