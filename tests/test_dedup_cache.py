import unittest

from dedup_cache import DedupCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class DedupCacheTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.cache = DedupCache(max_entries=3, ttl_seconds=5.0, clock=self.clock)

    def test_remembered_id_is_seen_until_ttl_expires(self) -> None:
        self.assertFalse(self.cache.seen("n1"))
        self.cache.remember("n1")
        self.assertTrue(self.cache.seen("n1"))

        self.clock.now = 104.5
        self.assertTrue(self.cache.seen("n1"))

        self.clock.now = 105.0
        self.assertFalse(self.cache.seen("n1"))
        self.assertEqual(len(self.cache), 0)

    def test_per_entry_ttl_overrides_default(self) -> None:
        self.cache.remember("short", ttl_seconds=1.0)
        self.cache.remember("long")
        self.clock.now += 2.0
        self.assertFalse(self.cache.seen("short"))
        self.assertTrue(self.cache.seen("long"))

    def test_oldest_entry_is_evicted_when_full(self) -> None:
        for key in ("a", "b", "c", "d"):
            self.cache.remember(key)
        self.assertEqual(len(self.cache), 3)
        self.assertNotIn("a", self.cache)
        self.assertIn("d", self.cache)

    def test_remember_again_refreshes_position_and_expiry(self) -> None:
        self.cache.remember("a")
        self.cache.remember("b")
        self.clock.now += 3.0
        self.cache.remember("a")
        self.cache.remember("c")
        self.cache.remember("d")
        self.assertIn("a", self.cache)
        self.assertNotIn("b", self.cache)

        self.clock.now += 4.0
        self.assertTrue(self.cache.seen("a"))

    def test_sweep_drops_expired_entries(self) -> None:
        self.cache.remember("a", ttl_seconds=1.0)
        self.cache.remember("b", ttl_seconds=10.0)
        self.clock.now += 2.0
        self.assertEqual(self.cache.sweep(), 1)
        self.assertEqual(len(self.cache), 1)

    def test_non_string_membership_is_false(self) -> None:
        self.assertFalse(42 in self.cache)


if __name__ == "__main__":
    unittest.main()
