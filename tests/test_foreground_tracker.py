import unittest

from foreground import ForegroundTracker
from subscriptions import Subscription


class ForegroundTrackerTests(unittest.TestCase):
    def test_only_active_counts_as_foreground(self) -> None:
        tracker = ForegroundTracker()
        self.assertTrue(tracker.is_foreground())
        self.assertFalse(tracker.on_lifecycle("inactive"))
        self.assertFalse(tracker.on_lifecycle("background"))
        self.assertTrue(tracker.on_lifecycle("ACTIVE"))
        self.assertEqual(tracker.state, "active")

    def test_invalid_state_is_rejected_and_state_kept(self) -> None:
        tracker = ForegroundTracker(initial_state="background")
        with self.assertRaises(ValueError) as ctx:
            tracker.on_lifecycle("sleeping")
        self.assertEqual(str(ctx.exception), "invalid_lifecycle_state")
        self.assertEqual(tracker.state, "background")

    def test_listeners_fire_on_foreground_changes_only(self) -> None:
        tracker = ForegroundTracker()
        seen: list[bool] = []
        sub = tracker.subscribe(seen.append)

        tracker.on_lifecycle("inactive")
        tracker.on_lifecycle("background")
        tracker.on_lifecycle("active")
        self.assertEqual(seen, [False, True])

        sub.close()
        tracker.on_lifecycle("background")
        self.assertEqual(seen, [False, True])
        self.assertEqual(tracker.listener_count, 0)

    def test_failing_listener_does_not_block_others(self) -> None:
        tracker = ForegroundTracker()
        seen: list[bool] = []

        def broken(_foreground: bool) -> None:
            raise RuntimeError("boom")

        tracker.subscribe(broken)
        tracker.subscribe(seen.append)
        with self.assertLogs("hooked.session", level="ERROR"):
            tracker.on_lifecycle("background")
        self.assertEqual(seen, [False])


class SubscriptionTests(unittest.TestCase):
    def test_close_runs_unsubscribe_once(self) -> None:
        calls = {"count": 0}

        def unsubscribe() -> None:
            calls["count"] += 1

        sub = Subscription(unsubscribe, name="test")
        sub.close()
        with self.assertLogs("hooked.session", level="WARNING"):
            sub.close()
        self.assertTrue(sub.closed)
        self.assertEqual(calls["count"], 1)

    def test_context_manager_closes(self) -> None:
        calls = {"count": 0}

        def unsubscribe() -> None:
            calls["count"] += 1

        with Subscription(unsubscribe) as sub:
            self.assertFalse(sub.closed)
        self.assertTrue(sub.closed)
        self.assertEqual(calls["count"], 1)


if __name__ == "__main__":
    unittest.main()
