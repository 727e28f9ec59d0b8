import asyncio
import unittest

from fallback_scheduler import LocalFallbackScheduler
from foreground import ForegroundTracker
from models import (
    NotificationType,
    fallback_key,
    general_push_message,
    local_envelope,
    make_pair_key,
    match_push_message,
    message_push_message,
)
from notification_router import FULL_SYSTEM, SILENT, NotificationRouter, parse_push


def _match_push(sender: str = "alice", name: str = "Alice") -> dict:
    return match_push_message(event_id="ev1", sender_id=sender, sender_name=name).to_payload()


class ParsePushTests(unittest.TestCase):
    def test_parses_nested_data_payload(self) -> None:
        envelope = parse_push(_match_push())
        self.assertEqual(envelope.id, "ev1:match:alice")
        self.assertIs(envelope.type, NotificationType.MATCH)
        self.assertEqual(envelope.partner_id, "alice")
        self.assertEqual(envelope.partner_name, "Alice")
        self.assertEqual(envelope.route, "/chat?partnerId=alice&partnerName=Alice")

    def test_rejects_malformed_payloads(self) -> None:
        cases = [
            ("not-a-dict", "invalid_push_payload"),
            ({"data": {"type": "poke", "notificationId": "x"}}, "invalid_notification_type"),
            ({"data": {"type": "general"}}, "missing_notification_id"),
            ({"data": {"type": "match", "notificationId": "x"}}, "missing_partner_id"),
        ]
        for payload, reason in cases:
            with self.subTest(reason=reason):
                with self.assertRaises(ValueError) as ctx:
                    parse_push(payload)
                self.assertEqual(str(ctx.exception), reason)

    def test_general_push_needs_no_partner(self) -> None:
        payload = general_push_message(title="Hi", body="There", notification_id="g1").to_payload()
        envelope = parse_push(payload)
        self.assertIsNone(envelope.partner_id)
        self.assertEqual(envelope.route, "/matches")


class NotificationRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tracker = ForegroundTracker()
        self.router = NotificationRouter(tracker=self.tracker, session_id="bob")
        self.events = []
        self.router.subscribe(self.events.append)

    def test_foreground_push_becomes_silent_in_app_modal(self) -> None:
        decision = self.router.handle_push(_match_push())
        self.assertTrue(decision.delivered)
        self.assertEqual(decision.reason, "in_app")
        self.assertEqual(decision.presentation, SILENT)
        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events[0].kind, "modal")
        self.assertEqual(self.events[0].title, "It's a match!")
        self.assertEqual(self.events[0].body, "You and Alice liked each other.")

    def test_background_push_is_shown_by_the_system_only(self) -> None:
        self.tracker.on_lifecycle("background")
        decision = self.router.handle_push(_match_push())
        self.assertEqual(decision.reason, "system")
        self.assertEqual(decision.presentation, FULL_SYSTEM)
        self.assertIsNone(decision.in_app)
        self.assertEqual(self.events, [])

    def test_inactive_counts_as_background(self) -> None:
        self.tracker.on_lifecycle("inactive")
        self.assertEqual(self.router.handle_push(_match_push()).reason, "system")

    def test_message_push_in_foreground_is_a_toast(self) -> None:
        payload = message_push_message(
            event_id="ev1", sender_id="alice", sender_name="Alice", content="x" * 80
        ).to_payload()
        decision = self.router.handle_push(payload)
        self.assertEqual(decision.in_app.kind, "toast")
        self.assertEqual(decision.in_app.title, "New message from Alice")
        self.assertEqual(decision.in_app.body, "x" * 50 + "...")

    def test_duplicate_push_is_dropped(self) -> None:
        first = self.router.handle_push(_match_push())
        second = self.router.handle_push(_match_push())
        self.assertTrue(first.delivered)
        self.assertFalse(second.delivered)
        self.assertEqual(second.reason, "duplicate")
        self.assertEqual(len(self.events), 1)

    def test_local_fallback_after_push_is_deduplicated(self) -> None:
        self.router.handle_push(_match_push())
        local = local_envelope(kind=NotificationType.MATCH, event_id="ev1", partner_id="alice", partner_name="Alice")
        decision = self.router.route(local)
        self.assertEqual(decision.reason, "duplicate")
        self.assertEqual(len(self.events), 1)

    def test_local_fallback_presentation_follows_foreground(self) -> None:
        local = local_envelope(kind=NotificationType.MATCH, event_id="ev1", partner_id="alice", partner_name="")
        decision = self.router.route(local)
        self.assertEqual(decision.reason, "local_in_app")
        self.assertTrue(decision.presentation.play_sound)
        self.assertFalse(decision.presentation.show_banner)
        self.assertEqual(decision.in_app.partner_name, "Someone")

        self.tracker.on_lifecycle("background")
        other = local_envelope(kind=NotificationType.MATCH, event_id="ev1", partner_id="carol", partner_name="Carol")
        decision = self.router.route(other)
        self.assertEqual(decision.reason, "local_system")
        self.assertTrue(decision.presentation.show_banner)
        self.assertEqual(len(self.events), 1)

    def test_invalid_push_is_dropped(self) -> None:
        with self.assertLogs("hooked.router", level="WARNING"):
            decision = self.router.handle_push({"data": {"type": "match"}})
        self.assertFalse(decision.delivered)
        self.assertEqual(decision.reason, "invalid")

    def test_failing_listener_does_not_fail_routing(self) -> None:
        def broken(_event) -> None:
            raise RuntimeError("ui gone")

        self.router.subscribe(broken)
        with self.assertLogs("hooked.router", level="ERROR"):
            decision = self.router.handle_push(_match_push())
        self.assertTrue(decision.delivered)
        self.assertEqual(len(self.events), 1)


class RouterFallbackTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tracker = ForegroundTracker()
        self.decisions = []
        self.router: NotificationRouter | None = None

        def deliver(envelope):
            decision = self.router.route(envelope)
            self.decisions.append(decision)

        self.scheduler = LocalFallbackScheduler(deliver=deliver)
        self.router = NotificationRouter(tracker=self.tracker, session_id="bob", scheduler=self.scheduler)
        self.key = fallback_key(NotificationType.MATCH, make_pair_key("bob", "alice"))

    def _render(self):
        return local_envelope(kind=NotificationType.MATCH, event_id="ev1", partner_id="alice", partner_name="Alice")

    async def test_push_cancels_pending_fallback(self) -> None:
        self.assertTrue(self.scheduler.schedule_fallback(self.key, 50, self._render))
        decision = self.router.handle_push(_match_push())
        self.assertTrue(decision.cancelled_fallback)
        self.assertFalse(self.scheduler.is_pending(self.key))

        await asyncio.sleep(0.1)
        self.assertEqual(self.scheduler.fired_count, 0)
        self.assertEqual(self.decisions, [])

    async def test_duplicate_push_still_cancels_fallback(self) -> None:
        self.router.handle_push(_match_push())
        self.scheduler.schedule_fallback(self.key, 50, self._render)
        decision = self.router.handle_push(_match_push())
        self.assertEqual(decision.reason, "duplicate")
        self.assertTrue(decision.cancelled_fallback)

    async def test_fallback_surfaces_when_no_push_arrives(self) -> None:
        self.scheduler.schedule_fallback(self.key, 10, self._render)
        await asyncio.sleep(0.05)
        self.assertEqual(self.scheduler.fired_count, 1)
        self.assertEqual(len(self.decisions), 1)
        self.assertEqual(self.decisions[0].reason, "local_in_app")

        late = self.router.handle_push(_match_push())
        self.assertEqual(late.reason, "duplicate")


if __name__ == "__main__":
    unittest.main()
