import asyncio
import json
import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

from models import match_push_message, message_push_message
from push_notifications import PushNotificationService, PushPermanentError, PushTransientError


def _sample_subscription(endpoint_suffix: str) -> dict:
    return {
        "endpoint": f"https://push.example/{endpoint_suffix}",
        "keys": {
            "p256dh": "test-p256dh",
            "auth": "test-auth",
        },
    }


class PushWorkerRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.service = PushNotificationService(
            db_path=f"{self.tmpdir.name}/notifications.sqlite3",
            enabled=True,
            vapid_private_key="test-private",
            vapid_subject="mailto:test@example.com",
        )
        self.service.init_db()
        self.service.register_subscription(subscription=_sample_subscription("one"), session_id="bob")

    def tearDown(self) -> None:
        self.service.stop_worker()
        self.tmpdir.cleanup()

    def test_transient_failure_is_retried_then_delivered(self) -> None:
        enqueue = self.service.enqueue_notification(
            recipient_id="bob",
            message=match_push_message(event_id="ev1", sender_id="alice", sender_name="Alice"),
        )
        self.assertIsNotNone(enqueue.event_id)
        self.assertEqual(enqueue.targeted, 1)

        calls = {"count": 0}
        payloads: list[dict] = []

        def flaky_sender(_sub: dict, payload: dict) -> None:
            calls["count"] += 1
            if calls["count"] == 1:
                raise PushTransientError("temporary outage")
            payloads.append(payload)

        self.service.set_sender_for_tests(flaky_sender)
        t0 = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(seconds=1)

        stats1 = self.service.process_due_deliveries(now=t0)
        self.assertEqual(stats1["retried"], 1)
        self.assertEqual(stats1["sent"], 0)

        conn = sqlite3.connect(str(self.service.db_path))
        row1 = conn.execute(
            "SELECT status, attempt_count FROM push_delivery_queue WHERE event_id = ?",
            (enqueue.event_id,),
        ).fetchone()
        self.assertEqual(row1[0], "retry")
        self.assertEqual(row1[1], 1)

        t1 = t0 + timedelta(seconds=16)
        stats2 = self.service.process_due_deliveries(now=t1)
        self.assertEqual(stats2["sent"], 1)

        row2 = conn.execute(
            "SELECT status, attempt_count, delivered_at FROM push_delivery_queue WHERE event_id = ?",
            (enqueue.event_id,),
        ).fetchone()
        conn.close()
        self.assertEqual(row2[0], "delivered")
        self.assertEqual(row2[1], 2)
        self.assertIsNotNone(row2[2])

        self.assertEqual(len(payloads), 1)
        self.assertEqual(payloads[0]["title"], "It's a match!")
        self.assertEqual(payloads[0]["data"]["notificationId"], "ev1:match:alice")
        self.assertEqual(payloads[0]["data"]["partnerId"], "alice")
        self.assertTrue(payloads[0]["url"].startswith("/chat?"))

    def test_permanent_failure_marks_subscription_inactive(self) -> None:
        enqueue = self.service.enqueue_notification(
            recipient_id="bob",
            message=message_push_message(event_id="ev1", sender_id="alice", sender_name="Alice", content="hi"),
        )
        self.assertEqual(enqueue.targeted, 1)

        def permanent_sender(_sub: dict, _payload: dict) -> None:
            raise PushPermanentError("subscription gone", deactivate_subscription=True)

        self.service.set_sender_for_tests(permanent_sender)
        stats = self.service.process_due_deliveries(now=datetime.now(timezone.utc))
        self.assertEqual(stats["failed_permanent"], 1)

        conn = sqlite3.connect(str(self.service.db_path))
        queue_row = conn.execute(
            "SELECT status FROM push_delivery_queue WHERE event_id = ?",
            (enqueue.event_id,),
        ).fetchone()
        sub_row = conn.execute("SELECT status FROM push_subscriptions WHERE endpoint = ?", ("https://push.example/one",)).fetchone()
        conn.close()
        self.assertEqual(queue_row[0], "failed_permanent")
        self.assertEqual(sub_row[0], "inactive")

    def test_retries_exhausted_become_permanent(self) -> None:
        enqueue = self.service.enqueue_notification(
            recipient_id="bob",
            message=match_push_message(event_id="ev1", sender_id="alice", sender_name="Alice"),
        )

        def failing_sender(_sub: dict, _payload: dict) -> None:
            raise PushTransientError("still down")

        self.service.set_sender_for_tests(failing_sender)
        now = datetime.now(timezone.utc) + timedelta(seconds=1)
        for _ in range(6):
            self.service.process_due_deliveries(now=now)
            now += timedelta(hours=2)

        conn = sqlite3.connect(str(self.service.db_path))
        row = conn.execute(
            "SELECT status, attempt_count FROM push_delivery_queue WHERE event_id = ?",
            (enqueue.event_id,),
        ).fetchone()
        conn.close()
        self.assertEqual(row[0], "failed_permanent")
        self.assertEqual(row[1], 6)

    def test_enqueue_without_subscription_targets_nobody(self) -> None:
        enqueue = self.service.enqueue_notification(
            recipient_id="carol",
            message=match_push_message(event_id="ev1", sender_id="alice", sender_name="Alice"),
        )
        self.assertIsNotNone(enqueue.event_id)
        self.assertEqual(enqueue.targeted, 0)

        conn = sqlite3.connect(str(self.service.db_path))
        row = conn.execute("SELECT event_type, notification_id, data FROM push_events WHERE id = ?", (enqueue.event_id,)).fetchone()
        conn.close()
        self.assertEqual(row[0], "match")
        self.assertEqual(row[1], "ev1:match:alice")
        self.assertEqual(json.loads(row[2])["partnerName"], "Alice")

    def test_dispatch_reports_whether_a_push_will_arrive(self) -> None:
        message = match_push_message(event_id="ev1", sender_id="alice", sender_name="Alice")
        self.assertTrue(asyncio.run(self.service.dispatch("bob", message)))
        self.assertFalse(asyncio.run(self.service.dispatch("carol", message)))

    def test_disabled_service_is_a_noop(self) -> None:
        service = PushNotificationService(
            db_path=f"{self.tmpdir.name}/disabled.sqlite3",
            enabled=False,
            vapid_private_key="",
            vapid_subject="",
        )
        result = service.enqueue_notification(
            recipient_id="bob",
            message=match_push_message(event_id="ev1", sender_id="alice", sender_name="Alice"),
        )
        self.assertIsNone(result.event_id)
        self.assertEqual(result.targeted, 0)
        self.assertEqual(service.process_due_deliveries(), {"sent": 0, "retried": 0, "failed_permanent": 0})


if __name__ == "__main__":
    unittest.main()
