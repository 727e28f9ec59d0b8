from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
import logging

from dedup_cache import DedupCache
from fallback_scheduler import LocalFallbackScheduler
from foreground import ForegroundTracker
from models import (
    NotificationEnvelope,
    NotificationSource,
    NotificationType,
    fallback_key,
    make_pair_key,
)
from subscriptions import Subscription


logger = logging.getLogger("hooked.router")


DEDUP_TTL_SECONDS = {
    NotificationType.MATCH: 5.0,
    NotificationType.MESSAGE: 3.0,
    NotificationType.GENERAL: 3.0,
}
PARTNER_REQUIRED_TYPES = {NotificationType.MATCH, NotificationType.MESSAGE}


@dataclass(frozen=True)
class Presentation:
    show_banner: bool = False
    play_sound: bool = False
    set_badge: bool = False


SILENT = Presentation()
FULL_SYSTEM = Presentation(show_banner=True, play_sound=True, set_badge=True)


@dataclass(frozen=True)
class InAppEvent:
    kind: str  # "modal" | "toast"
    type: NotificationType
    notification_id: str
    title: str
    body: str
    route: str
    partner_id: str | None = None
    partner_name: str | None = None


@dataclass(frozen=True)
class RouteDecision:
    delivered: bool
    reason: str
    presentation: Presentation = SILENT
    in_app: InAppEvent | None = None
    cancelled_fallback: bool = False


def parse_push(payload: dict[str, Any]) -> NotificationEnvelope:
    """Build a push envelope from an inbound ``{title, body, data}`` payload."""
    if not isinstance(payload, dict):
        raise ValueError("invalid_push_payload")
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    try:
        kind = NotificationType(str(data.get("type") or "").strip().lower())
    except ValueError:
        raise ValueError("invalid_notification_type") from None
    notification_id = str(data.get("notificationId") or "").strip()
    if not notification_id:
        raise ValueError("missing_notification_id")
    partner_id = str(data.get("partnerId") or "").strip()
    if kind in PARTNER_REQUIRED_TYPES and not partner_id:
        raise ValueError("missing_partner_id")
    envelope_payload = {
        **data,
        "source": NotificationSource.PUSH.value,
        "title": payload.get("title") or data.get("title") or "",
        "body": payload.get("body") or data.get("body") or "",
    }
    return NotificationEnvelope(
        id=notification_id,
        type=kind,
        source=NotificationSource.PUSH,
        payload=envelope_payload,
    )


def _in_app_kind(kind: NotificationType) -> str:
    return "modal" if kind is NotificationType.MATCH else "toast"


def _in_app_copy(envelope: NotificationEnvelope) -> tuple[str, str]:
    name = envelope.partner_name
    if envelope.type is NotificationType.MATCH:
        return "It's a match!", f"You and {name} liked each other."
    if envelope.type is NotificationType.MESSAGE:
        return f"New message from {name}", str(envelope.payload.get("preview") or envelope.payload.get("body") or "")
    return str(envelope.payload.get("title") or "Hooked"), str(envelope.payload.get("body") or "")


class NotificationRouter:
    """Decides how an inbound notification is shown, and shows it once.

    The foreground flag is read from the tracker at handling time. Pushes
    received in the foreground are turned into in-app events so the UI owns
    the only visible representation; in the background the system shows the
    push. Local fallbacks are always surfaced.
    """

    def __init__(
        self,
        *,
        tracker: ForegroundTracker,
        session_id: str,
        scheduler: LocalFallbackScheduler | None = None,
        dedup: DedupCache | None = None,
    ) -> None:
        self.tracker = tracker
        self.session_id = session_id
        self.scheduler = scheduler
        self.dedup = dedup or DedupCache()
        self._listeners: dict[int, Callable[[InAppEvent], Any]] = {}
        self._next_listener_id = 0

    def subscribe(self, listener: Callable[[InAppEvent], Any]) -> Subscription:
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener
        return Subscription(lambda: self._listeners.pop(listener_id, None), name="in_app")

    def handle_push(self, payload: dict[str, Any]) -> RouteDecision:
        try:
            envelope = parse_push(payload)
        except ValueError as exc:
            logger.warning("push_dropped_invalid session=%s reason=%s", self.session_id, exc)
            return RouteDecision(delivered=False, reason="invalid")
        return self.route(envelope)

    def route(self, envelope: NotificationEnvelope) -> RouteDecision:
        try:
            return self._route(envelope)
        except Exception:
            logger.exception("route_failed session=%s notification_id=%s", self.session_id, envelope.id)
            return RouteDecision(delivered=False, reason="error")

    def _route(self, envelope: NotificationEnvelope) -> RouteDecision:
        cancelled = False
        if envelope.source is NotificationSource.PUSH:
            cancelled = self._cancel_pending_fallback(envelope)

        if self.dedup.seen(envelope.id):
            logger.info("notification_duplicate session=%s notification_id=%s", self.session_id, envelope.id)
            return RouteDecision(delivered=False, reason="duplicate", cancelled_fallback=cancelled)
        self.dedup.remember(envelope.id, DEDUP_TTL_SECONDS.get(envelope.type))

        foreground = self.tracker.is_foreground()
        if envelope.source is NotificationSource.LOCAL_FALLBACK:
            if foreground:
                in_app = self._raise_in_app(envelope)
                decision = RouteDecision(
                    delivered=True,
                    reason="local_in_app",
                    presentation=Presentation(play_sound=True),
                    in_app=in_app,
                )
            else:
                decision = RouteDecision(
                    delivered=True,
                    reason="local_system",
                    presentation=Presentation(show_banner=True, play_sound=True),
                )
        elif foreground:
            in_app = self._raise_in_app(envelope)
            decision = RouteDecision(
                delivered=True,
                reason="in_app",
                presentation=SILENT,
                in_app=in_app,
                cancelled_fallback=cancelled,
            )
        else:
            decision = RouteDecision(
                delivered=True,
                reason="system",
                presentation=FULL_SYSTEM,
                cancelled_fallback=cancelled,
            )
        logger.info(
            "notification_routed session=%s notification_id=%s type=%s source=%s reason=%s",
            self.session_id,
            envelope.id,
            envelope.type.value,
            envelope.source.value,
            decision.reason,
        )
        return decision

    def _cancel_pending_fallback(self, envelope: NotificationEnvelope) -> bool:
        partner_id = envelope.partner_id
        if self.scheduler is None or not partner_id:
            return False
        key = fallback_key(envelope.type, make_pair_key(self.session_id, partner_id))
        return self.scheduler.cancel_fallback(key)

    def _raise_in_app(self, envelope: NotificationEnvelope) -> InAppEvent:
        title, body = _in_app_copy(envelope)
        event = InAppEvent(
            kind=_in_app_kind(envelope.type),
            type=envelope.type,
            notification_id=envelope.id,
            title=title,
            body=body,
            route=envelope.route,
            partner_id=envelope.partner_id,
            partner_name=envelope.partner_name,
        )
        for listener in list(self._listeners.values()):
            try:
                listener(event)
            except Exception:
                logger.exception("in_app_listener_failed session=%s notification_id=%s", self.session_id, envelope.id)
        return event
