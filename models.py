from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlencode


LIKES = "likes"
MESSAGES = "messages"
PROFILES = "profiles"

DEFAULT_PARTNER_NAME = "Someone"
MESSAGE_PREVIEW_CHARS = 50
DEFAULT_ROUTE = "/matches"
CHAT_ROUTE = "/chat"


class NotificationType(str, Enum):
    MATCH = "match"
    MESSAGE = "message"
    GENERAL = "general"


class NotificationSource(str, Enum):
    PUSH = "push"
    LOCAL_FALLBACK = "localFallback"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def make_pair_key(a: str, b: str) -> str:
    first, second = sorted([a, b])
    return f"{first}|{second}"


def synthesize_notification_id(event_id: str, kind: NotificationType | str, partner_id: str) -> str:
    kind_value = kind.value if isinstance(kind, NotificationType) else str(kind)
    return f"{event_id}:{kind_value}:{partner_id}"


def fallback_key(kind: NotificationType | str, pair_key: str) -> str:
    kind_value = kind.value if isinstance(kind, NotificationType) else str(kind)
    return f"{kind_value}:{pair_key}"


def message_preview(content: str) -> str:
    text = (content or "").strip()
    if len(text) > MESSAGE_PREVIEW_CHARS:
        return f"{text[:MESSAGE_PREVIEW_CHARS]}..."
    return text


def deep_link_for(kind: str | None, partner_id: str | None, partner_name: str | None) -> str:
    if kind in {NotificationType.MATCH.value, NotificationType.MESSAGE.value} and partner_id:
        params = {"partnerId": partner_id}
        if partner_name:
            params["partnerName"] = partner_name
        return f"{CHAT_ROUTE}?{urlencode(params)}"
    return DEFAULT_ROUTE


@dataclass(frozen=True)
class LikeRecord:
    id: str
    event_id: str
    liker_id: str
    liked_id: str
    is_mutual: bool = False
    liker_notified: bool = False
    liked_notified: bool = False
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LikeRecord":
        if not isinstance(data, dict):
            raise ValueError("invalid_like_record")
        like_id = str(data.get("id") or "").strip()
        event_id = str(data.get("event_id") or "").strip()
        liker_id = str(data.get("liker_id") or "").strip()
        liked_id = str(data.get("liked_id") or "").strip()
        if not (like_id and event_id and liker_id and liked_id) or liker_id == liked_id:
            raise ValueError("invalid_like_record")
        return cls(
            id=like_id,
            event_id=event_id,
            liker_id=liker_id,
            liked_id=liked_id,
            is_mutual=bool(data.get("is_mutual")),
            liker_notified=bool(data.get("liker_notified")),
            liked_notified=bool(data.get("liked_notified")),
            created_at=str(data.get("created_at") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def pair_key(self) -> str:
        return make_pair_key(self.liker_id, self.liked_id)

    def involves(self, session_id: str) -> bool:
        return session_id in (self.liker_id, self.liked_id)

    def partner_of(self, session_id: str) -> str:
        if session_id == self.liker_id:
            return self.liked_id
        if session_id == self.liked_id:
            return self.liker_id
        raise ValueError("session_not_in_like")

    def notified_field_for(self, session_id: str) -> str:
        if session_id == self.liker_id:
            return "liker_notified"
        if session_id == self.liked_id:
            return "liked_notified"
        raise ValueError("session_not_in_like")

    def is_notified(self, session_id: str) -> bool:
        return bool(getattr(self, self.notified_field_for(session_id)))


@dataclass(frozen=True)
class MatchEvent:
    pair_key: str
    event_id: str
    partner_id: str
    partner_name: str
    detected_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class NotificationEnvelope:
    id: str
    type: NotificationType
    source: NotificationSource
    payload: dict[str, Any]
    received_at: datetime = field(default_factory=utc_now)

    @property
    def partner_id(self) -> str | None:
        return self.payload.get("partnerId")

    @property
    def partner_name(self) -> str:
        return self.payload.get("partnerName") or DEFAULT_PARTNER_NAME

    @property
    def route(self) -> str:
        return deep_link_for(self.type.value, self.partner_id, self.payload.get("partnerName"))


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {"title": self.title, "body": self.body, "data": dict(self.data), "url": self.data.get("url")}


def match_push_message(*, event_id: str, sender_id: str, sender_name: str) -> PushMessage:
    """Push sent to a match recipient; ``sender_*`` is the recipient's partner."""
    name = sender_name or DEFAULT_PARTNER_NAME
    return PushMessage(
        title="It's a match!",
        body=f"You and {name} liked each other.",
        data={
            "type": NotificationType.MATCH.value,
            "source": NotificationSource.PUSH.value,
            "partnerId": sender_id,
            "partnerName": name,
            "eventId": event_id,
            "notificationId": synthesize_notification_id(event_id, NotificationType.MATCH, sender_id),
            "url": deep_link_for(NotificationType.MATCH.value, sender_id, name),
        },
    )


def message_push_message(
    *,
    event_id: str,
    sender_id: str,
    sender_name: str,
    content: str,
    device_locked: bool = False,
) -> PushMessage:
    name = sender_name or DEFAULT_PARTNER_NAME
    preview = message_preview(content)
    return PushMessage(
        title="New Message" if device_locked else f"New message from {name}",
        body="You got a new message" if device_locked else preview,
        data={
            "type": NotificationType.MESSAGE.value,
            "source": NotificationSource.PUSH.value,
            "partnerId": sender_id,
            "partnerName": name,
            "preview": preview,
            "eventId": event_id,
            "notificationId": synthesize_notification_id(event_id, NotificationType.MESSAGE, sender_id),
            "url": deep_link_for(NotificationType.MESSAGE.value, sender_id, name),
        },
    )


def general_push_message(*, title: str, body: str, notification_id: str, url: str | None = None) -> PushMessage:
    return PushMessage(
        title=title,
        body=body,
        data={
            "type": NotificationType.GENERAL.value,
            "source": NotificationSource.PUSH.value,
            "notificationId": notification_id,
            "url": url or DEFAULT_ROUTE,
        },
    )


def local_envelope(
    *,
    kind: NotificationType,
    event_id: str,
    partner_id: str,
    partner_name: str,
    preview: str | None = None,
) -> NotificationEnvelope:
    name = partner_name or DEFAULT_PARTNER_NAME
    if kind is NotificationType.MATCH:
        title, body = "You got Hooked!", f"You and {name} liked each other."
    elif kind is NotificationType.MESSAGE:
        title, body = f"New message from {name}", preview or "You got a new message"
    else:
        title, body = "Hooked", preview or ""
    payload: dict[str, Any] = {
        "type": kind.value,
        "source": NotificationSource.LOCAL_FALLBACK.value,
        "partnerId": partner_id,
        "partnerName": name,
        "eventId": event_id,
        "title": title,
        "body": body,
        "notificationId": synthesize_notification_id(event_id, kind, partner_id),
    }
    if preview:
        payload["preview"] = preview
    return NotificationEnvelope(
        id=payload["notificationId"],
        type=kind,
        source=NotificationSource.LOCAL_FALLBACK,
        payload=payload,
    )
