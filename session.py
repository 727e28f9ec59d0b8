from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any
import asyncio
import logging
import uuid

from fallback_scheduler import LocalFallbackScheduler
from foreground import ForegroundTracker
from match_reconciler import MatchReconciler, PushDispatch, ReconcileOutcome, is_completing_record
from models import (
    LIKES,
    PROFILES,
    MESSAGES,
    LikeRecord,
    MatchEvent,
    NotificationEnvelope,
    NotificationType,
    fallback_key,
    local_envelope,
    make_pair_key,
    message_preview,
    message_push_message,
    utc_now,
)
from notification_router import InAppEvent, NotificationRouter, RouteDecision
from offline_queue import FlushResult, OfflineActionQueue
from store import ChangeEvent, DocumentStore, StoreError, StorePermissionError
from subscriptions import Subscription


logger = logging.getLogger("hooked.session")


DEFAULT_MATCH_FALLBACK_DELAY_MS = 5000
DEFAULT_MESSAGE_FALLBACK_DELAY_MS = 5000
MAX_BUFFERED_EVENTS = 100
VISIBILITY_DENIED_MESSAGE = (
    "Both profiles must be visible to like someone. Please make sure your profile is visible in settings."
)


@dataclass(frozen=True)
class LikeResult:
    ok: bool
    status: str  # "created" | "queued" | "rejected"
    like_id: str | None = None
    outcome: ReconcileOutcome | None = None
    error: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class MessageResult:
    ok: bool
    status: str  # "sent" | "queued" | "rejected"
    message_id: str | None = None
    error: str | None = None


class ClientSession:
    """Everything one client session needs to like, match and be notified.

    ``attach`` opens the live subscriptions for the session; ``close`` disposes
    each of them exactly once and cancels pending fallbacks. Also usable as an
    async context manager.
    """

    def __init__(
        self,
        *,
        session_id: str,
        event_id: str,
        store: DocumentStore,
        queue_db_path: str | Path,
        push_dispatch: PushDispatch | None = None,
        match_fallback_delay_ms: int = DEFAULT_MATCH_FALLBACK_DELAY_MS,
        message_fallback_delay_ms: int = DEFAULT_MESSAGE_FALLBACK_DELAY_MS,
        lookup_delays: list[float] | None = None,
        initial_state: str = "active",
    ) -> None:
        self.session_id = (session_id or "").strip()
        self.event_id = (event_id or "").strip()
        if not self.session_id:
            raise ValueError("invalid_session_id")
        if not self.event_id:
            raise ValueError("invalid_event_id")
        self.store = store
        self.match_fallback_delay_ms = int(match_fallback_delay_ms)
        self.message_fallback_delay_ms = int(message_fallback_delay_ms)
        self._push_dispatch = push_dispatch

        self.tracker = ForegroundTracker(initial_state=initial_state)
        self.scheduler = LocalFallbackScheduler(deliver=self._deliver_fallback)
        self.router = NotificationRouter(tracker=self.tracker, session_id=self.session_id, scheduler=self.scheduler)
        self.reconciler = MatchReconciler(
            store=store,
            session_id=self.session_id,
            push_dispatch=push_dispatch,
            lookup_delays=lookup_delays,
        )
        self.offline_queue = OfflineActionQueue(db_path=queue_db_path)
        self.offline_queue.register("create_like", self._create_like)
        self.offline_queue.register("send_message", self._send_message)

        self._events: deque[InAppEvent] = deque(maxlen=MAX_BUFFERED_EVENTS)
        self._partner_names: dict[str, str] = {}
        self._online = True
        self._live: list[Subscription] = []
        self._internal = [
            self.router.subscribe(self._events.append),
            self.reconciler.subscribe(self._on_match_found),
        ]

    # --- lifecycle ---
    @property
    def attached(self) -> bool:
        return bool(self._live)

    def attach(self) -> None:
        if self._live:
            return
        self._live = [
            self.store.subscribe(
                LIKES,
                {"event_id": self.event_id, "liker_id": self.session_id},
                self._on_like_change,
            ),
            self.store.subscribe(
                LIKES,
                {"event_id": self.event_id, "liked_id": self.session_id},
                self._on_like_change,
            ),
            self.store.subscribe(
                MESSAGES,
                {"event_id": self.event_id, "to_id": self.session_id},
                self._on_message_change,
            ),
        ]
        logger.info("session_attached session=%s event_id=%s", self.session_id, self.event_id)

    def detach(self) -> None:
        live, self._live = self._live, []
        for subscription in live:
            subscription.close()

    def close(self) -> None:
        self.detach()
        internal, self._internal = self._internal, []
        for subscription in internal:
            subscription.close()
        cancelled = self.scheduler.cancel_all()
        logger.info("session_closed session=%s cancelled_fallbacks=%s", self.session_id, cancelled)

    async def __aenter__(self) -> "ClientSession":
        self.attach()
        return self

    async def __aexit__(self, *_exc) -> None:
        self.close()

    def set_lifecycle(self, state: str) -> bool:
        return self.tracker.on_lifecycle(state)

    @property
    def online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> FlushResult | None:
        """Record connectivity. Being online replays whatever is queued."""
        self._online = bool(online)
        logger.info("session_connectivity session=%s online=%s", self.session_id, self._online)
        if self._online:
            result = await self.offline_queue.flush()
            logger.info(
                "offline_flush_done session=%s applied=%s remaining=%s",
                self.session_id,
                result.applied,
                result.remaining,
            )
            return result
        return None

    # --- user actions ---
    async def like(self, liked_id: str) -> LikeResult:
        liked_norm = (liked_id or "").strip()
        if not liked_norm or liked_norm == self.session_id:
            return LikeResult(ok=False, status="rejected", error="invalid_target")
        like_id = uuid.uuid4().hex
        args = {
            "id": like_id,
            "event_id": self.event_id,
            "liker_id": self.session_id,
            "liked_id": liked_norm,
            "created_at": utc_now().isoformat(),
        }
        metadata = {"session_id": self.session_id}
        if not self._online:
            await asyncio.to_thread(self.offline_queue.enqueue, "create_like", args, metadata)
            return LikeResult(ok=True, status="queued", like_id=like_id)
        try:
            run = await self.offline_queue.run_or_enqueue("create_like", args, metadata)
        except StorePermissionError:
            logger.info("like_rejected session=%s liked=%s", self.session_id, liked_norm)
            return LikeResult(
                ok=False,
                status="rejected",
                error="permission_denied",
                message=VISIBILITY_DENIED_MESSAGE,
            )
        if run.status == "queued":
            return LikeResult(ok=True, status="queued", like_id=like_id)
        record: LikeRecord = run.value
        outcome = await self.reconciler.on_like_written(record)
        return LikeResult(ok=True, status="created", like_id=record.id, outcome=outcome)

    async def send_message(self, to_id: str, content: str) -> MessageResult:
        to_norm = (to_id or "").strip()
        text = (content or "").strip()
        if not to_norm or to_norm == self.session_id:
            return MessageResult(ok=False, status="rejected", error="invalid_recipient")
        if not text:
            return MessageResult(ok=False, status="rejected", error="empty_message")
        message_id = uuid.uuid4().hex
        args = {
            "id": message_id,
            "event_id": self.event_id,
            "from_id": self.session_id,
            "to_id": to_norm,
            "content": text,
            "created_at": utc_now().isoformat(),
        }
        metadata = {"session_id": self.session_id}
        if not self._online:
            await asyncio.to_thread(self.offline_queue.enqueue, "send_message", args, metadata)
            return MessageResult(ok=True, status="queued", message_id=message_id)
        try:
            run = await self.offline_queue.run_or_enqueue("send_message", args, metadata)
        except StorePermissionError:
            return MessageResult(ok=False, status="rejected", message_id=message_id, error="permission_denied")
        status = "queued" if run.status == "queued" else "sent"
        return MessageResult(ok=True, status=status, message_id=message_id)

    def receive_push(self, payload: dict[str, Any]) -> RouteDecision:
        return self.router.handle_push(payload)

    def drain_events(self) -> list[InAppEvent]:
        events = list(self._events)
        self._events.clear()
        return events

    # --- replayable operations ---
    async def _create_like(self, args: dict[str, Any]) -> LikeRecord:
        existing = await self.store.filter(
            LIKES,
            {"event_id": args["event_id"], "liker_id": args["liker_id"], "liked_id": args["liked_id"]},
        )
        if existing:
            logger.info("like_exists like_id=%s liker=%s", existing[0].get("id"), args["liker_id"])
            return LikeRecord.from_dict(existing[0])
        for profile_id in (args["liker_id"], args["liked_id"]):
            profile = await self.store.get(PROFILES, profile_id)
            if not profile or not profile.get("is_visible", True):
                logger.info("like_blocked_not_visible liker=%s profile=%s", args["liker_id"], profile_id)
                raise StorePermissionError("profile_not_visible")
        doc = {
            **args,
            "is_mutual": False,
            "liker_notified": False,
            "liked_notified": False,
        }
        record = LikeRecord.from_dict(doc)
        await self.store.create(LIKES, doc)
        logger.info("like_created like_id=%s liker=%s liked=%s", record.id, record.liker_id, record.liked_id)
        return record

    async def _send_message(self, args: dict[str, Any]) -> bool:
        created = await self.store.create(MESSAGES, dict(args))
        if not created:
            logger.info("message_exists message_id=%s", args["id"])
            return False
        if self._push_dispatch is None:
            return True
        sender_name = await self.reconciler.display_name(args["from_id"])
        message = message_push_message(
            event_id=args["event_id"],
            sender_id=args["from_id"],
            sender_name=sender_name,
            content=args["content"],
        )
        try:
            await self._push_dispatch(args["to_id"], message)
        except Exception:
            logger.exception("message_push_failed message_id=%s recipient=%s", args["id"], args["to_id"])
        return True

    # --- change streams ---
    async def _on_like_change(self, event: ChangeEvent) -> None:
        try:
            like = LikeRecord.from_dict(event.data)
        except ValueError:
            logger.warning("like_change_invalid session=%s doc_id=%s", self.session_id, event.doc_id)
            return
        if not like.is_mutual:
            await self.reconciler.on_like_written(like)
            return
        if event.initial:
            if not like.is_notified(self.session_id):
                await self._recover_unnotified_match(like)
            return
        if (event.previous or {}).get("is_mutual"):
            return
        if not is_completing_record(like) or self.reconciler.has_emitted(like.pair_key):
            return
        partner_id = like.partner_of(self.session_id)
        self._schedule_fallback(
            NotificationType.MATCH,
            partner_id,
            self.match_fallback_delay_ms,
        )
        await self._resolve_partner_name(partner_id)

    async def _recover_unnotified_match(self, like: LikeRecord) -> None:
        if not await self.reconciler.claim_notification(self.session_id, like):
            return
        partner_id = like.partner_of(self.session_id)
        partner_name = await self._resolve_partner_name(partner_id)
        logger.info("match_recovered session=%s pair=%s", self.session_id, like.pair_key)
        self.router.route(
            local_envelope(
                kind=NotificationType.MATCH,
                event_id=like.event_id,
                partner_id=partner_id,
                partner_name=partner_name,
            )
        )

    async def _on_message_change(self, event: ChangeEvent) -> None:
        if event.initial or event.kind != "added":
            return
        sender_id = str(event.data.get("from_id") or "").strip()
        if not sender_id:
            logger.warning("message_change_invalid session=%s doc_id=%s", self.session_id, event.doc_id)
            return
        preview = message_preview(str(event.data.get("content") or ""))
        self._schedule_fallback(
            NotificationType.MESSAGE,
            sender_id,
            self.message_fallback_delay_ms,
            preview=preview,
        )
        await self._resolve_partner_name(sender_id)

    # --- notifications ---
    def _on_match_found(self, match: MatchEvent) -> None:
        self._partner_names[match.partner_id] = match.partner_name
        self.scheduler.cancel_fallback(fallback_key(NotificationType.MATCH, match.pair_key))
        self.router.route(
            local_envelope(
                kind=NotificationType.MATCH,
                event_id=match.event_id,
                partner_id=match.partner_id,
                partner_name=match.partner_name,
            )
        )

    def _schedule_fallback(
        self,
        kind: NotificationType,
        partner_id: str,
        delay_ms: int,
        *,
        preview: str | None = None,
    ) -> None:
        key = fallback_key(kind, make_pair_key(self.session_id, partner_id))

        def render() -> NotificationEnvelope:
            return local_envelope(
                kind=kind,
                event_id=self.event_id,
                partner_id=partner_id,
                partner_name=self._partner_names.get(partner_id, ""),
                preview=preview,
            )

        self.scheduler.schedule_fallback(key, delay_ms, render)

    async def _resolve_partner_name(self, partner_id: str) -> str:
        name = self._partner_names.get(partner_id)
        if name is None:
            name = await self.reconciler.display_name(partner_id)
            self._partner_names[partner_id] = name
        return name

    def _deliver_fallback(self, envelope: NotificationEnvelope):
        if envelope.type is NotificationType.MATCH and envelope.partner_id:
            return self._deliver_match_fallback(envelope)
        self.router.route(envelope)
        return None

    async def _deliver_match_fallback(self, envelope: NotificationEnvelope) -> None:
        """Surface a match nobody pushed, and record it so a later attach stays quiet."""
        try:
            docs = await self.store.filter(
                LIKES,
                {"event_id": self.event_id, "liker_id": self.session_id, "liked_id": envelope.partner_id},
            )
            if docs:
                await self.reconciler.claim_notification(self.session_id, LikeRecord.from_dict(docs[0]))
        except (StoreError, ValueError) as exc:
            logger.warning("fallback_claim_failed session=%s partner=%s error=%s", self.session_id, envelope.partner_id, exc)
        self.router.route(envelope)
