from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable
import asyncio
import inspect
import logging

from dedup_cache import DedupCache
from models import (
    DEFAULT_PARTNER_NAME,
    LIKES,
    PROFILES,
    LikeRecord,
    MatchEvent,
    PushMessage,
    match_push_message,
)
from store import DocumentStore, StoreError, StoreUnavailableError, UpdateResult, retry_with_backoff
from subscriptions import Subscription


logger = logging.getLogger("hooked.match")


LOOKUP_BACKOFF_SECONDS = [0.25, 1.0, 4.0]
EMITTED_MEMORY_SECONDS = 600.0

PushDispatch = Callable[[str, PushMessage], Awaitable[bool]]
MatchListener = Callable[[MatchEvent], Any]


class ReconcileStatus(str, Enum):
    ALREADY_MUTUAL = "already_mutual"
    NOT_MUTUAL = "not_mutual"
    MATCHED = "matched"
    LOST_RACE = "lost_race"
    LOOKUP_FAILED = "lookup_failed"
    RETRYABLE = "retryable"
    FAILED = "failed"
    INVALID = "invalid"


@dataclass(frozen=True)
class ReconcileOutcome:
    status: ReconcileStatus
    pair_key: str | None = None
    match: MatchEvent | None = None
    error: str | None = None


def is_completing_record(like: LikeRecord) -> bool:
    """True for the record of a pair that is flipped second."""
    return like.liker_id > like.liked_id


def flip_order(a: LikeRecord, b: LikeRecord) -> tuple[LikeRecord, LikeRecord]:
    return (a, b) if a.liker_id < b.liker_id else (b, a)


class MatchReconciler:
    """Detects mutual likes for one session and emits ``MatchFound`` once per pair.

    Any number of subscriptions may feed ``on_like_written`` with the same
    record concurrently. Exclusivity comes from conditional updates only:
    both records of a pair are flipped from ``is_mutual == False`` in a fixed
    order, and the caller whose update flips the second record is the only
    one that emits. Notifications are then gated by claiming each recipient's
    notified flag the same way.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        session_id: str,
        push_dispatch: PushDispatch | None = None,
        lookup_delays: list[float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self.session_id = session_id
        self._push_dispatch = push_dispatch
        self._lookup_delays = list(LOOKUP_BACKOFF_SECONDS if lookup_delays is None else lookup_delays)
        self._sleep = sleep
        self._emitted = DedupCache(max_entries=1024, ttl_seconds=EMITTED_MEMORY_SECONDS)
        self._listeners: dict[int, MatchListener] = {}
        self._next_listener_id = 0

    def subscribe(self, listener: MatchListener) -> Subscription:
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener
        return Subscription(lambda: self._listeners.pop(listener_id, None), name="match_found")

    def has_emitted(self, pair_key: str) -> bool:
        return self._emitted.seen(pair_key)

    async def on_like_written(self, like: LikeRecord | dict[str, Any]) -> ReconcileOutcome:
        try:
            record = like if isinstance(like, LikeRecord) else LikeRecord.from_dict(like)
        except ValueError:
            logger.warning("like_invalid session=%s data=%r", self.session_id, like)
            return ReconcileOutcome(status=ReconcileStatus.INVALID, error="invalid_like_record")
        if not record.involves(self.session_id):
            logger.warning("like_not_for_session session=%s like_id=%s", self.session_id, record.id)
            return ReconcileOutcome(status=ReconcileStatus.INVALID, error="like_not_for_session")

        pair_key = record.pair_key
        if record.is_mutual:
            return ReconcileOutcome(status=ReconcileStatus.ALREADY_MUTUAL, pair_key=pair_key)

        try:
            reciprocal = await retry_with_backoff(
                lambda: self._find_reciprocal(record),
                delays=self._lookup_delays,
                label="reciprocal_lookup",
                sleep=self._sleep,
            )
        except StoreUnavailableError as exc:
            logger.warning("reciprocal_lookup_dropped pair=%s like_id=%s error=%s", pair_key, record.id, exc)
            return ReconcileOutcome(status=ReconcileStatus.LOOKUP_FAILED, pair_key=pair_key, error=str(exc))
        except ValueError:
            logger.warning("reciprocal_invalid pair=%s like_id=%s", pair_key, record.id)
            return ReconcileOutcome(status=ReconcileStatus.INVALID, pair_key=pair_key, error="invalid_like_record")
        except StoreError as exc:
            logger.exception("reciprocal_lookup_failed pair=%s like_id=%s", pair_key, record.id)
            return ReconcileOutcome(status=ReconcileStatus.LOOKUP_FAILED, pair_key=pair_key, error=str(exc))

        if reciprocal is None:
            return ReconcileOutcome(status=ReconcileStatus.NOT_MUTUAL, pair_key=pair_key)

        first, second = flip_order(record, reciprocal)
        try:
            await self._store.update(LIKES, first.id, {"is_mutual": True}, {"is_mutual": False})
            completed = await self._store.update(LIKES, second.id, {"is_mutual": True}, {"is_mutual": False})
        except StoreUnavailableError as exc:
            logger.warning("mutual_flip_deferred pair=%s error=%s", pair_key, exc)
            return ReconcileOutcome(status=ReconcileStatus.RETRYABLE, pair_key=pair_key, error=str(exc))
        except StoreError as exc:
            logger.exception("mutual_flip_failed pair=%s", pair_key)
            return ReconcileOutcome(status=ReconcileStatus.FAILED, pair_key=pair_key, error=str(exc))

        if completed is UpdateResult.NOOP:
            logger.info("match_race_lost session=%s pair=%s", self.session_id, pair_key)
            return ReconcileOutcome(status=ReconcileStatus.LOST_RACE, pair_key=pair_key)

        # Recorded before the next await so change callbacks queued by the
        # flip already see it.
        self._emitted.remember(pair_key)
        partner_id = record.partner_of(self.session_id)
        partner_name = await self.display_name(partner_id)
        match = MatchEvent(
            pair_key=pair_key,
            event_id=record.event_id,
            partner_id=partner_id,
            partner_name=partner_name,
        )
        logger.info("match_found session=%s pair=%s event_id=%s", self.session_id, pair_key, record.event_id)
        self._emit(match)
        await self._notify_pair(record, reciprocal, match)
        return ReconcileOutcome(status=ReconcileStatus.MATCHED, pair_key=pair_key, match=match)

    async def claim_notification(self, recipient_id: str, like: LikeRecord) -> bool:
        """Claim the right to notify ``recipient_id`` about the pair of ``like``."""
        if not like.involves(recipient_id):
            raise ValueError("session_not_in_like")
        try:
            reciprocal = await self._find_reciprocal(like)
        except (StoreError, ValueError) as exc:
            logger.warning("claim_lookup_failed recipient=%s like_id=%s error=%s", recipient_id, like.id, exc)
            return False
        if reciprocal is None:
            logger.warning("claim_without_reciprocal recipient=%s like_id=%s", recipient_id, like.id)
            return False
        own, mirror = (like, reciprocal) if like.liker_id == recipient_id else (reciprocal, like)
        return await self._claim(recipient_id, own, mirror)

    async def display_name(self, session_id: str) -> str:
        try:
            profile = await self._store.get(PROFILES, session_id)
        except StoreError:
            logger.warning("profile_lookup_failed session=%s", session_id)
            return DEFAULT_PARTNER_NAME
        if not profile:
            return DEFAULT_PARTNER_NAME
        return str(profile.get("first_name") or "").strip() or DEFAULT_PARTNER_NAME

    async def _find_reciprocal(self, like: LikeRecord) -> LikeRecord | None:
        docs = await self._store.filter(
            LIKES,
            {"event_id": like.event_id, "liker_id": like.liked_id, "liked_id": like.liker_id},
        )
        if not docs:
            return None
        if len(docs) > 1:
            logger.warning("reciprocal_duplicates pair=%s count=%s", like.pair_key, len(docs))
        return LikeRecord.from_dict(docs[0])

    async def _notify_pair(self, record: LikeRecord, reciprocal: LikeRecord, match: MatchEvent) -> None:
        own, theirs = (record, reciprocal) if record.liker_id == self.session_id else (reciprocal, record)
        await self._claim(self.session_id, own, theirs)
        if self._push_dispatch is None:
            logger.info("match_push_skipped pair=%s recipient=%s reason=no_transport", match.pair_key, match.partner_id)
            return
        if await self._is_claimed(theirs):
            logger.info("partner_already_notified pair=%s partner=%s", match.pair_key, match.partner_id)
            return
        own_name = await self.display_name(self.session_id)
        message = match_push_message(event_id=match.event_id, sender_id=self.session_id, sender_name=own_name)
        try:
            sent = await self._push_dispatch(match.partner_id, message)
        except Exception:
            logger.exception("match_push_failed pair=%s recipient=%s", match.pair_key, match.partner_id)
            return
        logger.info("match_push_dispatched pair=%s recipient=%s sent=%s", match.pair_key, match.partner_id, sent)
        # The partner's flag stays unclaimed unless a push is on its way, so the
        # partner's own attach or fallback can still surface the match.
        if sent:
            await self._claim(match.partner_id, theirs, own)

    async def _is_claimed(self, like: LikeRecord) -> bool:
        try:
            current = await self._store.get(LIKES, like.id)
        except StoreError as exc:
            logger.warning("notified_check_failed like_id=%s error=%s", like.id, exc)
            return False
        return bool(current and current.get("liker_notified"))

    async def _claim(self, recipient_id: str, own: LikeRecord, mirror: LikeRecord) -> bool:
        try:
            claimed = await self._store.update(
                LIKES, own.id, {"liker_notified": True}, {"liker_notified": False}
            )
        except StoreError as exc:
            logger.warning("notified_claim_failed recipient=%s like_id=%s error=%s", recipient_id, own.id, exc)
            return False
        if claimed is UpdateResult.NOOP:
            return False
        logger.info("notified_claimed recipient=%s pair=%s", recipient_id, own.pair_key)
        try:
            await self._store.update(LIKES, mirror.id, {"liked_notified": True}, {"liked_notified": False})
        except StoreError as exc:
            # The claim on ``own`` is authoritative; the mirror flag is informational.
            logger.warning("notified_mirror_failed recipient=%s like_id=%s error=%s", recipient_id, mirror.id, exc)
        return True

    def _emit(self, match: MatchEvent) -> None:
        for listener in list(self._listeners.values()):
            try:
                result = listener(match)
                if inspect.isawaitable(result):
                    asyncio.ensure_future(result)
            except Exception:
                logger.exception("match_listener_failed pair=%s", match.pair_key)
