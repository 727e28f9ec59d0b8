from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
import asyncio
import inspect
import logging

from models import NotificationEnvelope


logger = logging.getLogger("hooked.fallback")

RenderFn = Callable[[], NotificationEnvelope]
Deliver = Callable[[NotificationEnvelope], Any]


@dataclass
class _PendingFallback:
    key: str
    handle: asyncio.TimerHandle
    render_fn: RenderFn


class LocalFallbackScheduler:
    """One-shot local notifications that stand in for a push that never came.

    A fallback is keyed by the pair it is about; a push for the same pair
    cancels it through ``cancel_fallback``.
    """

    def __init__(self, *, deliver: Deliver) -> None:
        self._deliver = deliver
        self._pending: dict[str, _PendingFallback] = {}
        self.fired_count = 0

    def schedule_fallback(self, pair_key: str, delay_ms: int, render_fn: RenderFn) -> bool:
        if pair_key in self._pending:
            logger.debug("fallback_already_pending key=%s", pair_key)
            return False
        loop = asyncio.get_running_loop()
        delay_seconds = max(int(delay_ms), 0) / 1000.0
        handle = loop.call_later(delay_seconds, self._fire, pair_key)
        self._pending[pair_key] = _PendingFallback(key=pair_key, handle=handle, render_fn=render_fn)
        logger.info("fallback_scheduled key=%s delay_ms=%s", pair_key, delay_ms)
        return True

    def cancel_fallback(self, pair_key: str) -> bool:
        pending = self._pending.pop(pair_key, None)
        if pending is None:
            return False
        pending.handle.cancel()
        logger.info("fallback_cancelled key=%s", pair_key)
        return True

    def cancel_all(self) -> int:
        keys = list(self._pending)
        for key in keys:
            self.cancel_fallback(key)
        return len(keys)

    def is_pending(self, pair_key: str) -> bool:
        return pair_key in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _fire(self, pair_key: str) -> None:
        pending = self._pending.pop(pair_key, None)
        if pending is None:
            return
        try:
            envelope = pending.render_fn()
        except Exception:
            logger.exception("fallback_render_failed key=%s", pair_key)
            return
        self.fired_count += 1
        logger.info("fallback_fired key=%s notification_id=%s", pair_key, envelope.id)
        try:
            result = self._deliver(envelope)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("fallback_delivery_failed key=%s", pair_key)
