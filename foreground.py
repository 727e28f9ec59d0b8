from __future__ import annotations

from typing import Callable
import logging

from subscriptions import Subscription


logger = logging.getLogger("hooked.session")

FOREGROUND_STATES = {"active"}
LIFECYCLE_STATES = {"active", "inactive", "background"}


class ForegroundTracker:
    def __init__(self, *, initial_state: str = "active") -> None:
        self._state = self._normalize(initial_state)
        self._listeners: dict[int, Callable[[bool], None]] = {}
        self._next_listener_id = 0

    @staticmethod
    def _normalize(state: str) -> str:
        state_norm = (state or "").strip().lower()
        if state_norm not in LIFECYCLE_STATES:
            raise ValueError("invalid_lifecycle_state")
        return state_norm

    @property
    def state(self) -> str:
        return self._state

    def is_foreground(self) -> bool:
        return self._state in FOREGROUND_STATES

    def on_lifecycle(self, state: str) -> bool:
        """Record a lifecycle transition. Returns the new foreground flag."""
        state_norm = self._normalize(state)
        was_foreground = self.is_foreground()
        self._state = state_norm
        now_foreground = self.is_foreground()
        if now_foreground != was_foreground:
            logger.info("foreground_changed state=%s foreground=%s", state_norm, now_foreground)
            for listener in list(self._listeners.values()):
                try:
                    listener(now_foreground)
                except Exception:
                    logger.exception("foreground_listener_failed state=%s", state_norm)
        return now_foreground

    def subscribe(self, listener: Callable[[bool], None]) -> Subscription:
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener
        return Subscription(lambda: self._listeners.pop(listener_id, None), name="foreground")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
