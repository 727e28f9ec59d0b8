from __future__ import annotations

from typing import Callable
import logging


logger = logging.getLogger("hooked.session")


class Subscription:
    """Disposer returned by every subscribe call. Close it exactly once."""

    def __init__(self, unsubscribe: Callable[[], None], *, name: str = "subscription") -> None:
        self._unsubscribe: Callable[[], None] | None = unsubscribe
        self.name = name

    @property
    def closed(self) -> bool:
        return self._unsubscribe is None

    def close(self) -> None:
        unsubscribe = self._unsubscribe
        if unsubscribe is None:
            logger.warning("subscription_already_closed name=%s", self.name)
            return
        self._unsubscribe = None
        unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *_exc) -> None:
        if not self.closed:
            self.close()
