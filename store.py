from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence, TypeVar
import asyncio
import copy
import inspect
import logging

from subscriptions import Subscription


logger = logging.getLogger("hooked.store")

T = TypeVar("T")

ChangeCallback = Callable[["ChangeEvent"], Any]
WriteGuard = Callable[[str, dict[str, Any]], None]


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    """Transient: network down or store temporarily unreachable."""


class StorePermissionError(StoreError):
    """The store rejected the write (e.g. a visibility rule failed)."""


class DocumentNotFoundError(StoreError):
    pass


class UpdateResult(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # "added" | "modified"
    collection: str
    doc_id: str
    data: dict[str, Any]
    previous: dict[str, Any] | None = None
    initial: bool = False


class DocumentStore:
    """Interface of the shared document store.

    Collections are opaque key/value maps of JSON-like documents, each with an
    ``id`` field. ``where`` filters are field-equality maps.
    """

    async def filter(self, collection: str, where: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def create(self, collection: str, doc: dict[str, Any]) -> bool:
        """Insert ``doc``. Returns False when a document with that id exists."""
        raise NotImplementedError

    async def update(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        precondition: dict[str, Any] | None = None,
    ) -> UpdateResult:
        raise NotImplementedError

    def subscribe(
        self,
        collection: str,
        where: dict[str, Any] | None,
        on_change: ChangeCallback,
        *,
        include_existing: bool = True,
    ) -> Subscription:
        raise NotImplementedError


def _matches(doc: dict[str, Any], where: dict[str, Any] | None) -> bool:
    if not where:
        return True
    return all(doc.get(key) == value for key, value in where.items())


def _sort_key(doc: dict[str, Any]) -> tuple[str, str]:
    return (str(doc.get("created_at") or ""), str(doc.get("id") or ""))


@dataclass
class _Subscriber:
    collection: str
    where: dict[str, Any] | None
    on_change: ChangeCallback


class MemoryDocumentStore(DocumentStore):
    """In-process store with change streams delivered as asyncio tasks.

    Every operation yields to the loop once before touching data, so callers
    interleave the way they would against a remote store. The check and the
    write of a conditional update happen without a suspension point in
    between, which is what makes the precondition a compare-and-set.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._subscribers: dict[int, _Subscriber] = {}
        self._next_subscriber_id = 0
        self._pending: set[asyncio.Task] = set()
        self._online = True
        self._write_guard: WriteGuard | None = None
        self._injected_failures: dict[str, list[Exception]] = {}

    # --- test and connectivity hooks ---
    def set_online(self, online: bool) -> None:
        self._online = bool(online)
        logger.info("store_connectivity online=%s", self._online)

    @property
    def online(self) -> bool:
        return self._online

    def set_write_guard_for_tests(self, guard: WriteGuard | None) -> None:
        self._write_guard = guard

    def fail_next_for_tests(self, operation: str, exc: Exception, *, times: int = 1) -> None:
        self._injected_failures.setdefault(operation, []).extend([exc] * max(int(times), 1))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def settle(self) -> None:
        """Wait until every queued change callback (and what it spawned) ran."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await asyncio.sleep(0)

    # --- operations ---
    async def _io(self, operation: str) -> None:
        await asyncio.sleep(0)
        if not self._online:
            raise StoreUnavailableError("store_unavailable")
        queued = self._injected_failures.get(operation)
        if queued:
            raise queued.pop(0)

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def filter(self, collection: str, where: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        await self._io("filter")
        docs = [copy.deepcopy(doc) for doc in self._collection(collection).values() if _matches(doc, where)]
        docs.sort(key=_sort_key)
        return docs

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        await self._io("get")
        doc = self._collection(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def create(self, collection: str, doc: dict[str, Any]) -> bool:
        await self._io("create")
        doc_id = str(doc.get("id") or "").strip()
        if not doc_id:
            raise ValueError("missing_document_id")
        if self._write_guard:
            self._write_guard(collection, doc)
        docs = self._collection(collection)
        if doc_id in docs:
            return False
        stored = copy.deepcopy(doc)
        docs[doc_id] = stored
        self._publish(collection, doc_id, stored, previous=None)
        return True

    async def update(
        self,
        collection: str,
        doc_id: str,
        patch: dict[str, Any],
        precondition: dict[str, Any] | None = None,
    ) -> UpdateResult:
        await self._io("update")
        docs = self._collection(collection)
        current = docs.get(doc_id)
        if current is None:
            raise DocumentNotFoundError(f"{collection}/{doc_id}")
        if precondition and not _matches(current, precondition):
            return UpdateResult.NOOP
        updated = {**current, **copy.deepcopy(patch)}
        if self._write_guard:
            self._write_guard(collection, updated)
        docs[doc_id] = updated
        self._publish(collection, doc_id, updated, previous=current)
        return UpdateResult.APPLIED

    def subscribe(
        self,
        collection: str,
        where: dict[str, Any] | None,
        on_change: ChangeCallback,
        *,
        include_existing: bool = True,
    ) -> Subscription:
        subscriber_id = self._next_subscriber_id
        self._next_subscriber_id += 1
        subscriber = _Subscriber(collection=collection, where=dict(where or {}), on_change=on_change)
        self._subscribers[subscriber_id] = subscriber
        if include_existing:
            existing = [doc for doc in self._collection(collection).values() if _matches(doc, subscriber.where)]
            for doc in sorted(existing, key=_sort_key):
                event = ChangeEvent(
                    kind="added",
                    collection=collection,
                    doc_id=str(doc["id"]),
                    data=copy.deepcopy(doc),
                    initial=True,
                )
                self._dispatch(subscriber_id, event)
        return Subscription(
            lambda: self._subscribers.pop(subscriber_id, None),
            name=f"store:{collection}",
        )

    # --- change stream ---
    def _publish(
        self,
        collection: str,
        doc_id: str,
        doc: dict[str, Any],
        *,
        previous: dict[str, Any] | None,
    ) -> None:
        for subscriber_id, subscriber in list(self._subscribers.items()):
            if subscriber.collection != collection or not _matches(doc, subscriber.where):
                continue
            event = ChangeEvent(
                kind="added" if previous is None else "modified",
                collection=collection,
                doc_id=doc_id,
                data=copy.deepcopy(doc),
                previous=copy.deepcopy(previous) if previous is not None else None,
            )
            self._dispatch(subscriber_id, event)

    def _dispatch(self, subscriber_id: int, event: ChangeEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("change_dropped_no_loop collection=%s doc_id=%s", event.collection, event.doc_id)
            return
        task = loop.create_task(self._deliver(subscriber_id, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, subscriber_id: int, event: ChangeEvent) -> None:
        subscriber = self._subscribers.get(subscriber_id)
        if subscriber is None:
            return
        try:
            result = subscriber.on_change(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "subscription_callback_failed collection=%s doc_id=%s",
                event.collection,
                event.doc_id,
            )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    delays: Sequence[float],
    label: str,
    retry_on: tuple[type[Exception], ...] = (StoreUnavailableError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= len(delays):
                logger.warning("retry_exhausted op=%s attempts=%s error=%s", label, attempt + 1, exc)
                raise
            delay = delays[attempt]
            attempt += 1
            logger.info("retry_scheduled op=%s attempt=%s delay=%s", label, attempt, delay)
            await sleep(delay)
