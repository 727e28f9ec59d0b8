from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable
import asyncio
import json
import logging
import sqlite3
import uuid

from store import StorePermissionError, StoreUnavailableError


logger = logging.getLogger("hooked.offline")


DEFAULT_MAX_QUEUE_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 5

OperationHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class QueuedAction:
    id: str
    operation: str
    args: dict[str, Any]
    metadata: dict[str, Any]
    enqueued_at: str
    attempt_count: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class FlushResult:
    applied: int = 0
    dropped: int = 0
    remaining: int = 0
    stopped_on: str | None = None
    error: str | None = None
    applied_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunResult:
    status: str  # "applied" | "queued"
    value: Any = None
    action_id: str | None = None


class OfflineActionQueue:
    """Durable FIFO of writes attempted while the store was unreachable.

    Items are replayed strictly in enqueue order and deleted one by one as
    they succeed, so a crash mid-flush resumes with the remainder. Handlers
    must be idempotent: the queue cannot tell "never sent" from "sent, but the
    acknowledgement was lost".
    """

    def __init__(
        self,
        *,
        db_path: str | Path,
        handlers: dict[str, OperationHandler] | None = None,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.db_path = Path(db_path)
        self.max_queue_size = max(int(max_queue_size), 1)
        self.max_attempts = max(int(max_attempts), 1)
        self._handlers: dict[str, OperationHandler] = dict(handlers or {})
        self._initialized = False
        self._flushing = False

    def register(self, operation: str, handler: OperationHandler) -> None:
        self._handlers[operation] = handler

    def init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._db() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offline_actions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    operation TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempt_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    enqueued_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_offline_actions_status ON offline_actions(status, seq)")
            conn.commit()
        self._initialized = True

    def enqueue(self, operation: str, args: dict[str, Any], metadata: dict[str, Any] | None = None) -> str:
        self._ensure_initialized()
        operation_norm = (operation or "").strip()
        if not operation_norm:
            raise ValueError("invalid_operation")
        action_id = uuid.uuid4().hex
        now_iso = self._utc_now().isoformat()
        serialized = json.dumps({"name": operation_norm, "args": args or {}}, ensure_ascii=False)
        with self._db() as conn:
            pending = conn.execute("SELECT COUNT(*) FROM offline_actions WHERE status = 'pending'").fetchone()[0]
            if pending >= self.max_queue_size:
                oldest = conn.execute(
                    "SELECT id FROM offline_actions WHERE status = 'pending' ORDER BY seq ASC LIMIT 1"
                ).fetchone()
                conn.execute("DELETE FROM offline_actions WHERE id = ?", (oldest["id"],))
                logger.warning("offline_queue_full dropped_action_id=%s size=%s", oldest["id"], pending)
            conn.execute(
                """
                INSERT INTO offline_actions (id, operation, metadata, status, attempt_count, enqueued_at, updated_at)
                VALUES (?, ?, ?, 'pending', 0, ?, ?)
                """,
                (action_id, serialized, json.dumps(metadata or {}, ensure_ascii=False), now_iso, now_iso),
            )
            conn.commit()
        logger.info("offline_action_enqueued action_id=%s operation=%s", action_id, operation_norm)
        return action_id

    def pending(self) -> list[QueuedAction]:
        self._ensure_initialized()
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM offline_actions WHERE status = 'pending' ORDER BY seq ASC"
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def failed(self) -> list[QueuedAction]:
        self._ensure_initialized()
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM offline_actions WHERE status = 'failed_permanent' ORDER BY seq ASC"
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def __len__(self) -> int:
        return len(self.pending())

    async def _pending_count(self) -> int:
        return await asyncio.to_thread(len, self)

    async def run_or_enqueue(
        self,
        operation: str,
        args: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> RunResult:
        """Run ``operation`` now; queue it for replay if the store is unreachable."""
        handler = self._handlers.get(operation)
        if handler is None:
            raise ValueError("unknown_operation")
        try:
            value = await handler(args)
        except StoreUnavailableError as exc:
            action_id = await asyncio.to_thread(self.enqueue, operation, args, metadata)
            logger.info("offline_action_deferred operation=%s action_id=%s error=%s", operation, action_id, exc)
            return RunResult(status="queued", action_id=action_id)
        return RunResult(status="applied", value=value)

    async def flush(self) -> FlushResult:
        if self._flushing:
            return FlushResult(remaining=await self._pending_count(), error="flush_in_progress")
        await asyncio.to_thread(self._ensure_initialized)
        self._flushing = True
        applied_ids: list[str] = []
        dropped = 0
        try:
            while True:
                action = await asyncio.to_thread(self._next_pending)
                if action is None:
                    break
                handler = self._handlers.get(action.operation)
                if handler is None:
                    await asyncio.to_thread(self._mark_failed_permanent, action, "unknown_operation")
                    dropped += 1
                    continue
                try:
                    await handler(action.args)
                except StorePermissionError as exc:
                    await asyncio.to_thread(self._mark_failed_permanent, action, str(exc) or "permission_denied")
                    dropped += 1
                    logger.warning("offline_action_rejected action_id=%s operation=%s", action.id, action.operation)
                    continue
                except Exception as exc:
                    attempts = action.attempt_count + 1
                    if attempts >= self.max_attempts:
                        await asyncio.to_thread(self._mark_failed_permanent, action, str(exc))
                        dropped += 1
                        logger.warning(
                            "offline_action_retired action_id=%s operation=%s attempts=%s",
                            action.id,
                            action.operation,
                            attempts,
                        )
                    else:
                        await asyncio.to_thread(self._mark_retry, action, str(exc))
                        logger.info(
                            "offline_flush_stopped action_id=%s operation=%s attempts=%s error=%s",
                            action.id,
                            action.operation,
                            attempts,
                            exc,
                        )
                    return FlushResult(
                        applied=len(applied_ids),
                        dropped=dropped,
                        remaining=await self._pending_count(),
                        stopped_on=action.id,
                        error=str(exc),
                        applied_ids=applied_ids,
                    )
                await asyncio.to_thread(self._delete, action.id)
                applied_ids.append(action.id)
                logger.info("offline_action_replayed action_id=%s operation=%s", action.id, action.operation)
        finally:
            self._flushing = False
        return FlushResult(applied=len(applied_ids), dropped=dropped, remaining=0, applied_ids=applied_ids)

    def _next_pending(self) -> QueuedAction | None:
        with self._db() as conn:
            row = conn.execute(
                "SELECT * FROM offline_actions WHERE status = 'pending' ORDER BY seq ASC LIMIT 1"
            ).fetchone()
        return self._row_to_action(row) if row else None

    def _delete(self, action_id: str) -> None:
        with self._db() as conn:
            conn.execute("DELETE FROM offline_actions WHERE id = ?", (action_id,))
            conn.commit()

    def _mark_retry(self, action: QueuedAction, error: str) -> None:
        now_iso = self._utc_now().isoformat()
        with self._db() as conn:
            conn.execute(
                """
                UPDATE offline_actions
                SET attempt_count=?, last_error=?, updated_at=?
                WHERE id=?
                """,
                (action.attempt_count + 1, (error or "")[:500], now_iso, action.id),
            )
            conn.commit()

    def _mark_failed_permanent(self, action: QueuedAction, error: str) -> None:
        now_iso = self._utc_now().isoformat()
        with self._db() as conn:
            conn.execute(
                """
                UPDATE offline_actions
                SET status='failed_permanent', attempt_count=?, last_error=?, updated_at=?
                WHERE id=?
                """,
                (action.attempt_count + 1, (error or "")[:500], now_iso, action.id),
            )
            conn.commit()

    @staticmethod
    def _row_to_action(row: sqlite3.Row) -> QueuedAction:
        operation = json.loads(row["operation"])
        return QueuedAction(
            id=row["id"],
            operation=str(operation.get("name") or ""),
            args=operation.get("args") or {},
            metadata=json.loads(row["metadata"] or "{}"),
            enqueued_at=row["enqueued_at"],
            attempt_count=int(row["attempt_count"]),
            last_error=row["last_error"],
        )

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=3000")
        return conn

    @contextmanager
    def _db(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _utc_now() -> datetime:
        return datetime.now(timezone.utc)
