from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any
import asyncio
import logging
import os

from fastapi import FastAPI, HTTPException
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from models import PROFILES, PushMessage, deep_link_for, general_push_message, utc_now
from notification_router import InAppEvent, RouteDecision
from push_notifications import PushNotificationService
from session import (
    DEFAULT_MATCH_FALLBACK_DELAY_MS,
    DEFAULT_MESSAGE_FALLBACK_DELAY_MS,
    ClientSession,
)
from store import MemoryDocumentStore, StoreError

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("hooked.app")


def _get_env(name: str) -> str:
    v = os.getenv(name, "").strip()
    return v


def _env_int(name: str, default: int) -> int:
    raw = _get_env(name)
    try:
        return int(raw) if raw else default
    except ValueError:
        logger.warning("config_invalid_int name=%s value=%s", name, raw)
        return default


PUSH_NOTIFICATIONS_ENABLED = os.getenv("PUSH_NOTIFICATIONS_ENABLED", "false").lower() in {"1", "true", "yes"}
VAPID_PRIVATE_KEY = _get_env("VAPID_PRIVATE_KEY")
VAPID_SUBJECT = _get_env("VAPID_SUBJECT") or "mailto:admin@hooked.local"
PUSH_DB_PATH = _get_env("PUSH_DB_PATH") or str(BASE_DIR / "data" / "notifications.sqlite3")
OFFLINE_QUEUE_DIR = _get_env("OFFLINE_QUEUE_DIR") or str(BASE_DIR / "data" / "offline")
MATCH_FALLBACK_DELAY_MS = _env_int("MATCH_FALLBACK_DELAY_MS", DEFAULT_MATCH_FALLBACK_DELAY_MS)
MESSAGE_FALLBACK_DELAY_MS = _env_int("MESSAGE_FALLBACK_DELAY_MS", DEFAULT_MESSAGE_FALLBACK_DELAY_MS)

PUSH_SERVICE = PushNotificationService(
    db_path=PUSH_DB_PATH,
    enabled=PUSH_NOTIFICATIONS_ENABLED,
    vapid_private_key=VAPID_PRIVATE_KEY,
    vapid_subject=VAPID_SUBJECT,
)
STORE = MemoryDocumentStore()
SESSIONS: dict[str, ClientSession] = {}


@asynccontextmanager
async def lifespan(_app: FastAPI):
    PUSH_SERVICE.start_worker()
    try:
        yield
    finally:
        for session in list(SESSIONS.values()):
            session.close()
        SESSIONS.clear()
        PUSH_SERVICE.stop_worker()


app = FastAPI(lifespan=lifespan)


async def _push_dispatch(recipient_id: str, message: PushMessage) -> bool:
    return await PUSH_SERVICE.dispatch(recipient_id, message)


def _get_session(session_id: str) -> ClientSession:
    session = SESSIONS.get((session_id or "").strip())
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return session


def _event_out(event: InAppEvent) -> dict[str, Any]:
    out = asdict(event)
    out["type"] = event.type.value
    return out


def _decision_out(decision: RouteDecision) -> dict[str, Any]:
    return {
        "delivered": decision.delivered,
        "reason": decision.reason,
        "presentation": asdict(decision.presentation),
        "in_app": _event_out(decision.in_app) if decision.in_app else None,
        "cancelled_fallback": decision.cancelled_fallback,
    }


class SessionIn(BaseModel):
    session_id: str
    event_id: str
    first_name: str | None = None
    is_visible: bool = True


class LikeIn(BaseModel):
    liked_id: str


class MessageIn(BaseModel):
    to_id: str
    content: str


class LifecycleIn(BaseModel):
    state: str


class ConnectivityIn(BaseModel):
    online: bool


class PushIn(BaseModel):
    payload: dict


class PushRegisterIn(BaseModel):
    session_id: str
    subscription: dict


class PushUnregisterIn(BaseModel):
    session_id: str | None = None
    endpoint: str | None = None


class PushTestIn(BaseModel):
    session_id: str
    title: str | None = None
    body: str | None = None
    url: str | None = None


@app.post("/api/sessions")
async def session_open(body: SessionIn):
    session_id = (body.session_id or "").strip()
    event_id = (body.event_id or "").strip()
    if not session_id or not event_id:
        raise HTTPException(status_code=400, detail="Missing session_id or event_id")

    existing = SESSIONS.get(session_id)
    if existing is not None:
        if existing.event_id != event_id:
            raise HTTPException(status_code=409, detail="Session is bound to another event")
        return {"ok": True, "session_id": session_id, "created": False}

    profile = {
        "id": session_id,
        "event_id": event_id,
        "first_name": (body.first_name or "").strip(),
        "is_visible": bool(body.is_visible),
        "created_at": utc_now().isoformat(),
    }
    try:
        if not await STORE.create(PROFILES, profile):
            await STORE.update(PROFILES, session_id, {k: v for k, v in profile.items() if k != "created_at"})
    except StoreError as exc:
        raise HTTPException(status_code=503, detail="Store unavailable") from exc

    session = ClientSession(
        session_id=session_id,
        event_id=event_id,
        store=STORE,
        queue_db_path=Path(OFFLINE_QUEUE_DIR) / f"{session_id}.sqlite3",
        push_dispatch=_push_dispatch,
        match_fallback_delay_ms=MATCH_FALLBACK_DELAY_MS,
        message_fallback_delay_ms=MESSAGE_FALLBACK_DELAY_MS,
    )
    session.attach()
    SESSIONS[session_id] = session
    logger.info("session_opened session=%s event_id=%s", session_id, event_id)
    return {"ok": True, "session_id": session_id, "created": True}


@app.delete("/api/sessions/{session_id}")
async def session_close(session_id: str):
    session = _get_session(session_id)
    SESSIONS.pop(session.session_id, None)
    session.close()
    return {"ok": True}


@app.post("/api/sessions/{session_id}/likes")
async def session_like(session_id: str, body: LikeIn):
    session = _get_session(session_id)
    result = await session.like(body.liked_id)
    if not result.ok:
        if result.error == "permission_denied":
            raise HTTPException(status_code=403, detail=result.message)
        raise HTTPException(status_code=400, detail=result.error)
    outcome = result.outcome
    return {
        "ok": True,
        "status": result.status,
        "like_id": result.like_id,
        "reconcile": outcome.status.value if outcome else None,
        "match": bool(outcome and outcome.match),
    }


@app.post("/api/sessions/{session_id}/messages")
async def session_message(session_id: str, body: MessageIn):
    session = _get_session(session_id)
    result = await session.send_message(body.to_id, body.content)
    if not result.ok:
        status_code = 403 if result.error == "permission_denied" else 400
        raise HTTPException(status_code=status_code, detail=result.error)
    return {"ok": True, "status": result.status, "message_id": result.message_id}


@app.post("/api/sessions/{session_id}/lifecycle")
async def session_lifecycle(session_id: str, body: LifecycleIn):
    session = _get_session(session_id)
    try:
        foreground = session.set_lifecycle(body.state)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "foreground": foreground}


@app.post("/api/sessions/{session_id}/connectivity")
async def session_connectivity(session_id: str, body: ConnectivityIn):
    session = _get_session(session_id)
    flushed = await session.set_online(body.online)
    return {
        "ok": True,
        "online": session.online,
        "flush": asdict(flushed) if flushed else None,
        "pending": await asyncio.to_thread(len, session.offline_queue),
    }


@app.post("/api/sessions/{session_id}/push")
async def session_push(session_id: str, body: PushIn):
    session = _get_session(session_id)
    decision = session.receive_push(body.payload)
    return {"ok": decision.delivered, **_decision_out(decision)}


@app.get("/api/sessions/{session_id}/events")
async def session_events(session_id: str):
    session = _get_session(session_id)
    return {"ok": True, "events": [_event_out(event) for event in session.drain_events()]}


@app.post("/api/push/register")
def push_register(body: PushRegisterIn):
    try:
        sub_id = PUSH_SERVICE.register_subscription(subscription=body.subscription, session_id=body.session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "subscription_id": sub_id}


@app.post("/api/push/unregister")
def push_unregister(body: PushUnregisterIn):
    try:
        deactivated = PUSH_SERVICE.unregister_subscription(
            session_id=(body.session_id or "").strip() or None,
            endpoint=(body.endpoint or "").strip() or None,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "deactivated": deactivated}


@app.post("/api/push/test")
def push_test(body: PushTestIn):
    session_id = (body.session_id or "").strip()
    if not session_id:
        raise HTTPException(status_code=400, detail="Missing session_id")

    message = general_push_message(
        title=body.title or "Hooked test",
        body=body.body or "If you see this, push works.",
        notification_id=f"test:{session_id}:{utc_now().timestamp():.0f}",
        url=body.url,
    )
    result = PUSH_SERVICE.enqueue_notification(recipient_id=session_id, message=message)
    return {"ok": result.targeted > 0, "targeted": result.targeted}


@app.get("/open")
def open_notification(type: str | None = None, partnerId: str | None = None, partnerName: str | None = None):
    target = deep_link_for(type, partnerId, partnerName)
    return RedirectResponse(url=target, status_code=303)
