"""FastAPI application for chatrelay."""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import conversations, db, events
from ._version import __version__
from .auth import Identity
from .auth_provider import AuthorityChainVerifier, extract_bearer_token, get_verifier
from .config import get_settings
from .errors import AuthError, ChatError, ForbiddenError, NotFoundError, ValidationError
from .hub import get_hub
from .metrics import metrics
from .models import (
    Conversation,
    IdentityInfo,
    Message,
    Notification,
    Presence,
    WireModel,
)
from .presence import schedule_presence_sweep, stop_presence_sweep
from .registry import Connection

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and start the presence sweep."""
    db.init_db()

    settings = get_settings()
    hub = get_hub()
    schedule_presence_sweep(hub.presence, hub.live_keys, settings.presence_sweep_interval)

    yield

    stop_presence_sweep()
    db.close_db()


app = FastAPI(
    title="chatrelay",
    description="Real-time chat delivery and presence",
    version=__version__,
    lifespan=lifespan,
)

if get_settings().cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # /api/messages/<id>/read -> messages/read
    parts = [p for p in request.url.path.split("/") if p]
    if len(parts) >= 2 and parts[0] == "api":
        endpoint = parts[1]
        if len(parts) > 3:
            endpoint = f"{endpoint}/{parts[3]}"
    elif parts and parts[0] in ("health", "metrics"):
        endpoint = parts[0]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Error Rendering ---


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": message, "code": ValidationError.code},
    )


# --- Request Models ---


class CreateConversationRequest(WireModel):
    type: str
    participants: list[dict[str, Any]]
    name: str | None = None
    description: str | None = None


class AddParticipantRequest(WireModel):
    participant: dict[str, Any]


class SendMessageRequest(WireModel):
    conversation_id: str | None = None
    message: str | None = None
    message_type: str | None = "text"
    reply_to: str | None = None
    attachments: list[dict[str, Any]] | None = None


class MarkReadRequest(WireModel):
    message_ids: list[str] | None = None


class EditMessageRequest(WireModel):
    message: str | None = None


# --- Auth Helpers ---


async def _verify_token(token: str | None) -> Identity:
    if not token:
        raise AuthError("No token provided. Expected: Bearer <token>", AuthError.NO_TOKEN)
    return await db.run_sync(get_verifier().verify, token)


async def _require_identity(authorization: str | None) -> Identity:
    """Resolve the caller from the Authorization header."""
    return await _verify_token(extract_bearer_token(authorization))


async def _require_admin(authorization: str | None) -> Identity:
    identity = await _require_identity(authorization)
    if identity.kind != "admin":
        raise ForbiddenError("Admin access required")
    return identity


def _conversation_out(conversation: dict) -> dict:
    return Conversation.from_db(conversation).dump()


def _message_out(message: dict) -> dict:
    return Message.from_db(message).dump()


def _notification_out(notification: dict) -> dict:
    return Notification.from_db(notification).dump()


# --- Auth Routes ---


@app.post("/api/auth/verify")
async def verify_token(authorization: Annotated[str | None, Header()] = None):
    """Verify a token and refresh the cached profile of its identity."""
    identity = await _require_identity(authorization)
    await get_hub().presence.remember(identity)
    return {
        "success": True,
        "user": IdentityInfo.from_identity(identity).dump(),
        "message": "Token verified successfully",
    }


@app.get("/api/auth/me")
async def get_me(authorization: Annotated[str | None, Header()] = None):
    identity = await _require_identity(authorization)
    presence = get_hub().presence
    record = await presence.get(identity.key)
    if record is None:
        await presence.remember(identity)

    return {
        "success": True,
        "user": {
            **IdentityInfo.from_identity(identity).dump(),
            "isOnline": bool(record and record["is_online"]),
            "lastSeen": record["last_seen"] if record else None,
        },
    }


@app.get("/api/auth/online")
async def get_online_users(
    authorization: Annotated[str | None, Header()] = None,
    kind: Annotated[str | None, Query(alias="type")] = None,
):
    await _require_identity(authorization)
    records = await get_hub().presence.list_online()
    if kind:
        records = [r for r in records if r["user_kind"] == kind]
    users = [Presence.from_db(r).dump() for r in records]
    return {"success": True, "users": users, "count": len(users)}


# --- Conversation Routes ---


@app.get("/api/conversations")
async def list_conversations(
    authorization: Annotated[str | None, Header()] = None,
    kind: Annotated[str | None, Query(alias="type")] = None,
):
    identity = await _require_identity(authorization)
    rows = await db.run_sync(conversations.list_conversations_for, identity, kind)
    return {"success": True, "conversations": [_conversation_out(c) for c in rows]}


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    conversation = await db.run_sync(
        conversations.get_conversation_for, identity, conversation_id
    )
    return {"success": True, "conversation": _conversation_out(conversation)}


@app.post("/api/conversations", status_code=201)
async def create_conversation(
    request: CreateConversationRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Create a conversation. An existing direct conversation is returned as-is."""
    identity = await _require_identity(authorization)
    conversation, is_new = await get_hub().create_conversation(
        identity,
        request.type,
        request.participants,
        name=request.name,
        description=request.description,
    )
    if is_new:
        logger.info(f"Conversation {conversation['id']} created by {identity.kind}:{identity.id}")
    return JSONResponse(
        status_code=201 if is_new else 200,
        content={"success": True, "conversation": _conversation_out(conversation), "isNew": is_new},
    )


@app.post("/api/conversations/{conversation_id}/participants")
async def add_participant(
    conversation_id: str,
    request: AddParticipantRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    conversation = await get_hub().add_participant(identity, conversation_id, request.participant)
    return {"success": True, "conversation": _conversation_out(conversation)}


@app.delete("/api/conversations/{conversation_id}/participants/{user_kind}/{user_id}")
async def remove_participant(
    conversation_id: str,
    user_kind: str,
    user_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    conversation = await get_hub().remove_participant(identity, conversation_id, user_id, user_kind)
    return {"success": True, "conversation": _conversation_out(conversation)}


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    await get_hub().delete_conversation(identity, conversation_id)
    return {"success": True, "message": "Conversation deleted"}


# --- Message Routes ---


@app.get("/api/messages/{conversation_id}")
async def list_messages(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
    before: str | None = None,
    limit: Annotated[int, Query(ge=1)] = conversations.DEFAULT_PAGE_SIZE,
):
    identity = await _require_identity(authorization)
    page = await db.run_sync(
        conversations.list_messages, identity, conversation_id, before, limit
    )
    pagination = page["pagination"]
    return {
        "success": True,
        "messages": [_message_out(m) for m in page["messages"]],
        "pagination": {
            "limit": pagination["limit"],
            "total": pagination["total"],
            "hasMore": pagination["has_more"],
            "oldest": pagination["oldest"],
        },
    }


@app.post("/api/messages", status_code=201)
async def send_message(
    request: SendMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    """Send a message through the same delivery path as the socket."""
    identity = await _require_identity(authorization)
    message = await get_hub().send_message(
        identity,
        request.conversation_id,
        request.message,
        message_type=request.message_type,
        reply_to=request.reply_to,
        attachments=request.attachments,
    )
    return {"success": True, "message": _message_out(message)}


@app.post("/api/messages/{conversation_id}/read")
async def mark_read(
    conversation_id: str,
    request: MarkReadRequest | None = None,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    message_ids = request.message_ids if request is not None else None
    count = await get_hub().mark_read(identity, conversation_id, message_ids=message_ids)
    return {"success": True, "conversationId": conversation_id, "count": count}


@app.get("/api/messages/{conversation_id}/unread-count")
async def unread_count(
    conversation_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    count = await db.run_sync(conversations.get_unread_count, identity, conversation_id)
    return {"success": True, "conversationId": conversation_id, "unreadCount": count}


@app.put("/api/messages/{message_id}")
async def edit_message(
    message_id: str,
    request: EditMessageRequest,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    message = await get_hub().edit_message(identity, message_id, request.message)
    return {"success": True, "message": _message_out(message)}


@app.delete("/api/messages/{message_id}")
async def delete_message(
    message_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    await get_hub().delete_message(identity, message_id)
    return {"success": True, "message": "Message deleted"}


# --- Notification Routes ---

UNREAD_NOTIFICATION_LIMIT = 50


@app.get("/api/notifications/unread")
async def unread_notifications(authorization: Annotated[str | None, Header()] = None):
    identity = await _require_identity(authorization)
    rows = await db.run_sync(
        db.list_notifications,
        identity.id,
        identity.kind,
        unread_only=True,
        limit=UNREAD_NOTIFICATION_LIMIT,
    )
    return {
        "success": True,
        "notifications": [_notification_out(n) for n in rows],
        "count": len(rows),
    }


@app.get("/api/notifications")
async def list_notifications(
    authorization: Annotated[str | None, Header()] = None,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    identity = await _require_identity(authorization)
    rows = await db.run_sync(
        db.list_notifications,
        identity.id,
        identity.kind,
        limit=limit,
        offset=(page - 1) * limit,
    )
    total = await db.run_sync(db.count_notifications, identity.id, identity.kind)
    return {
        "success": True,
        "notifications": [_notification_out(n) for n in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": -(-total // limit),
        },
    }


@app.put("/api/notifications/read-all")
async def mark_all_notifications_read(authorization: Annotated[str | None, Header()] = None):
    identity = await _require_identity(authorization)
    count = await db.run_sync(db.mark_all_notifications_read, identity.id, identity.kind)
    return {"success": True, "count": count}


@app.put("/api/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    notification = await db.run_sync(
        db.mark_notification_read, notification_id, identity.id, identity.kind
    )
    if notification is None:
        raise NotFoundError("Notification not found")
    return {"success": True, "notification": _notification_out(notification)}


@app.delete("/api/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    authorization: Annotated[str | None, Header()] = None,
):
    identity = await _require_identity(authorization)
    deleted = await db.run_sync(
        db.delete_notification, notification_id, identity.id, identity.kind
    )
    if not deleted:
        raise NotFoundError("Notification not found")
    return {"success": True, "message": "Notification deleted"}


# --- WebSocket ---


@app.websocket("/ws")
async def chat_socket(websocket: WebSocket, token: str | None = None):
    """Live connection. Authenticated before the handshake is accepted."""
    raw_token = token or extract_bearer_token(websocket.headers.get("authorization"))
    try:
        identity = await _verify_token(raw_token)
    except AuthError as e:
        logger.info(f"Rejected socket connection: {e.code}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    hub = get_hub()
    connection = Connection(websocket, identity)

    try:
        await hub.connect(connection)
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                await connection.send(
                    events.ERROR, events.error_payload("Invalid JSON", ValidationError.code)
                )
                continue
            await hub.handle(connection, frame)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(connection)


# --- Health Check ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "success": True,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **get_hub().stats(),
    }


@app.get("/metrics")
async def get_metrics(authorization: Annotated[str | None, Header()] = None):
    """Get application metrics. Requires an admin identity."""
    await _require_admin(authorization)

    hub = get_hub()
    verifier = get_verifier()
    caches = {}
    if isinstance(verifier, AuthorityChainVerifier):
        caches["token"] = verifier.cache.stats()

    return {
        **metrics.to_dict(),
        "hub": hub.stats(),
        "caches": caches,
    }
