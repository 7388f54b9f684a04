"""Socket event protocol.

Frames in both directions are JSON objects ``{"event": <name>, "data": {...}}``.
Inbound payloads are validated with the models below; field names follow the
camelCase the clients send.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# Client -> server
JOIN_CONVERSATIONS = "join_conversations"
JOIN_CONVERSATION = "join_conversation"
LEAVE_CONVERSATION = "leave_conversation"
SEND_MESSAGE = "send_message"
TYPING_START = "typing_start"
TYPING_STOP = "typing_stop"
MARK_READ = "mark_read"

# Server -> client
CONVERSATIONS_JOINED = "conversations_joined"
CONVERSATION_JOINED = "conversation_joined"
NEW_MESSAGE = "new_message"
MESSAGE_SENT = "message_sent"
MESSAGE_UPDATED = "message_updated"
MESSAGE_DELETED = "message_deleted"
NEW_CONVERSATION = "new_conversation"
USER_TYPING = "user_typing"
MESSAGES_READ = "messages_read"
MARK_READ_SUCCESS = "mark_read_success"
USER_STATUS = "user_status"
PENDING_NOTIFICATIONS = "pending_notifications"
ERROR = "error"


class InboundFrame(BaseModel):
    """Client -> server envelope."""

    event: str
    data: dict[str, Any] = Field(default_factory=dict)


class ConversationRef(BaseModel):
    conversationId: str | None = None


class SendMessageData(BaseModel):
    conversationId: str | None = None
    message: str | None = None
    messageType: str = "text"
    replyTo: str | None = None
    attachments: list[dict[str, Any]] | None = None


class MarkReadData(BaseModel):
    conversationId: str | None = None
    messageIds: list[str] | None = None


def error_payload(message: str, code: str | None = None) -> dict:
    payload: dict[str, Any] = {"message": message}
    if code:
        payload["code"] = code
    return payload
