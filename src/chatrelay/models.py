"""Wire representations of chatrelay entities.

Python attributes are snake_case; JSON on the wire (REST bodies and socket
event payloads) is camelCase. Storage rows from ``db`` already use the
attribute names, so ``from_db`` is a straight validation.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .auth import Identity

IdentityKind = Literal["admin", "user"]
ConversationKind = Literal["direct-admin", "direct-mixed", "group"]
MessageType = Literal["text", "image", "file", "system"]
NotificationType = Literal["new_message", "new_conversation"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @classmethod
    def from_db(cls, data: dict[str, Any]):
        return cls.model_validate(data)

    def dump(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class IdentityInfo(WireModel):
    id: str
    kind: IdentityKind
    name: str
    email: str
    profile: str | None = None
    role: str | None = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityInfo":
        return cls(
            id=identity.id,
            kind=identity.kind,  # type: ignore[arg-type]
            name=identity.name,
            email=identity.email,
            profile=identity.profile,
            role=identity.role,
        )


class Participant(WireModel):
    id: str
    kind: IdentityKind
    name: str
    email: str | None = None
    profile: str | None = None
    joined_at: str | None = None


class CreatedBy(WireModel):
    id: str
    kind: str
    name: str


class LastMessageSummary(WireModel):
    message_id: str
    body: str
    sender_id: str
    sender_kind: str
    sender_name: str
    created_at: str


class Conversation(WireModel):
    id: str
    kind: ConversationKind
    name: str | None = None
    description: str | None = None
    participants: list[Participant] = Field(default_factory=list)
    created_by: CreatedBy
    last_message_summary: LastMessageSummary | None = None
    is_active: bool = True
    created_at: str
    updated_at: str
    unread_count: int | None = None


class ReadReceipt(WireModel):
    user_id: str
    user_kind: str
    user_name: str | None = None
    read_at: str


class ReplyTo(WireModel):
    message_id: str
    body: str
    sender_name: str


class Message(WireModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_kind: IdentityKind
    sender_name: str
    sender_email: str | None = None
    sender_profile: str | None = None
    body: str
    type: MessageType = "text"
    attachments: list[dict[str, Any]] = Field(default_factory=list)
    read_by: list[ReadReceipt] = Field(default_factory=list)
    reply_to: ReplyTo | None = None
    is_edited: bool = False
    edited_at: str | None = None
    is_deleted: bool = False
    deleted_at: str | None = None
    created_at: str
    updated_at: str


class NotificationPayload(WireModel):
    sender_name: str
    excerpt: str
    conversation_name: str


class Notification(WireModel):
    id: str
    user_id: str
    user_kind: IdentityKind
    type: NotificationType
    conversation_id: str
    message_id: str | None = None
    payload: NotificationPayload
    is_read: bool = False
    delivered_at: str | None = None
    read_at: str | None = None
    created_at: str


class Presence(WireModel):
    user_id: str
    user_kind: IdentityKind
    name: str | None = None
    email: str | None = None
    profile: str | None = None
    is_online: bool = False
    last_seen: str | None = None
