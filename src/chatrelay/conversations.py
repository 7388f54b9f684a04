"""Conversation and message rules.

Synchronous functions that validate a request on behalf of an identity and
then call the storage layer. They raise the ChatError subclasses from
``errors`` and leave storage untouched whenever they raise. The hub and the
REST routes run them off the event loop with ``db.run_sync``.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Any

from . import db
from .auth import IDENTITY_KINDS, Identity
from .errors import ForbiddenError, NotFoundError, ValidationError

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
DIRECT_KINDS = ("direct-admin", "direct-mixed")
MIN_GROUP_SIZE = 3


def _is_participant(conversation: dict, user_id: str, user_kind: str) -> bool:
    return any(p["id"] == user_id and p["kind"] == user_kind for p in conversation["participants"])


def require_participant(conversation: dict, identity: Identity) -> None:
    if not _is_participant(conversation, identity.id, identity.kind):
        raise ForbiddenError("Access denied")


def _normalize_participant(data: Any) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("Invalid participant data")
    user_id = str(data.get("id") or "").strip()
    kind = data.get("kind") or data.get("type")
    name = str(data.get("name") or "").strip()
    if not user_id or kind not in IDENTITY_KINDS or not name:
        raise ValidationError("Invalid participant data: id, kind and name are required")
    return {
        "id": user_id,
        "kind": kind,
        "name": name,
        "email": data.get("email"),
        "profile": data.get("profile"),
    }


def _normalize_participants(identity: Identity, participants: Any) -> list[dict]:
    if not isinstance(participants, list) or not participants:
        raise ValidationError("participants must be a non-empty list")

    ordered: dict[tuple[str, str], dict] = {identity.key: identity.as_participant()}
    for item in participants:
        participant = _normalize_participant(item)
        ordered.setdefault((participant["id"], participant["kind"]), participant)
    return list(ordered.values())


def load_conversation(conversation_id: str | None, conn: sqlite3.Connection | None = None) -> dict:
    """Load an active conversation or raise NotFoundError."""
    if not conversation_id:
        raise ValidationError("conversationId is required")
    conversation = db.get_conversation(conversation_id, conn=conn)
    if conversation is None or not conversation["is_active"]:
        raise NotFoundError("Conversation not found")
    return conversation


def get_conversation_for(
    identity: Identity,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    conversation = load_conversation(conversation_id, conn=conn)
    require_participant(conversation, identity)
    return conversation


def create_conversation(
    identity: Identity,
    kind: str,
    participants: Any,
    name: str | None = None,
    description: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Create a conversation, or return the existing direct one.

    The creator is always a participant. Direct conversations need exactly two
    participants and are de-duplicated per kind and unordered pair. Groups need
    at least three participants and a name.

    Returns:
        (conversation, is_new)
    """
    if kind not in db.CONVERSATION_KINDS:
        raise ValidationError(f"Invalid conversation type: {kind!r}")

    members = _normalize_participants(identity, participants)
    name = name.strip() if name else None

    if kind in DIRECT_KINDS:
        if len(members) != 2:
            raise ValidationError("Direct conversations must have exactly 2 participants")
        first, second = ((m["id"], m["kind"]) for m in members)
        existing = db.find_direct_conversation(kind, first, second, conn=conn)
        if existing is not None:
            return existing, False
    else:
        if len(members) < MIN_GROUP_SIZE:
            raise ValidationError(
                f"Group conversations need at least {MIN_GROUP_SIZE} participants"
            )
        if not name:
            raise ValidationError("Group conversations require a name")

    conversation = db.create_conversation(
        kind,
        members,
        created_by={"id": identity.id, "kind": identity.kind, "name": identity.name},
        name=name,
        description=description,
        conn=conn,
    )
    return conversation, True


def list_conversations_for(
    identity: Identity,
    kind: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Active conversations of an identity, each with its unread count."""
    if kind is not None and kind not in db.CONVERSATION_KINDS:
        raise ValidationError(f"Invalid conversation type: {kind!r}")

    conversations = db.list_conversations_for(identity.id, identity.kind, kind=kind, conn=conn)
    for conversation in conversations:
        conversation["unread_count"] = db.get_unread_count(
            conversation["id"], identity.id, identity.kind, conn=conn
        )
    return conversations


def add_participant(
    identity: Identity,
    conversation_id: str,
    participant: Any,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, dict | None]:
    """Add a participant to a group.

    Only the creator or an admin may add. Adding someone already present is a
    no-op.

    Returns:
        (updated conversation, the added participant or None if already present)
    """
    conversation = get_conversation_for(identity, conversation_id, conn=conn)
    if conversation["kind"] != "group":
        raise ValidationError("Can only add participants to group conversations")

    creator = conversation["created_by"]
    if (creator["id"], creator["kind"]) != identity.key and identity.kind != "admin":
        raise ForbiddenError("Only the creator or an admin can add participants")

    new_member = _normalize_participant(participant)
    added = db.add_participant(conversation_id, new_member, conn=conn)
    updated = db.get_conversation(conversation_id, conn=conn)
    assert updated is not None
    return updated, new_member if added else None


def remove_participant(
    identity: Identity,
    conversation_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Remove a participant from a group. Allowed to the creator or the participant."""
    conversation = get_conversation_for(identity, conversation_id, conn=conn)
    if conversation["kind"] != "group":
        raise ValidationError("Can only remove participants from group conversations")

    creator = conversation["created_by"]
    is_creator = (creator["id"], creator["kind"]) == identity.key
    is_self = (user_id, user_kind) == identity.key
    if not is_creator and not is_self:
        raise ForbiddenError("Only the creator can remove other participants")

    if not db.remove_participant(conversation_id, user_id, user_kind, conn=conn):
        raise NotFoundError("Participant not found")

    updated = db.get_conversation(conversation_id, conn=conn)
    assert updated is not None
    return updated


def delete_conversation(
    identity: Identity,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Soft delete. Only the creator may delete."""
    conversation = get_conversation_for(identity, conversation_id, conn=conn)
    creator = conversation["created_by"]
    if (creator["id"], creator["kind"]) != identity.key:
        raise ForbiddenError("Only the creator can delete this conversation")
    db.deactivate_conversation(conversation_id, conn=conn)


# --- Messages ---


def _parse_before(before: str | None) -> str | None:
    if not before:
        return None
    try:
        parsed = datetime.fromisoformat(before.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValidationError(f"Invalid 'before' timestamp: {before!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


def list_messages(
    identity: Identity,
    conversation_id: str,
    before: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """One page of a conversation's messages, oldest first."""
    get_conversation_for(identity, conversation_id, conn=conn)
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    messages = db.list_messages(conversation_id, before=_parse_before(before), limit=limit, conn=conn)
    total = db.count_messages(conversation_id, conn=conn)
    return {
        "messages": messages,
        "pagination": {
            "limit": limit,
            "total": total,
            "has_more": len(messages) == limit,
            "oldest": messages[0]["created_at"] if messages else None,
        },
    }


def get_unread_count(
    identity: Identity,
    conversation_id: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    get_conversation_for(identity, conversation_id, conn=conn)
    return db.get_unread_count(conversation_id, identity.id, identity.kind, conn=conn)


def validate_message(body: Any, message_type: str | None) -> tuple[str, str]:
    """Check a message body and type before anything is written.

    Returns:
        (body, message_type) with the type defaulted to "text".
    """
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("conversationId and message are required")
    message_type = message_type or "text"
    if message_type not in db.MESSAGE_TYPES:
        raise ValidationError(f"Invalid message type: {message_type!r}")
    return body, message_type


def resolve_reply(
    conversation_id: str,
    reply_to: str | None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Snapshot of the message being replied to, which must be in the same conversation."""
    if not reply_to:
        return None
    original = db.get_message(reply_to, conn=conn)
    if original is None or original["conversation_id"] != conversation_id or original["is_deleted"]:
        raise ValidationError("replyTo must reference a message in this conversation")
    return {
        "message_id": original["id"],
        "body": original["body"],
        "sender_name": original["sender_name"],
    }


def _load_own_message(identity: Identity, message_id: str, conn: sqlite3.Connection | None) -> dict:
    message = db.get_message(message_id, conn=conn)
    if message is None or message["is_deleted"]:
        raise NotFoundError("Message not found")
    if (message["sender_id"], message["sender_kind"]) != identity.key:
        raise ForbiddenError("You can only modify your own messages")
    return message


def edit_message(
    identity: Identity,
    message_id: str,
    body: Any,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Edit the body of one's own message."""
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("message is required")

    message = _load_own_message(identity, message_id, conn)
    if message["type"] == "system":
        raise ValidationError("System messages cannot be edited")

    updated = db.edit_message(message_id, body, conn=conn)
    if updated is None:
        raise NotFoundError("Message not found")
    return updated


def delete_message(
    identity: Identity,
    message_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Soft delete one's own message."""
    _load_own_message(identity, message_id, conn)
    deleted = db.soft_delete_message(message_id, conn=conn)
    if deleted is None:
        raise NotFoundError("Message not found")
    return deleted
