"""Offline notifications.

When a message is fanned out, every participant other than the sender who is
not reachable in the conversation's room gets a durable notification.
Reachable means the identity has a registered connection AND that connection
was in the room snapshot the message was broadcast to. Being online somewhere
else is not enough.

Pending (unread) notifications are pushed to each new connection in one
``pending_notifications`` event and stamped delivered afterwards. Stamping
does not mark them read; only an explicit acknowledgment does, so a client
that reconnects before acknowledging sees them again and is expected to
de-duplicate by id.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Collection

from . import db, events
from .auth import Identity
from .metrics import metrics
from .models import Notification
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 100
PENDING_BATCH_LIMIT = 100


def make_excerpt(body: str) -> str:
    return body.strip()[:EXCERPT_LENGTH]


def conversation_label(conversation: dict, sender_name: str) -> str:
    """Name shown in a notification: the group name, or the sender for direct chats."""
    return conversation.get("name") or sender_name


class OfflineNotifier:
    """Creates notifications for unreachable participants and delivers pending ones."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry

    def is_reachable(self, key: tuple[str, str], snapshot: Collection[Connection]) -> bool:
        handle = self.registry.lookup(key)
        return handle is not None and handle in snapshot

    async def _create(
        self,
        participant: dict,
        notification_type: str,
        conversation_id: str,
        payload: dict,
        message_id: str | None = None,
    ) -> dict | None:
        try:
            notification = await db.run_sync(
                db.create_notification,
                participant["id"],
                participant["kind"],
                notification_type,
                conversation_id,
                payload,
                message_id,
            )
        except sqlite3.Error:
            logger.warning(
                f"Failed to create {notification_type} notification for "
                f"{participant['kind']}:{participant['id']}",
                exc_info=True,
            )
            return None

        if notification is None:
            logger.debug(
                f"Notification for {participant['kind']}:{participant['id']} "
                f"on message {message_id} already exists"
            )
            return None

        metrics.increment("notifications_created")
        return notification

    async def notify_unreachable(
        self,
        conversation: dict,
        message: dict,
        sender: Identity,
        snapshot: Collection[Connection],
    ) -> list[dict]:
        """Create a new_message notification for each unreachable participant.

        Args:
            conversation: Conversation the message was sent to
            message: The persisted message
            sender: Author of the message (never notified)
            snapshot: Room members the message was broadcast to

        Returns:
            Notifications created.
        """
        payload = {
            "sender_name": sender.name,
            "excerpt": make_excerpt(message["body"]),
            "conversation_name": conversation_label(conversation, sender.name),
        }

        created = []
        for participant in conversation["participants"]:
            key = (participant["id"], participant["kind"])
            if key == sender.key or self.is_reachable(key, snapshot):
                continue
            notification = await self._create(
                participant, "new_message", conversation["id"], payload, message["id"]
            )
            if notification is not None:
                created.append(notification)
        return created

    async def notify_new_conversation(self, conversation: dict, creator: Identity) -> list[dict]:
        """Create new_conversation notifications for participants with no live connection."""
        payload = {
            "sender_name": creator.name,
            "excerpt": conversation.get("description") or "",
            "conversation_name": conversation_label(conversation, creator.name),
        }

        created = []
        for participant in conversation["participants"]:
            key = (participant["id"], participant["kind"])
            if key == creator.key or self.registry.lookup(key) is not None:
                continue
            notification = await self._create(
                participant, "new_conversation", conversation["id"], payload
            )
            if notification is not None:
                created.append(notification)
        return created

    async def deliver_pending(self, connection: Connection) -> int:
        """Push the identity's unread notifications to a new connection.

        Sends nothing when there are none. Delivery is stamped only after the
        frame has been handed to the transport; a stamping failure is logged.

        Returns:
            Number of notifications pushed.
        """
        user_id, user_kind = connection.key
        rows = await db.run_sync(
            db.list_notifications,
            user_id,
            user_kind,
            unread_only=True,
            limit=PENDING_BATCH_LIMIT,
            oldest_first=True,
        )
        if not rows:
            return 0

        notifications = [Notification.from_db(row).dump() for row in rows]
        await connection.send(
            events.PENDING_NOTIFICATIONS,
            {"notifications": notifications, "count": len(notifications)},
        )
        metrics.increment("notifications_delivered", len(rows))

        try:
            await db.run_sync(db.mark_notifications_delivered, [row["id"] for row in rows])
        except sqlite3.Error:
            logger.warning(f"Failed to stamp delivery for {connection!r}", exc_info=True)

        return len(rows)
