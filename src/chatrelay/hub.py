"""Real-time delivery hub.

ChatHub ties the live side of chatrelay together: the connection registry,
room membership, presence and offline notifications. It owns the ordering
rules for message fan-out (persist, then broadcast to a room snapshot, then
notify whoever that snapshot did not reach) and the presence transitions
that happen when connections come and go.

Usage:
    hub = ChatHub()
    conn = Connection(websocket, identity)
    await hub.connect(conn)
    await hub.handle(conn, frame)       # for every inbound frame
    await hub.disconnect(conn)

The REST routes call the same methods without a connection.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PayloadError

from . import conversations, db, events
from .auth import Identity
from .config import get_settings
from .errors import ChatError, StorageError, ValidationError
from .metrics import metrics, timed_socket_event
from .models import Conversation, LastMessageSummary, Message
from .notifications import OfflineNotifier
from .presence import PresenceStore
from .registry import Connection, ConnectionRegistry
from .rooms import RoomManager

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, dict[str, Any]], Awaitable[None]]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ChatHub:
    """Connection lifecycle, inbound event dispatch and message fan-out."""

    def __init__(
        self,
        registry: ConnectionRegistry | None = None,
        rooms: RoomManager | None = None,
        presence: PresenceStore | None = None,
        notifier: OfflineNotifier | None = None,
    ) -> None:
        self.registry = registry or ConnectionRegistry()
        self.rooms = rooms or RoomManager()
        self.presence = presence or PresenceStore()
        self.notifier = notifier or OfflineNotifier(self.registry)
        self._handlers: dict[str, Handler] = {
            events.JOIN_CONVERSATIONS: self._on_join_conversations,
            events.JOIN_CONVERSATION: self._on_join_conversation,
            events.LEAVE_CONVERSATION: self._on_leave_conversation,
            events.SEND_MESSAGE: self._on_send_message,
            events.TYPING_START: self._on_typing_start,
            events.TYPING_STOP: self._on_typing_stop,
            events.MARK_READ: self._on_mark_read,
        }

    # --- Connection lifecycle ---

    async def connect(self, connection: Connection) -> None:
        """Register a freshly authenticated connection.

        The identity goes online (and everyone is told) only when it had no
        registered connection before. A connection that supersedes an older
        one for the same identity changes nothing anyone can see.
        """
        identity = connection.identity
        previous = self.registry.register(connection.key, connection)
        metrics.increment("connections_opened")
        logger.info(f"{connection!r} connected")

        try:
            await self.presence.set_online(identity, connection.id)
        except sqlite3.Error:
            logger.warning(f"Failed to record presence for {connection!r}", exc_info=True)

        if previous is None:
            await self._broadcast_status(identity, is_online=True)

        try:
            await self.notifier.deliver_pending(connection)
        except sqlite3.Error:
            logger.warning(f"Failed to load pending notifications for {connection!r}", exc_info=True)
        except Exception:
            # Dead transport; the caller's disconnect cleans up
            logger.warning(f"Failed to push pending notifications to {connection!r}", exc_info=True)

    async def disconnect(self, connection: Connection) -> bool:
        """Tear down a connection.

        Returns:
            True if this connection was still the registered one and its
            identity went offline, False if a newer connection owns the key.
        """
        self.rooms.drop(connection)
        key = connection.key

        if not self.registry.unregister(key, connection):
            logger.debug(f"{connection!r} was superseded, presence unchanged")
            return False

        metrics.increment("connections_closed")
        logger.info(f"{connection!r} disconnected")

        last_seen = _timestamp()
        try:
            record = await self.presence.set_offline(key, connection.id)
            if record is not None:
                last_seen = record["last_seen"]
        except sqlite3.Error:
            logger.warning(f"Failed to record offline presence for {connection!r}", exc_info=True)

        # A reconnect may have registered while the store write was pending
        if self.registry.lookup(key) is not None:
            return True

        await self._broadcast_status(connection.identity, is_online=False, last_seen=last_seen)
        return True

    async def _broadcast_status(
        self,
        identity: Identity,
        is_online: bool,
        last_seen: str | None = None,
    ) -> int:
        payload: dict[str, Any] = {
            "userId": identity.id,
            "userKind": identity.kind,
            "userName": identity.name,
            "isOnline": is_online,
        }
        if last_seen is not None:
            payload["lastSeen"] = last_seen
        return await self.rooms.send_all(self.registry.connections(), events.USER_STATUS, payload)

    # --- Inbound dispatch ---

    async def handle(self, connection: Connection, frame: Any) -> None:
        """Handle one inbound frame from a connection.

        Errors never close the connection; they are reported back to it as an
        ``error`` event.
        """
        try:
            inbound = events.InboundFrame.model_validate(frame)
        except PayloadError:
            await connection.send(
                events.ERROR, events.error_payload("Invalid event frame", ValidationError.code)
            )
            return

        handler = self._handlers.get(inbound.event)
        if handler is None:
            await connection.send(
                events.ERROR,
                events.error_payload(f"Unknown event: {inbound.event}", "UNKNOWN_EVENT"),
            )
            return

        async with connection.lock:
            with timed_socket_event(inbound.event):
                try:
                    await handler(connection, inbound.data)
                except ChatError as e:
                    await connection.send(events.ERROR, events.error_payload(e.message, e.code))
                except PayloadError:
                    await connection.send(
                        events.ERROR,
                        events.error_payload(
                            f"Invalid {inbound.event} data", ValidationError.code
                        ),
                    )
                except Exception:
                    logger.exception(f"Error handling {inbound.event} from {connection!r}")
                    action = inbound.event.replace("_", " ")
                    await connection.send(events.ERROR, events.error_payload(f"Failed to {action}"))

    async def _on_join_conversations(self, connection: Connection, data: dict[str, Any]) -> None:
        await self.join_conversations(connection)

    async def _on_join_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(data)
        await self.join_conversation(connection, ref.conversationId)

    async def _on_leave_conversation(self, connection: Connection, data: dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(data)
        if ref.conversationId:
            self.rooms.leave(ref.conversationId, connection)

    async def _on_send_message(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.SendMessageData.model_validate(data)
        await self.send_message(
            connection.identity,
            payload.conversationId,
            payload.message,
            message_type=payload.messageType,
            reply_to=payload.replyTo,
            attachments=payload.attachments,
            connection=connection,
        )

    async def _on_typing_start(self, connection: Connection, data: dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(data)
        await self.typing(connection, ref.conversationId, is_typing=True)

    async def _on_typing_stop(self, connection: Connection, data: dict[str, Any]) -> None:
        ref = events.ConversationRef.model_validate(data)
        await self.typing(connection, ref.conversationId, is_typing=False)

    async def _on_mark_read(self, connection: Connection, data: dict[str, Any]) -> None:
        payload = events.MarkReadData.model_validate(data)
        await self.mark_read(
            connection.identity,
            payload.conversationId,
            message_ids=payload.messageIds,
            connection=connection,
        )

    # --- Rooms ---

    async def join_conversations(self, connection: Connection) -> int:
        """Join the rooms of every active conversation the identity belongs to."""
        conversation_ids = await db.run_sync(db.list_conversation_ids_for, *connection.key)
        for conversation_id in conversation_ids:
            self.rooms.join(conversation_id, connection)

        await connection.send(
            events.CONVERSATIONS_JOINED, {"success": True, "count": len(conversation_ids)}
        )
        return len(conversation_ids)

    async def join_conversation(self, connection: Connection, conversation_id: str | None) -> None:
        await db.run_sync(
            conversations.get_conversation_for, connection.identity, conversation_id
        )
        self.rooms.join(conversation_id, connection)  # type: ignore[arg-type]
        await connection.send(
            events.CONVERSATION_JOINED, {"success": True, "conversationId": conversation_id}
        )

    async def typing(self, connection: Connection, conversation_id: str | None, is_typing: bool) -> bool:
        """Relay a typing indicator to the rest of the room.

        Ignored unless the connection is itself in the room.
        """
        if not conversation_id or not self.rooms.is_member(conversation_id, connection):
            return False

        identity = connection.identity
        await self.rooms.broadcast(
            conversation_id,
            events.USER_TYPING,
            {
                "conversationId": conversation_id,
                "userId": identity.id,
                "userKind": identity.kind,
                "userName": identity.name,
                "isTyping": is_typing,
            },
            exclude=connection,
        )
        return True

    # --- Messages ---

    async def send_message(
        self,
        identity: Identity,
        conversation_id: str | None,
        body: Any,
        message_type: str | None = "text",
        reply_to: str | None = None,
        attachments: list[dict] | None = None,
        connection: Connection | None = None,
    ) -> dict:
        """Persist a message and deliver it.

        Validation and access checks run before anything is written. The
        message is stored and broadcast to a snapshot of the room under the
        room's sequencer, so every member sees a conversation's messages in
        the order they were stored. Participants the snapshot did not reach
        get an offline notification.

        Args:
            identity: Sender
            conversation_id: Target conversation
            body: Message text
            message_type: text, image, file or system
            reply_to: Id of a message in the same conversation
            attachments: Attachment descriptors, stored as given
            connection: The sender's live connection, for socket sends

        Returns:
            The stored message.

        Raises:
            ValidationError: Missing fields, bad type or bad reply target
            NotFoundError: Conversation absent or inactive
            ForbiddenError: Sender is not a participant
            StorageError: The message could not be stored
        """
        if not conversation_id:
            raise ValidationError("conversationId and message are required")
        body, message_type = conversations.validate_message(body, message_type)

        conversation = await db.run_sync(conversations.load_conversation, conversation_id)
        conversations.require_participant(conversation, identity)
        reply = await db.run_sync(conversations.resolve_reply, conversation_id, reply_to)

        async with self.rooms.sequencer(conversation_id):
            try:
                message = await db.run_sync(
                    db.create_message,
                    conversation_id,
                    identity.as_participant(),
                    body,
                    message_type,
                    attachments,
                    reply,
                )
            except sqlite3.Error as e:
                logger.error(f"Failed to store message in {conversation_id}", exc_info=True)
                raise StorageError("Failed to send message") from e

            summary = {
                "message_id": message["id"],
                "body": message["body"],
                "sender_id": identity.id,
                "sender_kind": identity.kind,
                "sender_name": identity.name,
                "created_at": message["created_at"],
            }
            try:
                await db.run_sync(db.update_last_message, conversation_id, summary)
            except sqlite3.Error:
                logger.warning(
                    f"Failed to update last message of {conversation_id}", exc_info=True
                )

            if connection is not None:
                self.rooms.join(conversation_id, connection)

            snapshot = self.rooms.members(conversation_id)
            wire_message = Message.from_db(message).dump()
            await self.rooms.broadcast(
                conversation_id,
                events.NEW_MESSAGE,
                {
                    "message": wire_message,
                    "conversation": {
                        "id": conversation_id,
                        "type": conversation["kind"],
                        "lastMessageSummary": LastMessageSummary.from_db(summary).dump(),
                    },
                },
                members=snapshot,
            )

        metrics.increment("messages_sent")
        await self.notifier.notify_unreachable(conversation, message, identity, snapshot)

        if connection is not None:
            await connection.send(events.MESSAGE_SENT, {"success": True, "message": wire_message})
        return message

    async def mark_read(
        self,
        identity: Identity,
        conversation_id: str | None,
        message_ids: list[str] | None = None,
        connection: Connection | None = None,
    ) -> int:
        """Record read receipts for an identity and tell the rest of the room.

        Repeating the call marks nothing new and returns 0.

        Returns:
            Number of messages that received a new receipt.
        """
        if not conversation_id:
            raise ValidationError("conversationId is required")

        await db.run_sync(conversations.get_conversation_for, identity, conversation_id)
        try:
            marked = await db.run_sync(
                db.mark_messages_read,
                conversation_id,
                identity.id,
                identity.kind,
                identity.name,
                message_ids,
            )
        except sqlite3.Error as e:
            logger.error(f"Failed to mark messages read in {conversation_id}", exc_info=True)
            raise StorageError("Failed to mark messages as read") from e

        payload: dict[str, Any] = {
            "conversationId": conversation_id,
            "userId": identity.id,
            "userKind": identity.kind,
            "userName": identity.name,
            "timestamp": _timestamp(),
        }
        if message_ids is not None:
            payload["messageIds"] = message_ids

        exclude = connection if connection is not None else self.registry.lookup(identity.key)
        await self.rooms.broadcast(conversation_id, events.MESSAGES_READ, payload, exclude=exclude)

        if connection is not None:
            await connection.send(
                events.MARK_READ_SUCCESS,
                {"success": True, "conversationId": conversation_id, "count": len(marked)},
            )
        return len(marked)

    async def edit_message(self, identity: Identity, message_id: str, body: Any) -> dict:
        message = await db.run_sync(conversations.edit_message, identity, message_id, body)
        await self.rooms.broadcast(
            message["conversation_id"],
            events.MESSAGE_UPDATED,
            {"message": Message.from_db(message).dump()},
        )
        return message

    async def delete_message(self, identity: Identity, message_id: str) -> dict:
        message = await db.run_sync(conversations.delete_message, identity, message_id)
        await self.rooms.broadcast(
            message["conversation_id"],
            events.MESSAGE_DELETED,
            {"conversationId": message["conversation_id"], "messageId": message["id"]},
        )
        return message

    # --- Conversations ---

    async def create_conversation(
        self,
        identity: Identity,
        kind: str,
        participants: Any,
        name: str | None = None,
        description: str | None = None,
    ) -> tuple[dict, bool]:
        """Create (or find) a conversation and announce a new one.

        Returns:
            (conversation, is_new)
        """
        conversation, is_new = await db.run_sync(
            conversations.create_conversation, identity, kind, participants, name, description
        )
        if is_new:
            await self.announce_conversation(conversation, identity)
        return conversation, is_new

    async def announce_conversation(self, conversation: dict, creator: Identity) -> int:
        """Put live participants in the new room and tell them about it.

        Participants without a live connection get a notification instead.
        """
        targets = []
        for participant in conversation["participants"]:
            handle = self.registry.lookup((participant["id"], participant["kind"]))
            if handle is None:
                continue
            self.rooms.join(conversation["id"], handle)
            if handle.key != creator.key:
                targets.append(handle)

        sent = await self.rooms.send_all(
            targets,
            events.NEW_CONVERSATION,
            {"conversation": Conversation.from_db(conversation).dump()},
        )
        await self.notifier.notify_new_conversation(conversation, creator)
        return sent

    async def add_participant(self, identity: Identity, conversation_id: str, participant: Any) -> dict:
        conversation, added = await db.run_sync(
            conversations.add_participant, identity, conversation_id, participant
        )
        if added is not None:
            handle = self.registry.lookup((added["id"], added["kind"]))
            if handle is not None:
                self.rooms.join(conversation_id, handle)
                await self.rooms.send_all(
                    [handle],
                    events.NEW_CONVERSATION,
                    {"conversation": Conversation.from_db(conversation).dump()},
                )
        return conversation

    async def remove_participant(
        self,
        identity: Identity,
        conversation_id: str,
        user_id: str,
        user_kind: str,
    ) -> dict:
        conversation = await db.run_sync(
            conversations.remove_participant, identity, conversation_id, user_id, user_kind
        )
        handle = self.registry.lookup((user_id, user_kind))
        if handle is not None:
            self.rooms.leave(conversation_id, handle)
        return conversation

    async def delete_conversation(self, identity: Identity, conversation_id: str) -> None:
        await db.run_sync(conversations.delete_conversation, identity, conversation_id)
        for member in self.rooms.members(conversation_id):
            self.rooms.leave(conversation_id, member)

    # --- Introspection ---

    def live_keys(self) -> list[tuple[str, str]]:
        return self.registry.keys()

    def stats(self) -> dict:
        return {
            "connections": len(self.registry),
            "rooms": self.rooms.room_count(),
        }


# --- Global hub ---

_hub: ChatHub | None = None


def get_hub() -> ChatHub:
    """Get the process hub, creating it from settings on first use."""
    global _hub
    if _hub is None:
        _hub = ChatHub(presence=PresenceStore(ttl=get_settings().presence_ttl))
    return _hub


def set_hub(hub: ChatHub) -> None:
    global _hub
    _hub = hub


def reset_hub() -> None:
    """Reset the global hub (for testing)."""
    global _hub
    _hub = None
