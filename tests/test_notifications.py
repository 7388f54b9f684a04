"""Tests for offline notifications."""

import pytest
from chatrelay import db
from chatrelay.notifications import OfflineNotifier, conversation_label, make_excerpt
from chatrelay.registry import Connection, ConnectionRegistry
from chatrelay.testing import FakeSocket, make_identity

ALICE = make_identity("alice", kind="admin")
BOB = make_identity("bob")
CAROL = make_identity("carol")


def _group():
    return db.create_conversation(
        "group",
        [ALICE.as_participant(), BOB.as_participant(), CAROL.as_participant()],
        ALICE.as_participant(),
        name="Ops",
    )


def _live(registry, identity):
    conn = Connection(FakeSocket(), identity)
    registry.register(conn.key, conn)
    return conn


class TestHelpers:
    def test_excerpt_truncated(self):
        assert make_excerpt("  " + "y" * 120) == "y" * 100
        assert make_excerpt("short") == "short"

    def test_conversation_label(self):
        assert conversation_label({"name": "Ops"}, "Alice") == "Ops"
        assert conversation_label({"name": None}, "Alice") == "Alice"


class TestNotifyUnreachable:
    @pytest.mark.asyncio
    async def test_sender_never_notified(self):
        conversation = _group()
        message = db.create_message(conversation["id"], ALICE.as_participant(), "hello")
        notifier = OfflineNotifier(ConnectionRegistry())

        created = await notifier.notify_unreachable(conversation, message, ALICE, frozenset())

        assert sorted(n["user_id"] for n in created) == ["bob", "carol"]
        assert db.list_notifications("alice", "admin") == []

    @pytest.mark.asyncio
    async def test_reachability_uses_snapshot(self):
        conversation = _group()
        message = db.create_message(conversation["id"], ALICE.as_participant(), "hello")
        registry = ConnectionRegistry()
        bob_conn = _live(registry, BOB)
        _live(registry, CAROL)
        notifier = OfflineNotifier(registry)

        created = await notifier.notify_unreachable(
            conversation, message, ALICE, frozenset({bob_conn})
        )

        # Carol is online but was not in the room snapshot
        assert [n["user_id"] for n in created] == ["carol"]

    @pytest.mark.asyncio
    async def test_superseded_handle_in_snapshot_is_unreachable(self):
        conversation = _group()
        message = db.create_message(conversation["id"], ALICE.as_participant(), "hello")
        registry = ConnectionRegistry()
        old = _live(registry, BOB)
        _live(registry, BOB)
        notifier = OfflineNotifier(registry)

        created = await notifier.notify_unreachable(conversation, message, ALICE, frozenset({old}))

        assert "bob" in [n["user_id"] for n in created]

    @pytest.mark.asyncio
    async def test_at_most_one_per_recipient_and_message(self):
        conversation = _group()
        message = db.create_message(conversation["id"], ALICE.as_participant(), "hello")
        notifier = OfflineNotifier(ConnectionRegistry())

        await notifier.notify_unreachable(conversation, message, ALICE, frozenset())
        again = await notifier.notify_unreachable(conversation, message, ALICE, frozenset())

        assert again == []
        assert db.count_notifications("bob", "user") == 1


class TestNotifyNewConversation:
    @pytest.mark.asyncio
    async def test_only_offline_participants(self):
        conversation = _group()
        registry = ConnectionRegistry()
        _live(registry, BOB)
        notifier = OfflineNotifier(registry)

        created = await notifier.notify_new_conversation(conversation, ALICE)

        assert [n["user_id"] for n in created] == ["carol"]
        assert created[0]["type"] == "new_conversation"
        assert created[0]["message_id"] is None
        assert created[0]["payload"]["conversation_name"] == "Ops"


class TestDeliverPending:
    @pytest.mark.asyncio
    async def test_oldest_first_and_stamped(self):
        conversation = _group()
        notifier = OfflineNotifier(ConnectionRegistry())
        for body in ("one", "two"):
            message = db.create_message(conversation["id"], ALICE.as_participant(), body)
            await notifier.notify_unreachable(conversation, message, ALICE, frozenset())
        socket = FakeSocket()
        conn = Connection(socket, BOB)

        assert await notifier.deliver_pending(conn) == 2

        pending = socket.last("pending_notifications")
        assert [n["payload"]["excerpt"] for n in pending["notifications"]] == ["one", "two"]
        assert pending["notifications"][0]["userKind"] == "user"
        for notification in db.list_notifications("bob", "user"):
            assert notification["delivered_at"] is not None
            assert notification["is_read"] is False

    @pytest.mark.asyncio
    async def test_first_delivery_stamp_kept(self):
        conversation = _group()
        notifier = OfflineNotifier(ConnectionRegistry())
        message = db.create_message(conversation["id"], ALICE.as_participant(), "one")
        await notifier.notify_unreachable(conversation, message, ALICE, frozenset())
        conn = Connection(FakeSocket(), BOB)

        await notifier.deliver_pending(conn)
        first = db.list_notifications("bob", "user")[0]["delivered_at"]
        await notifier.deliver_pending(conn)

        assert db.list_notifications("bob", "user")[0]["delivered_at"] == first
