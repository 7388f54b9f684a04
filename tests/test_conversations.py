"""Tests for conversation and message rules."""

import pytest
from chatrelay import conversations, db
from chatrelay.errors import ForbiddenError, NotFoundError, ValidationError
from chatrelay.testing import make_identity

ALICE = make_identity("alice", kind="admin")
BOB = make_identity("bob")
CAROL = make_identity("carol")
DAVE = make_identity("dave")


def _p(identity):
    return {"id": identity.id, "kind": identity.kind, "name": identity.name}


def _group(creator=BOB, members=(CAROL, DAVE), name="Team"):
    conversation, _ = conversations.create_conversation(
        creator, "group", [_p(m) for m in members], name=name
    )
    return conversation


class TestCreateConversation:
    def test_creator_added_first(self):
        conversation, is_new = conversations.create_conversation(
            ALICE, "direct-mixed", [_p(BOB)]
        )

        assert is_new is True
        assert [(p["id"], p["kind"]) for p in conversation["participants"]] == [
            ("alice", "admin"),
            ("bob", "user"),
        ]

    def test_direct_deduplicated_regardless_of_who_creates(self):
        first, _ = conversations.create_conversation(ALICE, "direct-mixed", [_p(BOB)])

        second, is_new = conversations.create_conversation(BOB, "direct-mixed", [_p(ALICE)])

        assert is_new is False
        assert second["id"] == first["id"]

    def test_direct_dedup_is_per_kind(self):
        first, _ = conversations.create_conversation(ALICE, "direct-mixed", [_p(BOB)])

        second, is_new = conversations.create_conversation(ALICE, "direct-admin", [_p(BOB)])

        assert is_new is True
        assert second["id"] != first["id"]

    def test_direct_requires_exactly_two(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(ALICE, "direct-mixed", [_p(BOB), _p(CAROL)])

    def test_direct_with_only_self_rejected(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(ALICE, "direct-mixed", [_p(ALICE)])

    def test_group_requires_three(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "group", [_p(CAROL)], name="Pair")

    def test_group_requires_name(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "group", [_p(CAROL), _p(DAVE)], name="  ")

    def test_group_created(self):
        conversation = _group()

        assert conversation["kind"] == "group"
        assert conversation["name"] == "Team"
        assert len(conversation["participants"]) == 3

    def test_invalid_kind(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "channel", [_p(CAROL), _p(DAVE)])

    def test_invalid_participant(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "direct-mixed", [{"id": "x", "kind": "robot"}])

    def test_empty_participants(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "direct-mixed", [])

    def test_nothing_written_on_rejection(self):
        with pytest.raises(ValidationError):
            conversations.create_conversation(BOB, "group", [_p(CAROL)], name="Pair")

        assert db.list_conversations_for("bob", "user") == []


class TestAccess:
    def test_non_participant_forbidden(self):
        conversation = _group()

        with pytest.raises(ForbiddenError):
            conversations.get_conversation_for(ALICE, conversation["id"])

    def test_same_id_other_kind_forbidden(self):
        conversation = _group()
        bob_as_admin = make_identity("bob", kind="admin")

        with pytest.raises(ForbiddenError):
            conversations.get_conversation_for(bob_as_admin, conversation["id"])

    def test_unknown_conversation(self):
        with pytest.raises(NotFoundError):
            conversations.get_conversation_for(BOB, "missing")

    def test_deleted_conversation_not_found(self):
        conversation = _group()
        conversations.delete_conversation(BOB, conversation["id"])

        with pytest.raises(NotFoundError):
            conversations.get_conversation_for(BOB, conversation["id"])

    def test_list_includes_unread_count(self):
        conversation = _group()
        db.create_message(conversation["id"], CAROL.as_participant(), "hi")

        listed = conversations.list_conversations_for(BOB)

        assert listed[0]["unread_count"] == 1


class TestParticipants:
    def test_creator_adds_participant(self):
        conversation = _group()

        updated, added = conversations.add_participant(BOB, conversation["id"], _p(ALICE))

        assert added["id"] == "alice"
        assert len(updated["participants"]) == 4

    def test_admin_adds_participant(self):
        conversation = _group(creator=BOB, members=(CAROL, ALICE))

        _, added = conversations.add_participant(ALICE, conversation["id"], _p(DAVE))

        assert added is not None

    def test_other_member_cannot_add(self):
        conversation = _group()

        with pytest.raises(ForbiddenError):
            conversations.add_participant(CAROL, conversation["id"], _p(ALICE))

    def test_adding_existing_is_noop(self):
        conversation = _group()

        updated, added = conversations.add_participant(BOB, conversation["id"], _p(CAROL))

        assert added is None
        assert len(updated["participants"]) == 3

    def test_cannot_add_to_direct(self):
        conversation, _ = conversations.create_conversation(ALICE, "direct-mixed", [_p(BOB)])

        with pytest.raises(ValidationError):
            conversations.add_participant(ALICE, conversation["id"], _p(CAROL))

    def test_member_removes_self(self):
        conversation = _group()

        updated = conversations.remove_participant(CAROL, conversation["id"], "carol", "user")

        assert [p["id"] for p in updated["participants"]] == ["bob", "dave"]

    def test_member_cannot_remove_others(self):
        conversation = _group()

        with pytest.raises(ForbiddenError):
            conversations.remove_participant(CAROL, conversation["id"], "dave", "user")

    def test_creator_removes_other(self):
        conversation = _group()

        updated = conversations.remove_participant(BOB, conversation["id"], "dave", "user")

        assert len(updated["participants"]) == 2

    def test_remove_unknown_participant(self):
        conversation = _group()

        with pytest.raises(NotFoundError):
            conversations.remove_participant(BOB, conversation["id"], "zed", "user")

    def test_only_creator_deletes(self):
        conversation = _group()

        with pytest.raises(ForbiddenError):
            conversations.delete_conversation(CAROL, conversation["id"])

        conversations.delete_conversation(BOB, conversation["id"])
        assert db.get_conversation(conversation["id"])["is_active"] is False


class TestMessages:
    def test_validate_message(self):
        assert conversations.validate_message("hi", None) == ("hi", "text")

        with pytest.raises(ValidationError):
            conversations.validate_message("   ", "text")
        with pytest.raises(ValidationError):
            conversations.validate_message("hi", "video")

    def test_reply_must_be_in_same_conversation(self):
        first = _group()
        second = _group(name="Other")
        elsewhere = db.create_message(second["id"], BOB.as_participant(), "elsewhere")

        with pytest.raises(ValidationError):
            conversations.resolve_reply(first["id"], elsewhere["id"])

    def test_reply_snapshot(self):
        conversation = _group()
        original = db.create_message(conversation["id"], CAROL.as_participant(), "question")

        snapshot = conversations.resolve_reply(conversation["id"], original["id"])

        assert snapshot == {"message_id": original["id"], "body": "question", "sender_name": "Carol"}

    def test_list_messages_pagination(self):
        conversation = _group()
        for i in range(3):
            db.create_message(conversation["id"], CAROL.as_participant(), f"m{i}")

        page = conversations.list_messages(BOB, conversation["id"], limit=2)

        assert [m["body"] for m in page["messages"]] == ["m1", "m2"]
        assert page["pagination"] == {
            "limit": 2,
            "total": 3,
            "has_more": True,
            "oldest": page["messages"][0]["created_at"],
        }

    def test_list_messages_limit_capped(self):
        conversation = _group()

        page = conversations.list_messages(BOB, conversation["id"], limit=500)

        assert page["pagination"]["limit"] == conversations.MAX_PAGE_SIZE

    def test_list_messages_accepts_zulu_timestamp(self):
        conversation = _group()
        db.create_message(conversation["id"], CAROL.as_participant(), "old")

        page = conversations.list_messages(BOB, conversation["id"], before="2000-01-01T00:00:00Z")

        assert page["messages"] == []

    def test_list_messages_bad_timestamp(self):
        conversation = _group()

        with pytest.raises(ValidationError):
            conversations.list_messages(BOB, conversation["id"], before="yesterday")

    def test_unread_count_requires_participant(self):
        conversation = _group()

        with pytest.raises(ForbiddenError):
            conversations.get_unread_count(ALICE, conversation["id"])

    def test_edit_own_message(self):
        conversation = _group()
        message = db.create_message(conversation["id"], BOB.as_participant(), "draft")

        edited = conversations.edit_message(BOB, message["id"], "final")

        assert edited["body"] == "final"
        assert edited["is_edited"] is True

    def test_cannot_edit_others_message(self):
        conversation = _group()
        message = db.create_message(conversation["id"], BOB.as_participant(), "draft")

        with pytest.raises(ForbiddenError):
            conversations.edit_message(CAROL, message["id"], "hijack")

    def test_cannot_edit_system_message(self):
        conversation = _group()
        message = db.create_message(
            conversation["id"], BOB.as_participant(), "joined", message_type="system"
        )

        with pytest.raises(ValidationError):
            conversations.edit_message(BOB, message["id"], "left")

    def test_deleted_message_not_found(self):
        conversation = _group()
        message = db.create_message(conversation["id"], BOB.as_participant(), "oops")
        conversations.delete_message(BOB, message["id"])

        with pytest.raises(NotFoundError):
            conversations.edit_message(BOB, message["id"], "fixed")
        with pytest.raises(NotFoundError):
            conversations.delete_message(BOB, message["id"])
