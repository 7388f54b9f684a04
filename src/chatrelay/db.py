"""SQLite storage layer for chatrelay.

Holds the durable side of the chat system: conversations and their
participants, messages with read receipts, offline notifications, and the
presence/user cache. The delivery hub treats this module as its document
store; every function here is synchronous and is run off the event loop with
``run_sync``.

Connection Management:
    # Thread-local connection configured from CHATRELAY_DB
    init_db()
    conv = create_conversation(...)

    # Explicit connection
    with scoped_connection("/path/to/chat.db") as conn:
        init_db_with_conn(conn)
        conv = create_conversation(..., conn=conn)

Each write is its own transaction. There are no cross-table transactions
between a message insert and its secondary writes (conversation summary,
notifications), so callers sequence them and handle failures separately.
"""

from __future__ import annotations

import asyncio
import functools
import json
import os
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .metrics import timed_operation

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 1

MESSAGE_TYPES = ("text", "image", "file", "system")
CONVERSATION_KINDS = ("direct-admin", "direct-mixed", "group")
NOTIFICATION_TYPES = ("new_message", "new_conversation")

# Thread-local storage for per-thread connections. The default executor runs
# sync DB functions on several threads, each gets its own sqlite connection.
_local = threading.local()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _after(seconds: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(
        timespec="microseconds"
    )


# --- Connection Management ---


def _configure(conn: sqlite3.Connection, wal: bool) -> sqlite3.Connection:
    if wal:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Args:
        db_path: Optional explicit path. When given, a new (non thread-local)
                 connection is returned and the caller owns it. Otherwise the
                 calling thread's connection is used, created from CHATRELAY_DB.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            return _configure(sqlite3.connect(":memory:", check_same_thread=False), wal=False)
        return _configure(sqlite3.connect(str(db_path), check_same_thread=False), wal=True)

    if getattr(_local, "conn", None) is None:
        db_path_env = os.environ.get("CHATRELAY_DB", ":memory:")
        if db_path_env == ":memory:":
            # Shared cache so every executor thread sees the same in-memory data.
            # The name includes the pid so parallel test processes stay apart.
            conn = sqlite3.connect(
                f"file:chatrelay_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
            _local.conn = _configure(conn, wal=False)
        else:
            conn = sqlite3.connect(db_path_env, check_same_thread=False)
            _local.conn = _configure(conn, wal=True)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the current thread's connection."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    if conn is not None:
        return conn
    return get_connection()


_executor: ThreadPoolExecutor | None = None


def _get_executor() -> ThreadPoolExecutor | None:
    """Get the executor for DB calls.

    Returns a single-threaded executor for the shared in-memory database,
    whose table locks fail immediately instead of honouring busy_timeout, or
    None to use the default threadpool for file databases (thread-local
    connections, WAL).
    """
    global _executor
    if os.environ.get("CHATRELAY_DB", ":memory:") != ":memory:":
        return None
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chatrelay-db")
    return _executor


async def run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous DB function off the event loop."""
    loop = asyncio.get_running_loop()
    if kwargs:
        fn = functools.partial(fn, **kwargs)
    return await loop.run_in_executor(_get_executor(), fn, *args)


def _loads(value: str | None, default: Any = None) -> Any:
    if value is None:
        return default
    return json.loads(value)


# --- Schema and Migrations ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        name TEXT,
        description TEXT,
        created_by_id TEXT NOT NULL,
        created_by_kind TEXT NOT NULL,
        created_by_name TEXT NOT NULL,
        last_message JSON,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);

    CREATE TABLE IF NOT EXISTS participants (
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        user_kind TEXT NOT NULL,
        name TEXT NOT NULL,
        email TEXT,
        profile TEXT,
        position INTEGER NOT NULL,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (conversation_id, user_id, user_kind)
    );

    CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id, user_kind);

    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
        sender_id TEXT NOT NULL,
        sender_kind TEXT NOT NULL,
        sender_name TEXT NOT NULL,
        sender_email TEXT,
        sender_profile TEXT,
        body TEXT NOT NULL,
        type TEXT NOT NULL DEFAULT 'text',
        attachments JSON DEFAULT '[]',
        reply_to JSON,
        is_edited INTEGER NOT NULL DEFAULT 0,
        edited_at TIMESTAMP,
        is_deleted INTEGER NOT NULL DEFAULT 0,
        deleted_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_messages_conversation
        ON messages(conversation_id, created_at);

    CREATE TABLE IF NOT EXISTS message_reads (
        message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        user_kind TEXT NOT NULL,
        user_name TEXT,
        read_at TIMESTAMP NOT NULL,
        PRIMARY KEY (message_id, user_id, user_kind)
    );

    CREATE TABLE IF NOT EXISTS notifications (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        user_kind TEXT NOT NULL,
        type TEXT NOT NULL,
        conversation_id TEXT NOT NULL,
        message_id TEXT,
        payload JSON DEFAULT '{}',
        is_read INTEGER NOT NULL DEFAULT 0,
        delivered_at TIMESTAMP,
        read_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_notifications_recipient
        ON notifications(user_id, user_kind, is_read, created_at);

    CREATE TABLE IF NOT EXISTS presence (
        user_id TEXT NOT NULL,
        user_kind TEXT NOT NULL,
        name TEXT,
        email TEXT,
        profile TEXT,
        role TEXT,
        is_online INTEGER NOT NULL DEFAULT 0,
        connection_id TEXT,
        last_seen TIMESTAMP,
        synced_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP NOT NULL,
        PRIMARY KEY (user_id, user_kind)
    );

    CREATE INDEX IF NOT EXISTS idx_presence_expires ON presence(expires_at);
"""


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version. Returns 0 if no migration has run."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] is not None else 0


def _migrate_001_unique_message_notifications(conn: sqlite3.Connection) -> None:
    """Migration 001: at most one notification per recipient and message."""
    conn.execute("""
        DELETE FROM notifications WHERE message_id IS NOT NULL AND rowid NOT IN (
            SELECT MIN(rowid) FROM notifications
            WHERE message_id IS NOT NULL
            GROUP BY user_id, user_kind, message_id
        )
    """)
    conn.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_notifications_message_recipient
            ON notifications(user_id, user_kind, message_id)
            WHERE message_id IS NOT NULL
    """)
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Unique notification per recipient and message", _migrate_001_unique_message_notifications),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations. Returns the versions applied."""
    conn = _get_conn(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                conn.execute(
                    "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                    (version, description),
                )
                conn.commit()
                applied.append(version)
            except sqlite3.Error as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize the schema on the current thread's connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop every table and recreate the schema (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS message_reads;
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS participants;
        DROP TABLE IF EXISTS conversations;
        DROP TABLE IF EXISTS notifications;
        DROP TABLE IF EXISTS presence;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Conversations ---


def _participants_for(conn: sqlite3.Connection, conversation_id: str) -> list[dict]:
    cursor = conn.execute(
        """SELECT user_id, user_kind, name, email, profile, joined_at
           FROM participants WHERE conversation_id = ? ORDER BY position""",
        (conversation_id,),
    )
    return [
        {
            "id": row["user_id"],
            "kind": row["user_kind"],
            "name": row["name"],
            "email": row["email"],
            "profile": row["profile"],
            "joined_at": row["joined_at"],
        }
        for row in cursor.fetchall()
    ]


def _conversation_from_row(conn: sqlite3.Connection, row: sqlite3.Row) -> dict:
    return {
        "id": row["id"],
        "kind": row["kind"],
        "name": row["name"],
        "description": row["description"],
        "participants": _participants_for(conn, row["id"]),
        "created_by": {
            "id": row["created_by_id"],
            "kind": row["created_by_kind"],
            "name": row["created_by_name"],
        },
        "last_message_summary": _loads(row["last_message"]),
        "is_active": bool(row["is_active"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _insert_participant(
    conn: sqlite3.Connection, conversation_id: str, participant: dict, joined_at: str
) -> bool:
    position = conn.execute(
        "SELECT COALESCE(MAX(position), -1) + 1 FROM participants WHERE conversation_id = ?",
        (conversation_id,),
    ).fetchone()[0]
    cursor = conn.execute(
        """INSERT OR IGNORE INTO participants
               (conversation_id, user_id, user_kind, name, email, profile, position, joined_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            conversation_id,
            participant["id"],
            participant["kind"],
            participant["name"],
            participant.get("email"),
            participant.get("profile"),
            position,
            joined_at,
        ),
    )
    return cursor.rowcount > 0


def create_conversation(
    kind: str,
    participants: list[dict],
    created_by: dict,
    name: str | None = None,
    description: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a conversation with its ordered participant list.

    Args:
        kind: One of CONVERSATION_KINDS
        participants: Dicts with id, kind, name and optional email/profile
        created_by: Dict with id, kind, name of the creator
        name: Display name (required for groups by the service layer)
        description: Optional description
        conn: Optional database connection

    Returns:
        Conversation dict including participants
    """
    conn = _get_conn(conn)
    conversation_id = str(make_uuid7())
    now = _now()

    conn.execute(
        """INSERT INTO conversations
               (id, kind, name, description, created_by_id, created_by_kind,
                created_by_name, is_active, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)""",
        (
            conversation_id,
            kind,
            name,
            description,
            created_by["id"],
            created_by["kind"],
            created_by["name"],
            now,
            now,
        ),
    )
    for participant in participants:
        _insert_participant(conn, conversation_id, participant, now)
    conn.commit()

    conversation = get_conversation(conversation_id, conn=conn)
    assert conversation is not None
    return conversation


def get_conversation(conversation_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    row = conn.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
    if row is None:
        return None
    return _conversation_from_row(conn, row)


def find_direct_conversation(
    kind: str,
    first: tuple[str, str],
    second: tuple[str, str],
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Find an active two-person conversation of `kind` between two identity keys."""
    conn = _get_conn(conn)
    row = conn.execute(
        """SELECT c.* FROM conversations c
           WHERE c.kind = ? AND c.is_active = 1
             AND (SELECT COUNT(*) FROM participants p WHERE p.conversation_id = c.id) = 2
             AND EXISTS (SELECT 1 FROM participants p WHERE p.conversation_id = c.id
                         AND p.user_id = ? AND p.user_kind = ?)
             AND EXISTS (SELECT 1 FROM participants p WHERE p.conversation_id = c.id
                         AND p.user_id = ? AND p.user_kind = ?)
           ORDER BY c.created_at LIMIT 1""",
        (kind, first[0], first[1], second[0], second[1]),
    ).fetchone()
    if row is None:
        return None
    return _conversation_from_row(conn, row)


def list_conversations_for(
    user_id: str,
    user_kind: str,
    kind: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List active conversations an identity participates in, most recent first."""
    conn = _get_conn(conn)
    query = """SELECT c.* FROM conversations c
               JOIN participants p ON p.conversation_id = c.id
               WHERE p.user_id = ? AND p.user_kind = ? AND c.is_active = 1"""
    params: list[Any] = [user_id, user_kind]
    if kind:
        query += " AND c.kind = ?"
        params.append(kind)
    query += " ORDER BY c.updated_at DESC"

    rows = conn.execute(query, tuple(params)).fetchall()
    return [_conversation_from_row(conn, row) for row in rows]


def list_conversation_ids_for(
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> list[str]:
    """Ids of active conversations an identity participates in."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT c.id FROM conversations c
           JOIN participants p ON p.conversation_id = c.id
           WHERE p.user_id = ? AND p.user_kind = ? AND c.is_active = 1
           ORDER BY c.updated_at DESC""",
        (user_id, user_kind),
    )
    return [row["id"] for row in cursor.fetchall()]


def is_participant(
    conversation_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    conn = _get_conn(conn)
    row = conn.execute(
        """SELECT 1 FROM participants
           WHERE conversation_id = ? AND user_id = ? AND user_kind = ?""",
        (conversation_id, user_id, user_kind),
    ).fetchone()
    return row is not None


def add_participant(
    conversation_id: str,
    participant: dict,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Append a participant. Returns False if they were already present."""
    conn = _get_conn(conn)
    now = _now()
    added = _insert_participant(conn, conversation_id, participant, now)
    if added:
        conn.execute("UPDATE conversations SET updated_at = ? WHERE id = ?", (now, conversation_id))
    conn.commit()
    return added


def remove_participant(
    conversation_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """DELETE FROM participants
           WHERE conversation_id = ? AND user_id = ? AND user_kind = ?""",
        (conversation_id, user_id, user_kind),
    )
    if cursor.rowcount > 0:
        conn.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?", (_now(), conversation_id)
        )
    conn.commit()
    return cursor.rowcount > 0


@timed_operation("update_last_message")
def update_last_message(
    conversation_id: str,
    summary: dict,
    conn: sqlite3.Connection | None = None,
) -> None:
    """Store the denormalized last-message summary and touch updated_at."""
    conn = _get_conn(conn)
    conn.execute(
        "UPDATE conversations SET last_message = ?, updated_at = ? WHERE id = ?",
        (json.dumps(summary), _now(), conversation_id),
    )
    conn.commit()


def deactivate_conversation(conversation_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """Soft delete a conversation."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE conversations SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
        (_now(), conversation_id),
    )
    conn.commit()
    return cursor.rowcount > 0


# --- Messages ---


def _read_receipts(conn: sqlite3.Connection, message_ids: list[str]) -> dict[str, list[dict]]:
    receipts: dict[str, list[dict]] = {mid: [] for mid in message_ids}
    if not message_ids:
        return receipts
    placeholders = ",".join("?" for _ in message_ids)
    cursor = conn.execute(
        f"""SELECT message_id, user_id, user_kind, user_name, read_at
            FROM message_reads WHERE message_id IN ({placeholders})
            ORDER BY read_at""",
        tuple(message_ids),
    )
    for row in cursor.fetchall():
        receipts[row["message_id"]].append(
            {
                "user_id": row["user_id"],
                "user_kind": row["user_kind"],
                "user_name": row["user_name"],
                "read_at": row["read_at"],
            }
        )
    return receipts


def _message_from_row(row: sqlite3.Row, read_by: list[dict]) -> dict:
    message = dict(row)
    message["attachments"] = _loads(message["attachments"], [])
    message["reply_to"] = _loads(message["reply_to"])
    message["is_edited"] = bool(message["is_edited"])
    message["is_deleted"] = bool(message["is_deleted"])
    message["read_by"] = read_by
    return message


def _messages_from_rows(conn: sqlite3.Connection, rows: list) -> list[dict]:
    receipts = _read_receipts(conn, [row["id"] for row in rows])
    return [_message_from_row(row, receipts[row["id"]]) for row in rows]


@timed_operation("create_message")
def create_message(
    conversation_id: str,
    sender: dict,
    body: str,
    message_type: str = "text",
    attachments: list[dict] | None = None,
    reply_to: dict | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Persist a new message with an empty read_by set.

    Args:
        conversation_id: Owning conversation
        sender: Dict with id, kind, name and optional email/profile
        body: Message text
        message_type: One of MESSAGE_TYPES
        attachments: Optional list of attachment dicts
        reply_to: Optional snapshot of the message being replied to
        conn: Optional database connection

    Returns:
        Message dict
    """
    conn = _get_conn(conn)
    message_id = str(make_uuid7())
    now = _now()

    conn.execute(
        """INSERT INTO messages
               (id, conversation_id, sender_id, sender_kind, sender_name, sender_email,
                sender_profile, body, type, attachments, reply_to, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            message_id,
            conversation_id,
            sender["id"],
            sender["kind"],
            sender["name"],
            sender.get("email"),
            sender.get("profile"),
            body,
            message_type,
            json.dumps(attachments or []),
            json.dumps(reply_to) if reply_to else None,
            now,
            now,
        ),
    )
    conn.commit()

    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "sender_id": sender["id"],
        "sender_kind": sender["kind"],
        "sender_name": sender["name"],
        "sender_email": sender.get("email"),
        "sender_profile": sender.get("profile"),
        "body": body,
        "type": message_type,
        "attachments": attachments or [],
        "reply_to": reply_to,
        "read_by": [],
        "is_edited": False,
        "edited_at": None,
        "is_deleted": False,
        "deleted_at": None,
        "created_at": now,
        "updated_at": now,
    }


def get_message(message_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    if row is None:
        return None
    return _message_from_row(row, _read_receipts(conn, [message_id])[message_id])


def list_messages(
    conversation_id: str,
    before: str | None = None,
    limit: int = 50,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """List non-deleted messages, oldest first.

    Args:
        conversation_id: Conversation ID
        before: Only messages created before this ISO timestamp
        limit: Page size, taken from the newest end
        conn: Optional database connection
    """
    conn = _get_conn(conn)
    query = "SELECT * FROM messages WHERE conversation_id = ? AND is_deleted = 0"
    params: list[Any] = [conversation_id]
    if before:
        query += " AND created_at < ?"
        params.append(before)
    query += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)

    rows = conn.execute(query, tuple(params)).fetchall()
    rows.reverse()
    return _messages_from_rows(conn, rows)


def count_messages(conversation_id: str, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    row = conn.execute(
        "SELECT COUNT(*) FROM messages WHERE conversation_id = ? AND is_deleted = 0",
        (conversation_id,),
    ).fetchone()
    return row[0]


def edit_message(
    message_id: str,
    body: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Replace a message body and flag it edited."""
    conn = _get_conn(conn)
    now = _now()
    cursor = conn.execute(
        """UPDATE messages SET body = ?, is_edited = 1, edited_at = ?, updated_at = ?
           WHERE id = ? AND is_deleted = 0""",
        (body, now, now, message_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_message(message_id, conn=conn)


def soft_delete_message(message_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    now = _now()
    cursor = conn.execute(
        """UPDATE messages SET is_deleted = 1, deleted_at = ?, updated_at = ?
           WHERE id = ? AND is_deleted = 0""",
        (now, now, message_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_message(message_id, conn=conn)


@timed_operation("mark_messages_read")
def mark_messages_read(
    conversation_id: str,
    user_id: str,
    user_kind: str,
    user_name: str | None = None,
    message_ids: list[str] | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[str]:
    """Add a read receipt for `user` on qualifying messages.

    A message qualifies when it belongs to the conversation, is not deleted,
    was not sent by the reader, and has no receipt from the reader yet. When
    `message_ids` is given only those messages are considered.

    Returns:
        IDs of messages that received a new receipt (empty on a repeat call).
    """
    conn = _get_conn(conn)
    query = """SELECT m.id FROM messages m
               WHERE m.conversation_id = ? AND m.is_deleted = 0
                 AND NOT (m.sender_id = ? AND m.sender_kind = ?)
                 AND NOT EXISTS (
                     SELECT 1 FROM message_reads r
                     WHERE r.message_id = m.id AND r.user_id = ? AND r.user_kind = ?
                 )"""
    params: list[Any] = [conversation_id, user_id, user_kind, user_id, user_kind]
    if message_ids is not None:
        if not message_ids:
            return []
        placeholders = ",".join("?" for _ in message_ids)
        query += f" AND m.id IN ({placeholders})"
        params.extend(message_ids)
    query += " ORDER BY m.created_at"

    candidates = [row["id"] for row in conn.execute(query, tuple(params)).fetchall()]
    now = _now()
    marked: list[str] = []
    for mid in candidates:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO message_reads
                   (message_id, user_id, user_kind, user_name, read_at)
               VALUES (?, ?, ?, ?, ?)""",
            (mid, user_id, user_kind, user_name, now),
        )
        if cursor.rowcount > 0:
            marked.append(mid)
    conn.commit()
    return marked


def get_unread_count(
    conversation_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Count messages from others that `user` has not read yet."""
    conn = _get_conn(conn)
    row = conn.execute(
        """SELECT COUNT(*) FROM messages m
           WHERE m.conversation_id = ? AND m.is_deleted = 0
             AND NOT (m.sender_id = ? AND m.sender_kind = ?)
             AND NOT EXISTS (
                 SELECT 1 FROM message_reads r
                 WHERE r.message_id = m.id AND r.user_id = ? AND r.user_kind = ?
             )""",
        (conversation_id, user_id, user_kind, user_id, user_kind),
    ).fetchone()
    return row[0]


# --- Notifications ---


def _notification_from_row(row: sqlite3.Row) -> dict:
    notification = dict(row)
    notification["payload"] = _loads(notification["payload"], {})
    notification["is_read"] = bool(notification["is_read"])
    return notification


@timed_operation("create_notification")
def create_notification(
    user_id: str,
    user_kind: str,
    notification_type: str,
    conversation_id: str,
    payload: dict,
    message_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Create an unread notification.

    Returns:
        Notification dict, or None when one already exists for the same
        recipient and message.
    """
    conn = _get_conn(conn)
    notification_id = str(make_uuid7())
    now = _now()
    cursor = conn.execute(
        """INSERT OR IGNORE INTO notifications
               (id, user_id, user_kind, type, conversation_id, message_id, payload, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            notification_id,
            user_id,
            user_kind,
            notification_type,
            conversation_id,
            message_id,
            json.dumps(payload),
            now,
        ),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return {
        "id": notification_id,
        "user_id": user_id,
        "user_kind": user_kind,
        "type": notification_type,
        "conversation_id": conversation_id,
        "message_id": message_id,
        "payload": payload,
        "is_read": False,
        "delivered_at": None,
        "read_at": None,
        "created_at": now,
    }


def get_notification(notification_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
    return _notification_from_row(row) if row is not None else None


def list_notifications(
    user_id: str,
    user_kind: str,
    unread_only: bool = False,
    limit: int = 20,
    offset: int = 0,
    oldest_first: bool = False,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    conn = _get_conn(conn)
    query = "SELECT * FROM notifications WHERE user_id = ? AND user_kind = ?"
    if unread_only:
        query += " AND is_read = 0"
    order = "ASC" if oldest_first else "DESC"
    query += f" ORDER BY created_at {order}, id {order} LIMIT ? OFFSET ?"
    rows = conn.execute(query, (user_id, user_kind, limit, offset)).fetchall()
    return [_notification_from_row(row) for row in rows]


def count_notifications(
    user_id: str,
    user_kind: str,
    unread_only: bool = False,
    conn: sqlite3.Connection | None = None,
) -> int:
    conn = _get_conn(conn)
    query = "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND user_kind = ?"
    if unread_only:
        query += " AND is_read = 0"
    return conn.execute(query, (user_id, user_kind)).fetchone()[0]


def mark_notification_read(
    notification_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Acknowledge one notification. The first read_at is kept on repeats."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE notifications SET is_read = 1, read_at = COALESCE(read_at, ?)
           WHERE id = ? AND user_id = ? AND user_kind = ?""",
        (_now(), notification_id, user_id, user_kind),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_notification(notification_id, conn=conn)


def mark_all_notifications_read(
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute(
        """UPDATE notifications SET is_read = 1, read_at = ?
           WHERE user_id = ? AND user_kind = ? AND is_read = 0""",
        (_now(), user_id, user_kind),
    )
    conn.commit()
    return cursor.rowcount


@timed_operation("mark_notifications_delivered")
def mark_notifications_delivered(
    notification_ids: list[str],
    conn: sqlite3.Connection | None = None,
) -> int:
    """Stamp delivered_at on notifications that have never been pushed."""
    if not notification_ids:
        return 0
    conn = _get_conn(conn)
    placeholders = ",".join("?" for _ in notification_ids)
    cursor = conn.execute(
        f"""UPDATE notifications SET delivered_at = ?
            WHERE id IN ({placeholders}) AND delivered_at IS NULL""",
        (_now(), *notification_ids),
    )
    conn.commit()
    return cursor.rowcount


def delete_notification(
    notification_id: str,
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM notifications WHERE id = ? AND user_id = ? AND user_kind = ?",
        (notification_id, user_id, user_kind),
    )
    conn.commit()
    return cursor.rowcount > 0


# --- Presence / user cache ---


def upsert_user(user: dict, ttl: float, conn: sqlite3.Connection | None = None) -> None:
    """Refresh the cached profile of an identity without touching its online state."""
    conn = _get_conn(conn)
    now = _now()
    conn.execute(
        """INSERT INTO presence
               (user_id, user_kind, name, email, profile, role, synced_at, expires_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (user_id, user_kind) DO UPDATE SET
               name = excluded.name, email = excluded.email, profile = excluded.profile,
               role = excluded.role, synced_at = excluded.synced_at,
               expires_at = excluded.expires_at""",
        (
            user["id"],
            user["kind"],
            user.get("name"),
            user.get("email"),
            user.get("profile"),
            user.get("role"),
            now,
            _after(ttl),
        ),
    )
    conn.commit()


@timed_operation("set_presence_online")
def set_presence_online(
    user: dict,
    connection_id: str,
    ttl: float,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Mark an identity online on `connection_id` (last writer wins)."""
    conn = _get_conn(conn)
    now = _now()
    conn.execute(
        """INSERT INTO presence
               (user_id, user_kind, name, email, profile, role, is_online,
                connection_id, last_seen, synced_at, expires_at)
           VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
           ON CONFLICT (user_id, user_kind) DO UPDATE SET
               name = excluded.name, email = excluded.email, profile = excluded.profile,
               role = excluded.role, is_online = 1, connection_id = excluded.connection_id,
               last_seen = excluded.last_seen, synced_at = excluded.synced_at,
               expires_at = excluded.expires_at""",
        (
            user["id"],
            user["kind"],
            user.get("name"),
            user.get("email"),
            user.get("profile"),
            user.get("role"),
            connection_id,
            now,
            now,
            _after(ttl),
        ),
    )
    conn.commit()
    presence = get_presence(user["id"], user["kind"], conn=conn)
    assert presence is not None
    return presence


@timed_operation("set_presence_offline")
def set_presence_offline(
    user_id: str,
    user_kind: str,
    connection_id: str,
    ttl: float,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Mark an identity offline if `connection_id` is still the recorded one.

    Returns:
        The updated presence record, or None when a newer connection has
        already been recorded (nothing changed).
    """
    conn = _get_conn(conn)
    now = _now()
    cursor = conn.execute(
        """UPDATE presence
           SET is_online = 0, connection_id = NULL, last_seen = ?, synced_at = ?, expires_at = ?
           WHERE user_id = ? AND user_kind = ? AND connection_id = ?""",
        (now, now, _after(ttl), user_id, user_kind, connection_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_presence(user_id, user_kind, conn=conn)


def _presence_from_row(row: sqlite3.Row) -> dict:
    presence = dict(row)
    presence["is_online"] = bool(presence["is_online"])
    return presence


def get_presence(
    user_id: str,
    user_kind: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    conn = _get_conn(conn)
    row = conn.execute(
        "SELECT * FROM presence WHERE user_id = ? AND user_kind = ?", (user_id, user_kind)
    ).fetchone()
    return _presence_from_row(row) if row is not None else None


def list_online(conn: sqlite3.Connection | None = None) -> list[dict]:
    conn = _get_conn(conn)
    rows = conn.execute("SELECT * FROM presence WHERE is_online = 1 ORDER BY name").fetchall()
    return [_presence_from_row(row) for row in rows]


def touch_presence(
    keys: list[tuple[str, str]],
    ttl: float,
    conn: sqlite3.Connection | None = None,
) -> int:
    """Push back expires_at for the given identity keys."""
    if not keys:
        return 0
    conn = _get_conn(conn)
    expires_at = _after(ttl)
    cursor = conn.executemany(
        "UPDATE presence SET expires_at = ? WHERE user_id = ? AND user_kind = ?",
        [(expires_at, user_id, user_kind) for user_id, user_kind in keys],
    )
    conn.commit()
    return cursor.rowcount


def delete_expired_presence(conn: sqlite3.Connection | None = None) -> int:
    """Delete presence rows whose expires_at has passed."""
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM presence WHERE expires_at < ?", (_now(),))
    conn.commit()
    return cursor.rowcount
