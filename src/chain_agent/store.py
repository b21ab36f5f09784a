"""SQLite conversation store backing the built-in tools."""

from __future__ import annotations

import hashlib
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT,
    created_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS participants (
    conversation_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    display_name TEXT NOT NULL,
    PRIMARY KEY (conversation_id, user_id)
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    sender_id TEXT NOT NULL,
    text TEXT NOT NULL,
    sent_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS messages_by_conversation ON messages (conversation_id, sent_at);
"""


@dataclass(slots=True)
class ConversationSummary:
    conversation_id: str
    title: str
    last_message: str
    last_active: float
    participant_count: int


@dataclass(slots=True)
class Contact:
    user_id: str
    display_name: str
    last_contact: float | None = None

    @property
    def is_recent(self) -> bool:
        return self.last_contact is not None


@dataclass(slots=True)
class MessageStats:
    message_count: int
    first_message_at: float | None
    last_message_at: float | None
    per_sender: dict[str, int]


@dataclass(slots=True)
class StoredMessage:
    message_id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    text: str
    sent_at: float


class ConversationStore:
    """Conversations, participants and messages in a single SQLite file.

    Every write is a single statement or a single transaction scoped to one
    conversation, so concurrent readers never observe partial writes.
    """

    def __init__(self, sqlite_path: str | Path) -> None:
        self.db_file = Path(sqlite_path)
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def create_conversation(
        self,
        participants: dict[str, str],
        *,
        title: str | None = None,
        conversation_id: str | None = None,
    ) -> str:
        """Create a conversation; `participants` maps user id to display name."""
        conversation_id = conversation_id or uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO conversations(id, title, created_at) VALUES(?, ?, ?)",
                (conversation_id, title, time.time()),
            )
            conn.executemany(
                "INSERT INTO participants(conversation_id, user_id, display_name) VALUES(?, ?, ?)",
                [(conversation_id, user_id, name) for user_id, name in participants.items()],
            )
        return conversation_id

    def add_message(
        self,
        conversation_id: str,
        sender_id: str,
        text: str,
        *,
        sent_at: float | None = None,
        message_id: str | None = None,
    ) -> str:
        """Insert a message; re-inserting the same `message_id` is a no-op."""
        message_id = message_id or uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO messages(id, conversation_id, sender_id, text, sent_at) "
                "VALUES(?, ?, ?, ?, ?)",
                (message_id, conversation_id, sender_id, text, sent_at or time.time()),
            )
        return message_id

    def is_participant(self, conversation_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM participants WHERE conversation_id = ? AND user_id = ?",
                (conversation_id, user_id),
            ).fetchone()
        return row is not None

    def title_for(self, conversation_id: str, viewer_id: str) -> str:
        """Display title: explicit title, the other participant, or a group label."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT title FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
            if row is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            if row["title"]:
                return str(row["title"])
            others = conn.execute(
                "SELECT display_name FROM participants WHERE conversation_id = ? AND user_id != ?",
                (conversation_id, viewer_id),
            ).fetchall()
        if len(others) == 1:
            return str(others[0]["display_name"])
        return f"Group Chat ({len(others) + 1} people)"

    def list_conversations(self, user_id: str, limit: int = 5) -> list[ConversationSummary]:
        """Conversations of `user_id`, most recently active first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.id AS id,
                       COALESCE(MAX(m.sent_at), c.created_at) AS last_active,
                       (SELECT COUNT(*) FROM participants pc WHERE pc.conversation_id = c.id) AS people,
                       (SELECT text FROM messages lm WHERE lm.conversation_id = c.id
                        ORDER BY lm.sent_at DESC LIMIT 1) AS last_message
                FROM conversations c
                JOIN participants p ON p.conversation_id = c.id AND p.user_id = ?
                LEFT JOIN messages m ON m.conversation_id = c.id
                GROUP BY c.id
                ORDER BY last_active DESC
                LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [
            ConversationSummary(
                conversation_id=row["id"],
                title=self.title_for(row["id"], user_id),
                last_message=row["last_message"] or "",
                last_active=float(row["last_active"]),
                participant_count=int(row["people"]),
            )
            for row in rows
        ]

    def get_messages(self, conversation_id: str, limit: int = 50) -> list[StoredMessage]:
        """Most recent `limit` messages in chronological order."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.id, m.conversation_id, m.sender_id, m.text, m.sent_at,
                       COALESCE(p.display_name, m.sender_id) AS sender_name
                FROM messages m
                LEFT JOIN participants p
                  ON p.conversation_id = m.conversation_id AND p.user_id = m.sender_id
                WHERE m.conversation_id = ?
                ORDER BY m.sent_at DESC
                LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [
            StoredMessage(
                message_id=row["id"],
                conversation_id=row["conversation_id"],
                sender_id=row["sender_id"],
                sender_name=row["sender_name"],
                text=row["text"],
                sent_at=float(row["sent_at"]),
            )
            for row in reversed(rows)
        ]

    def find_conversations(self, user_id: str, name: str) -> list[ConversationSummary]:
        """Conversations whose title or other participant matches `name`."""
        needle = name.strip().lower()
        return [
            summary
            for summary in self.list_conversations(user_id, limit=1000)
            if needle and needle in summary.title.lower()
        ]

    def participants(self, conversation_id: str) -> dict[str, str]:
        """Map of user id to display name, in join order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user_id, display_name FROM participants WHERE conversation_id = ? ORDER BY rowid",
                (conversation_id,),
            ).fetchall()
        return {row["user_id"]: row["display_name"] for row in rows}

    def message_stats(self, conversation_id: str) -> MessageStats:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT sender_id, COUNT(*) AS sent, MIN(sent_at) AS first_at, MAX(sent_at) AS last_at "
                "FROM messages WHERE conversation_id = ? GROUP BY sender_id",
                (conversation_id,),
            ).fetchall()
        return MessageStats(
            message_count=sum(int(row["sent"]) for row in rows),
            first_message_at=min((float(row["first_at"]) for row in rows), default=None),
            last_message_at=max((float(row["last_at"]) for row in rows), default=None),
            per_sender={row["sender_id"]: int(row["sent"]) for row in rows},
        )

    def list_contacts(self, user_id: str) -> list[Contact]:
        """Every other known user; `last_contact` is set for people sharing a conversation."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.user_id AS user_id,
                       MIN(p.display_name) AS display_name,
                       MAX(CASE WHEN mine.user_id IS NOT NULL
                                THEN COALESCE(
                                    (SELECT MAX(m.sent_at) FROM messages m
                                     WHERE m.conversation_id = p.conversation_id),
                                    c.created_at)
                           END) AS last_contact
                FROM participants p
                JOIN conversations c ON c.id = p.conversation_id
                LEFT JOIN participants mine
                  ON mine.conversation_id = p.conversation_id AND mine.user_id = ?
                WHERE p.user_id != ?
                GROUP BY p.user_id
                ORDER BY display_name
                """,
                (user_id, user_id),
            ).fetchall()
        return [
            Contact(
                user_id=row["user_id"],
                display_name=row["display_name"],
                last_contact=None if row["last_contact"] is None else float(row["last_contact"]),
            )
            for row in rows
        ]

    def display_name(self, user_id: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT display_name FROM participants WHERE user_id = ? LIMIT 1", (user_id,)
            ).fetchone()
        return None if row is None else str(row["display_name"])

    def find_direct_conversation(self, user_id: str, other_id: str) -> str | None:
        """The oldest two-person conversation between `user_id` and `other_id`."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT c.id AS id FROM conversations c
                JOIN participants a ON a.conversation_id = c.id AND a.user_id = ?
                JOIN participants b ON b.conversation_id = c.id AND b.user_id = ?
                WHERE (SELECT COUNT(*) FROM participants p WHERE p.conversation_id = c.id) = 2
                ORDER BY c.created_at
                LIMIT 1
                """,
                (user_id, other_id),
            ).fetchone()
        return None if row is None else str(row["id"])


def idempotency_key(*parts: str) -> str:
    """Deterministic id so a retried write lands on the same row."""
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return digest[:32]
