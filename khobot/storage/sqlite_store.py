"""
SQLite storage for conversations, usage counters and feedback.

Conversations are keyed by (user_id, conversation_id). Messages live in their
own table and are only ever INSERTed, so two concurrent appends to the same
conversation cannot overwrite each other. Counters are bumped with
INSERT ... ON CONFLICT DO UPDATE so increments stay atomic across processes.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from khobot.storage.models import (
    Conversation,
    Feedback,
    Message,
    PendingSelection,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS conversations (
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    expire_at TEXT NOT NULL,
    pending_selection TEXT DEFAULT NULL,
    PRIMARY KEY (user_id, conversation_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_monthly (
    period_key TEXT PRIMARY KEY,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS usage_daily (
    user_id TEXT NOT NULL,
    date_key TEXT NOT NULL,
    count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, date_key)
);

CREATE TABLE IF NOT EXISTS feedback (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    description TEXT NOT NULL,
    expected TEXT DEFAULT NULL,
    actual TEXT DEFAULT NULL,
    rating INTEGER DEFAULT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_owner
    ON conversations(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_updated
    ON conversations(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_conversations_expire
    ON conversations(expire_at);
CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(user_id, conversation_id, id);
CREATE INDEX IF NOT EXISTS idx_feedback_user
    ON feedback(user_id, created_at);
"""

_DELETE_MESSAGES = "DELETE FROM messages WHERE user_id = ? AND conversation_id = ?"


def _expiry(ttl_hours: float, now: datetime | None = None) -> str:
    return to_iso((now or utcnow()) + timedelta(hours=ttl_hours))


class SQLiteStore:
    """Thread-safe SQLite store: every call opens its own connection."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        pending = row["pending_selection"]
        return Conversation(
            conversation_id=row["conversation_id"],
            user_id=row["user_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expire_at=row["expire_at"],
            pending_selection=PendingSelection.from_dict(json.loads(pending)) if pending else None,
        )

    # ── Conversations ────────────────────────────────────────────────────────

    def owned_by_other(self, user_id: str, conversation_id: str) -> bool:
        """True if a live conversation with this id belongs to someone else."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT 1 FROM conversations
                   WHERE conversation_id = ? AND user_id != ? AND expire_at > ?
                   LIMIT 1""",
                (conversation_id, user_id, to_iso(utcnow())),
            ).fetchone()
        return row is not None

    def get_or_create(
        self,
        user_id: str,
        conversation_id: str,
        title: str,
        ttl_hours: float,
    ) -> Conversation:
        """
        Load the conversation, creating it if needed.
        The title is only written on insert; expire_at is refreshed every time.
        """
        now = utcnow()
        now_iso = to_iso(now)
        expire_at = _expiry(ttl_hours, now)
        with self._connect() as conn:
            # An expired conversation that has not been swept yet starts over.
            stale = conn.execute(
                """DELETE FROM conversations
                   WHERE user_id = ? AND conversation_id = ? AND expire_at <= ?""",
                (user_id, conversation_id, now_iso),
            ).rowcount
            if stale:
                conn.execute(_DELETE_MESSAGES, (user_id, conversation_id))
            conn.execute(
                """INSERT INTO conversations
                   (user_id, conversation_id, title, created_at, updated_at, expire_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id, conversation_id)
                   DO UPDATE SET expire_at = excluded.expire_at""",
                (user_id, conversation_id, title, now_iso, now_iso, expire_at),
            )
            row = conn.execute(
                "SELECT * FROM conversations WHERE user_id = ? AND conversation_id = ?",
                (user_id, conversation_id),
            ).fetchone()
        return self._row_to_conversation(row)

    def get_conversation(self, user_id: str, conversation_id: str) -> Conversation | None:
        """Return a live conversation with all its messages, or None."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM conversations
                   WHERE user_id = ? AND conversation_id = ? AND expire_at > ?""",
                (user_id, conversation_id, to_iso(utcnow())),
            ).fetchone()
            if row is None:
                return None
            msg_rows = conn.execute(
                """SELECT role, content, created_at FROM messages
                   WHERE user_id = ? AND conversation_id = ?
                   ORDER BY id""",
                (user_id, conversation_id),
            ).fetchall()
        conv = self._row_to_conversation(row)
        conv.messages = [Message(r["role"], r["content"], r["created_at"]) for r in msg_rows]
        return conv

    def recent_messages(self, user_id: str, conversation_id: str, limit: int) -> list[Message]:
        """Last `limit` messages in insertion order."""
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT role, content, created_at FROM messages
                   WHERE user_id = ? AND conversation_id = ?
                   ORDER BY id DESC LIMIT ?""",
                (user_id, conversation_id, limit),
            ).fetchall()
        return [Message(r["role"], r["content"], r["created_at"]) for r in reversed(rows)]

    def append_messages(
        self,
        user_id: str,
        conversation_id: str,
        messages: list[Message],
        ttl_hours: float,
    ) -> bool:
        """Push messages onto a conversation and slide its expiry. False if missing."""
        now = utcnow()
        with self._connect() as conn:
            updated = conn.execute(
                """UPDATE conversations SET updated_at = ?, expire_at = ?
                   WHERE user_id = ? AND conversation_id = ?""",
                (to_iso(now), _expiry(ttl_hours, now), user_id, conversation_id),
            ).rowcount
            if not updated:
                return False
            conn.executemany(
                """INSERT INTO messages (user_id, conversation_id, role, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                [(user_id, conversation_id, m.role, m.content, m.created_at) for m in messages],
            )
        logger.debug("Appended %d messages to %s/%s", len(messages), user_id, conversation_id)
        return True

    def set_pending_selection(
        self,
        user_id: str,
        conversation_id: str,
        selection: PendingSelection | None,
    ) -> None:
        payload = json.dumps(selection.to_dict(), ensure_ascii=False) if selection else None
        with self._connect() as conn:
            conn.execute(
                """UPDATE conversations SET pending_selection = ?
                   WHERE user_id = ? AND conversation_id = ?""",
                (payload, user_id, conversation_id),
            )

    def list_conversations(self, user_id: str, limit: int = 20) -> list[dict]:
        """Most recently updated live conversations, each with its last message."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT c.conversation_id, c.title, c.updated_at, c.expire_at,
                          (SELECT content FROM messages m
                           WHERE m.user_id = c.user_id AND m.conversation_id = c.conversation_id
                           ORDER BY m.id DESC LIMIT 1) AS last_message
                   FROM conversations c
                   WHERE c.user_id = ? AND c.expire_at > ?
                   ORDER BY c.updated_at DESC
                   LIMIT ?""",
                (user_id, to_iso(utcnow()), limit),
            ).fetchall()
        return [
            {
                "conversationId": r["conversation_id"],
                "title": r["title"],
                "updatedAt": r["updated_at"],
                "expireAt": r["expire_at"],
                "lastMessage": r["last_message"],
            }
            for r in rows
        ]

    def get_history(
        self,
        user_id: str,
        conversation_id: str,
        limit: int,
        cursor: int | None = None,
    ) -> dict | None:
        """
        Page backwards through a conversation.

        `cursor` is an index into the ordered message list; the page is the
        `limit` messages ending just before it (or at the end when absent).
        nextCursor is the page's start index, or None at the beginning.
        """
        conv = self.get_conversation(user_id, conversation_id)
        if conv is None:
            return None
        total = len(conv.messages)
        end = total if cursor is None else max(0, min(cursor, total))
        start = max(0, end - limit)
        return {
            "messages": [m.to_dict() for m in conv.messages[start:end]],
            "nextCursor": start if start > 0 else None,
            "total": total,
        }

    def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM conversations WHERE user_id = ? AND conversation_id = ?",
                (user_id, conversation_id),
            ).rowcount
            conn.execute(_DELETE_MESSAGES, (user_id, conversation_id))
        return deleted > 0

    def clear_conversation(self, user_id: str, conversation_id: str, ttl_hours: float) -> bool:
        """Truncate messages to empty and reset the expiry. False if missing."""
        now = utcnow()
        with self._connect() as conn:
            updated = conn.execute(
                """UPDATE conversations
                   SET updated_at = ?, expire_at = ?, pending_selection = NULL
                   WHERE user_id = ? AND conversation_id = ? AND expire_at > ?""",
                (to_iso(now), _expiry(ttl_hours, now), user_id, conversation_id, to_iso(now)),
            ).rowcount
            if updated:
                conn.execute(_DELETE_MESSAGES, (user_id, conversation_id))
        return updated > 0

    def update_title(self, user_id: str, conversation_id: str, title: str) -> bool:
        with self._connect() as conn:
            updated = conn.execute(
                """UPDATE conversations SET title = ?, updated_at = ?
                   WHERE user_id = ? AND conversation_id = ? AND expire_at > ?""",
                (title, to_iso(utcnow()), user_id, conversation_id, to_iso(utcnow())),
            ).rowcount
        return updated > 0

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every conversation whose expire_at has passed. Returns count."""
        cutoff = to_iso(now or utcnow())
        with self._connect() as conn:
            conn.execute(
                """DELETE FROM messages WHERE EXISTS (
                       SELECT 1 FROM conversations c
                       WHERE c.user_id = messages.user_id
                         AND c.conversation_id = messages.conversation_id
                         AND c.expire_at <= ?)""",
                (cutoff,),
            )
            removed = conn.execute(
                "DELETE FROM conversations WHERE expire_at <= ?", (cutoff,)
            ).rowcount
        if removed:
            logger.info("Swept %d expired conversations", removed)
        return removed

    # ── Usage counters ───────────────────────────────────────────────────────

    def try_increment_daily(self, user_id: str, date_key: str, limit: int) -> int | None:
        """
        Atomically count one question for (user, day) unless the limit is hit.
        Returns the new count, or None if the increment was refused.
        """
        if limit <= 0:
            return None
        with self._connect() as conn:
            changed = conn.execute(
                """INSERT INTO usage_daily (user_id, date_key, count) VALUES (?, ?, 1)
                   ON CONFLICT(user_id, date_key)
                   DO UPDATE SET count = count + 1 WHERE count < ?""",
                (user_id, date_key, limit),
            ).rowcount
            if not changed:
                return None
            row = conn.execute(
                "SELECT count FROM usage_daily WHERE user_id = ? AND date_key = ?",
                (user_id, date_key),
            ).fetchone()
        return row["count"]

    def get_daily_count(self, user_id: str, date_key: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count FROM usage_daily WHERE user_id = ? AND date_key = ?",
                (user_id, date_key),
            ).fetchone()
        return row["count"] if row else 0

    def ensure_month(self, period_key: str) -> dict:
        """Create the month's counter row on first use and return it."""
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO usage_monthly (period_key) VALUES (?)",
                (period_key,),
            )
            row = conn.execute(
                "SELECT * FROM usage_monthly WHERE period_key = ?", (period_key,)
            ).fetchone()
        return dict(row)

    def add_month_usage(
        self,
        period_key: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO usage_monthly (period_key, input_tokens, output_tokens, total_cost)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(period_key) DO UPDATE SET
                       input_tokens = input_tokens + excluded.input_tokens,
                       output_tokens = output_tokens + excluded.output_tokens,
                       total_cost = total_cost + excluded.total_cost""",
                (period_key, max(input_tokens, 0), max(output_tokens, 0), max(cost, 0.0)),
            )

    # ── Feedback ─────────────────────────────────────────────────────────────

    def add_feedback(self, fb: Feedback) -> Feedback:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO feedback
                   (id, user_id, conversation_id, description, expected, actual, rating, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (fb.feedback_id, fb.user_id, fb.conversation_id, fb.description,
                 fb.expected, fb.actual, fb.rating, fb.created_at),
            )
        return fb

    def list_feedback(
        self,
        user_id: str,
        conversation_id: str | None = None,
        limit: int = 20,
    ) -> list[Feedback]:
        sql = "SELECT * FROM feedback WHERE user_id = ?"
        params: list = [user_id]
        if conversation_id:
            sql += " AND conversation_id = ?"
            params.append(conversation_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            Feedback(
                user_id=r["user_id"],
                conversation_id=r["conversation_id"],
                description=r["description"],
                expected=r["expected"],
                actual=r["actual"],
                rating=r["rating"],
                feedback_id=r["id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
