"""Chat sessions and their ordered messages."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta

from personal_shopper_store.db import PersonalStoreDB, utc_now
from personal_shopper_store.errors import ConstraintViolation, NotFound
from personal_shopper_store.models import ROLES, ChatMessage, ChatSession, MessageInput


_LOGGER = logging.getLogger(__name__)

SESSION_NAME_LIMIT = 50
IMAGE_SESSION_NAME = "Image search"


def derive_session_name(message: MessageInput) -> str:
    text = " ".join(message.content.split())
    if not text:
        return IMAGE_SESSION_NAME if message.image_ref else "New chat"
    if len(text) <= SESSION_NAME_LIMIT:
        return text
    return text[:SESSION_NAME_LIMIT].rstrip() + "..."


class ChatStore:
    def __init__(self, db: PersonalStoreDB) -> None:
        self.db = db

    @staticmethod
    def _validate(message: MessageInput) -> None:
        if message.role not in ROLES:
            raise ConstraintViolation(f"role must be one of: {', '.join(ROLES)}")
        if not message.content.strip() and not message.image_ref:
            raise ConstraintViolation("A message needs text content or an image reference.")

    @staticmethod
    def _next_timestamp(conn: sqlite3.Connection) -> str:
        """Clock reading taken under the write lock, strictly after every stored chat timestamp."""
        now = utc_now()
        row = conn.execute("SELECT MAX(updated_at) FROM chat_sessions").fetchone()
        latest = row[0] if row else None
        if not latest or latest < now:
            return now
        try:
            bumped = datetime.fromisoformat(latest) + timedelta(microseconds=1)
        except ValueError:
            return now
        return bumped.isoformat(timespec="microseconds")

    def create_or_append(
        self,
        session_id: int | None,
        message: MessageInput,
        *,
        category: str = "general",
    ) -> tuple[int, int]:
        """Append ``message``, opening a new session when ``session_id`` is None."""
        self._validate(message)
        with self.db.transaction() as conn:
            timestamp = self._next_timestamp(conn)
            if session_id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO chat_sessions (session_name, category, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (derive_session_name(message), category.strip() or "general", timestamp, timestamp),
                )
                resolved_id = int(cursor.lastrowid)
            else:
                cursor = conn.execute(
                    "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
                    (timestamp, int(session_id)),
                )
                if cursor.rowcount == 0:
                    raise NotFound("Chat session not found.")
                resolved_id = int(session_id)

            cursor = conn.execute(
                """
                INSERT INTO chat_messages (session_id, role, content, image_ref, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (resolved_id, message.role, message.content, message.image_ref, timestamp),
            )
            message_id = int(cursor.lastrowid)

        _LOGGER.debug("Stored message %s in session %s", message_id, resolved_id)
        return resolved_id, message_id

    def list_sessions(self) -> list[ChatSession]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT cs.id,
                       cs.session_name,
                       cs.category,
                       cs.created_at,
                       cs.updated_at,
                       COUNT(cm.id) AS message_count
                FROM chat_sessions cs
                LEFT JOIN chat_messages cm ON cm.session_id = cs.id
                GROUP BY cs.id
                ORDER BY cs.updated_at DESC, cs.id DESC
                """
            ).fetchall()
        return [ChatSession.from_row(row) for row in rows]

    def get_session(self, session_id: int) -> ChatSession:
        with self.db.read() as conn:
            row = conn.execute(
                """
                SELECT id, session_name, category, created_at, updated_at
                FROM chat_sessions
                WHERE id = ?
                """,
                (int(session_id),),
            ).fetchone()
        if not row:
            raise NotFound("Chat session not found.")
        return ChatSession.from_row(row)

    def list_messages(self, session_id: int) -> list[ChatMessage]:
        with self.db.read() as conn:
            exists = conn.execute("SELECT 1 FROM chat_sessions WHERE id = ?", (int(session_id),)).fetchone()
            if not exists:
                raise NotFound("Chat session not found.")
            rows = conn.execute(
                """
                SELECT id, session_id, role, content, image_ref, created_at
                FROM chat_messages
                WHERE session_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (int(session_id),),
            ).fetchall()
        return [ChatMessage.from_row(row) for row in rows]

    def delete_session(self, session_id: int) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM chat_sessions WHERE id = ?", (int(session_id),))
            if cursor.rowcount == 0:
                raise NotFound("Chat session not found.")
        _LOGGER.info("Deleted chat session %s", session_id)
