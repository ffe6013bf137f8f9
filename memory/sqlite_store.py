"""SQLite-based chat store for group persistence."""

import asyncio
import json
import sqlite3
import logging
import uuid
from pathlib import Path
from datetime import datetime
from typing import Optional, List

from schemas.chat import ChatGroup, Message, Participant, participant_list_adapter
from .chat_store import ChatStore

logger = logging.getLogger(__name__)


class SQLiteChatStore(ChatStore):
    """
    SQLite-based persistent chat store.

    Blocking sqlite3 calls run in worker threads so the event loop keeps
    serving other agents while a write is in progress.
    """

    def __init__(self, db_path: str = "data/chat.db"):
        """
        Initialize SQLite chat store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize database schema."""
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chat_groups (
                group_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                icon TEXT,
                description TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                message_id TEXT NOT NULL UNIQUE,
                group_id TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('user', 'ai', 'system')),
                text TEXT NOT NULL,
                author TEXT,
                reply_to_id TEXT,
                timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (group_id) REFERENCES chat_groups(group_id)
            )
        """)

        # One participants document per group, memory banks included
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS participants (
                group_id TEXT PRIMARY KEY,
                document TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (group_id) REFERENCES chat_groups(group_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS api_keys (
                key_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                api_key TEXT NOT NULL,
                provider TEXT NOT NULL DEFAULT 'openai'
            )
        """)

        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_group ON messages(group_id, seq)"
        )

        conn.commit()
        conn.close()
        logger.info(f"Database initialized at {self.db_path}")

    @staticmethod
    def _row_to_group(row: sqlite3.Row) -> ChatGroup:
        return ChatGroup(
            id=row["group_id"],
            name=row["name"],
            icon=row["icon"] or "MessageSquare",
            description=row["description"] or "",
            created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else datetime.now()
        )

    # == GROUPS ==

    def _list_groups(self) -> List[ChatGroup]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM chat_groups ORDER BY created_at, rowid")
        rows = cursor.fetchall()
        conn.close()
        return [self._row_to_group(row) for row in rows]

    def _create_group(self, name: str, icon: str, description: str) -> ChatGroup:
        group = ChatGroup(id=uuid.uuid4().hex, name=name, icon=icon, description=description)

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO chat_groups (group_id, name, icon, description, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (group.id, group.name, group.icon, group.description, group.created_at.isoformat())
        )
        conn.commit()
        conn.close()

        logger.info(f"Created chat group {group.id} ({name})")
        return group

    def _get_group(self, group_id: str) -> Optional[ChatGroup]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM chat_groups WHERE group_id = ?", (group_id,))
        row = cursor.fetchone()
        conn.close()
        return self._row_to_group(row) if row else None

    # == MESSAGES ==

    def _get_messages(self, group_id: str, limit: int) -> List[Message]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """
            SELECT message_id, type, text, author, reply_to_id, timestamp
            FROM messages
            WHERE group_id = ?
            ORDER BY seq DESC
            LIMIT ?
            """,
            (group_id, limit)
        )
        rows = cursor.fetchall()
        conn.close()

        messages = []
        for row in reversed(rows):  # Reverse to get chronological order
            messages.append(Message(
                id=row["message_id"],
                type=row["type"],
                text=row["text"],
                author=json.loads(row["author"]) if row["author"] else None,
                reply_to_id=row["reply_to_id"],
                timestamp=datetime.fromisoformat(row["timestamp"]) if row["timestamp"] else datetime.now()
            ))
        return messages

    def _add_message(self, group_id: str, message: Message) -> str:
        final_id = f"msg-{uuid.uuid4().hex}"
        author_json = message.author.model_dump_json() if message.author else None

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT INTO messages (message_id, group_id, type, text, author, reply_to_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                final_id,
                group_id,
                message.type.value,
                message.text,
                author_json,
                message.reply_to_id,
                datetime.now().isoformat()
            )
        )
        conn.commit()
        conn.close()
        return final_id

    # == PARTICIPANTS (with AI memories) ==

    def _get_participants(self, group_id: str) -> List[Participant]:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT document FROM participants WHERE group_id = ?", (group_id,))
        row = cursor.fetchone()
        conn.close()

        if not row:
            return []
        return participant_list_adapter.validate_json(row["document"])

    def _save_participants(self, group_id: str, participants: List[Participant]):
        document = participant_list_adapter.dump_json(list(participants)).decode()

        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute(
            """
            INSERT OR REPLACE INTO participants (group_id, document, updated_at)
            VALUES (?, ?, ?)
            """,
            (group_id, document, datetime.now().isoformat())
        )
        conn.commit()
        conn.close()

    def _get_api_keys(self) -> list:
        conn = self._get_connection()
        cursor = conn.cursor()
        cursor.execute("SELECT key_id, name, api_key, provider FROM api_keys ORDER BY key_id")
        rows = cursor.fetchall()
        conn.close()
        return [
            {"id": row["key_id"], "name": row["name"], "key": row["api_key"], "provider": row["provider"]}
            for row in rows
        ]

    # == Async interface ==

    async def list_groups(self) -> List[ChatGroup]:
        return await asyncio.to_thread(self._list_groups)

    async def create_group(self, name: str, icon: str = "MessageSquare", description: str = "") -> ChatGroup:
        return await asyncio.to_thread(self._create_group, name, icon, description)

    async def get_group(self, group_id: str) -> Optional[ChatGroup]:
        return await asyncio.to_thread(self._get_group, group_id)

    async def get_messages(self, group_id: str, limit: int = 100) -> List[Message]:
        return await asyncio.to_thread(self._get_messages, group_id, limit)

    async def add_message(self, group_id: str, message: Message) -> str:
        return await asyncio.to_thread(self._add_message, group_id, message)

    async def get_participants(self, group_id: str) -> List[Participant]:
        return await asyncio.to_thread(self._get_participants, group_id)

    async def save_participants(self, group_id: str, participants: List[Participant]):
        await asyncio.to_thread(self._save_participants, group_id, participants)

    async def get_api_keys(self) -> list:
        return await asyncio.to_thread(self._get_api_keys)
