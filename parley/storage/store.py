"""
SQLite-backed chat store.

Uses ``aiosqlite`` for async database access with a write lock to serialise
mutations (SQLite only supports one writer at a time in WAL mode).

Schema is version-tracked via a ``schema_version`` table.  Migrations are
applied automatically on ``init()``.

Messages are keyed by ``(thread_id, message_id)`` and upserted, so saving
the same message twice (a stop-save racing a finish-save) updates it in
place and keeps its original position.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from parley.chat.thread_meta import DEFAULT_ICON, DEFAULT_TITLE
from parley.llm.parts import Message
from parley.orchestrator.collaborators import (
    AttachmentRecord,
    ResolvedKeys,
    ThreadStatus,
    UserSettings,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS threads (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            icon TEXT NOT NULL,
            parent_thread_id TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        """CREATE INDEX IF NOT EXISTS idx_threads_user ON threads(user_id)""",
        """CREATE TABLE IF NOT EXISTS messages (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            thread_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            role TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE (thread_id, message_id),
            FOREIGN KEY (thread_id) REFERENCES threads(id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id, seq)""",
        """CREATE TABLE IF NOT EXISTS settings (
            user_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS api_keys (
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            api_key TEXT NOT NULL,
            PRIMARY KEY (user_id, provider)
        )""",
        """CREATE TABLE IF NOT EXISTS attachments (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            filename TEXT NOT NULL,
            media_type TEXT NOT NULL,
            storage_path TEXT NOT NULL,
            page_count INTEGER,
            created_at TEXT NOT NULL
        )""",
    ],
}

KEY_OPENROUTER = "openrouter"
KEY_PARALLEL = "parallel"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class ChatStore:
    """
    Async SQLite store for threads, messages, settings, keys and attachments.

    Usage::

        store = ChatStore("~/.parley/chat.db", "~/.parley/files")
        await store.init()
        status = await store.ensure_thread_exists(thread_id, user_id)
        await store.save_message(thread_id, user_id, message)
        messages = await store.get_messages(thread_id, user_id)
        await store.close()

    *server_keys* are used when neither the request nor the user's stored
    keys supply one.
    """

    def __init__(
        self,
        db_path: str,
        files_dir: str,
        server_keys: ResolvedKeys | None = None,
    ) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.files_dir = Path(files_dir).expanduser().resolve()
        self.files_dir.mkdir(parents=True, exist_ok=True)
        self.server_keys = server_keys or ResolvedKeys()
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0

    async def _run_migrations(self) -> None:
        assert self._db is not None
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)
            await self._db.execute("DELETE FROM schema_version")
            await self._db.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            logger.info("Applied schema migration %d", version)

        await self._db.commit()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    async def ensure_thread_exists(self, thread_id: str, user_id: str) -> ThreadStatus:
        """Create the thread for *user_id* when no thread has this id yet."""
        assert self._db is not None
        async with self._write_lock:
            cursor = await self._db.execute(
                "SELECT user_id FROM threads WHERE id = ?", (thread_id,)
            )
            row = await cursor.fetchone()
            if row is not None:
                return ThreadStatus(exists=True, owned=row["user_id"] == user_id)
            now = _now()
            await self._db.execute(
                "INSERT INTO threads (id, user_id, title, icon, parent_thread_id, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, NULL, ?, ?)",
                (thread_id, user_id, DEFAULT_TITLE, DEFAULT_ICON, now, now),
            )
            await self._db.commit()
        logger.debug("Created thread %s for %s", thread_id, user_id)
        return ThreadStatus(exists=False, owned=True, created=True)

    async def create_thread(
        self, user_id: str, title: str, parent_thread_id: str | None = None
    ) -> str:
        assert self._db is not None
        thread_id = str(uuid.uuid4())
        now = _now()
        async with self._write_lock:
            await self._db.execute(
                "INSERT INTO threads (id, user_id, title, icon, parent_thread_id, created_at, updated_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (thread_id, user_id, title, DEFAULT_ICON, parent_thread_id, now, now),
            )
            await self._db.commit()
        return thread_id

    async def get_thread(self, thread_id: str, user_id: str) -> dict | None:
        """Return the thread record, or ``None`` if missing or not owned."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT * FROM threads WHERE id = ? AND user_id = ?", (thread_id, user_id)
        )
        row = await cursor.fetchone()
        return self._thread_row(row) if row is not None else None

    async def list_threads(self, user_id: str) -> list[dict]:
        """Return the user's threads, most recently updated first."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT * FROM threads WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        )
        return [self._thread_row(row) for row in await cursor.fetchall()]

    @staticmethod
    def _thread_row(row: aiosqlite.Row) -> dict:
        return {
            "id": row["id"],
            "title": row["title"],
            "icon": row["icon"],
            "parentThreadId": row["parent_thread_id"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    async def rename_thread(self, thread_id: str, user_id: str, title: str) -> None:
        await self._update_thread(thread_id, user_id, "title", title)

    async def update_thread_icon(self, thread_id: str, user_id: str, icon: str) -> None:
        await self._update_thread(thread_id, user_id, "icon", icon)

    async def _update_thread(self, thread_id: str, user_id: str, column: str, value: str) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                f"UPDATE threads SET {column} = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                (value, _now(), thread_id, user_id),
            )
            await self._db.commit()

    async def delete_thread(self, thread_id: str, user_id: str) -> bool:
        assert self._db is not None
        async with self._write_lock:
            cursor = await self._db.execute(
                "DELETE FROM threads WHERE id = ? AND user_id = ?", (thread_id, user_id)
            )
            await self._db.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def save_message(self, thread_id: str, user_id: str, message: Message) -> None:
        """Insert or update *message*; ignored when the thread is not the user's."""
        assert self._db is not None
        payload = json.dumps(message.to_dict())
        now = _now()
        async with self._write_lock:
            cursor = await self._db.execute(
                "SELECT 1 FROM threads WHERE id = ? AND user_id = ?", (thread_id, user_id)
            )
            if await cursor.fetchone() is None:
                logger.warning("Not saving message %s: thread %s not owned", message.id, thread_id)
                return
            await self._db.execute(
                "INSERT INTO messages (thread_id, message_id, role, payload, created_at)"
                " VALUES (?, ?, ?, ?, ?)"
                " ON CONFLICT (thread_id, message_id) DO UPDATE SET payload = excluded.payload",
                (thread_id, message.id, message.role, payload, now),
            )
            await self._db.execute(
                "UPDATE threads SET updated_at = ? WHERE id = ?", (now, thread_id)
            )
            await self._db.commit()

    async def get_messages(self, thread_id: str, user_id: str) -> list[Message]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT m.payload FROM messages m JOIN threads t ON t.id = m.thread_id"
            " WHERE m.thread_id = ? AND t.user_id = ? ORDER BY m.seq",
            (thread_id, user_id),
        )
        return [Message.from_dict(json.loads(row["payload"])) for row in await cursor.fetchall()]

    async def truncate_thread_messages(
        self, thread_id: str, user_id: str, keep_count: int
    ) -> int:
        """
        Delete the message at position *keep_count* and every later one.

        Returns the number of deleted messages.  Calling it again with the
        same position deletes nothing.
        """
        assert self._db is not None
        if keep_count < 0:
            raise ValueError("keep_count must be >= 0")
        async with self._write_lock:
            cursor = await self._db.execute(
                "SELECT m.seq FROM messages m JOIN threads t ON t.id = m.thread_id"
                " WHERE m.thread_id = ? AND t.user_id = ? ORDER BY m.seq LIMIT 1 OFFSET ?",
                (thread_id, user_id, keep_count),
            )
            row = await cursor.fetchone()
            if row is None:
                return 0
            cursor = await self._db.execute(
                "DELETE FROM messages WHERE thread_id = ? AND seq >= ?",
                (thread_id, row["seq"]),
            )
            await self._db.commit()
        logger.info("Truncated thread %s at %d (%d deleted)", thread_id, keep_count, cursor.rowcount)
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Settings and keys
    # ------------------------------------------------------------------

    async def get_settings(self, user_id: str) -> UserSettings:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT payload FROM settings WHERE user_id = ?", (user_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return UserSettings()
        return UserSettings.from_dict(json.loads(row["payload"]))

    async def save_settings(self, user_id: str, settings: UserSettings) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "INSERT INTO settings (user_id, payload) VALUES (?, ?)"
                " ON CONFLICT (user_id) DO UPDATE SET payload = excluded.payload",
                (user_id, json.dumps(settings.to_dict())),
            )
            await self._db.commit()

    async def set_api_key(self, user_id: str, provider: str, api_key: str) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "INSERT INTO api_keys (user_id, provider, api_key) VALUES (?, ?, ?)"
                " ON CONFLICT (user_id, provider) DO UPDATE SET api_key = excluded.api_key",
                (user_id, provider, api_key),
            )
            await self._db.commit()
        logger.info("Stored %s key for %s (%s...)", provider, user_id, api_key[:6])

    async def resolve_keys(
        self,
        user_id: str,
        openrouter_client_key: str | None = None,
        parallel_client_key: str | None = None,
    ) -> ResolvedKeys:
        """Client key first, then the user's stored key, then the server's."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT provider, api_key FROM api_keys WHERE user_id = ?", (user_id,)
        )
        stored = {row["provider"]: row["api_key"] for row in await cursor.fetchall()}
        return ResolvedKeys(
            openrouter=openrouter_client_key
            or stored.get(KEY_OPENROUTER)
            or self.server_keys.openrouter,
            parallel=parallel_client_key
            or stored.get(KEY_PARALLEL)
            or self.server_keys.parallel,
        )

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    async def add_attachment(
        self,
        user_id: str,
        filename: str,
        media_type: str,
        content: bytes,
        page_count: int | None = None,
    ) -> AttachmentRecord:
        assert self._db is not None
        attachment_id = str(uuid.uuid4())
        path = self.files_dir / f"{attachment_id}-{Path(filename).name}"
        await asyncio.to_thread(path.write_bytes, content)
        record = AttachmentRecord(
            id=attachment_id,
            user_id=user_id,
            filename=filename,
            media_type=media_type,
            storage_path=str(path),
            page_count=page_count,
        )
        async with self._write_lock:
            await self._db.execute(
                "INSERT INTO attachments (id, user_id, filename, media_type, storage_path, page_count, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    user_id,
                    filename,
                    media_type,
                    record.storage_path,
                    page_count,
                    _now(),
                ),
            )
            await self._db.commit()
        return record

    async def get_attachments(self, user_id: str, ids: list[str]) -> list[AttachmentRecord]:
        """Return the attachments among *ids* that belong to *user_id*."""
        assert self._db is not None
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        cursor = await self._db.execute(
            f"SELECT * FROM attachments WHERE user_id = ? AND id IN ({placeholders})",
            (user_id, *ids),
        )
        return [
            AttachmentRecord(
                id=row["id"],
                user_id=row["user_id"],
                filename=row["filename"],
                media_type=row["media_type"],
                storage_path=row["storage_path"],
                page_count=row["page_count"],
            )
            for row in await cursor.fetchall()
        ]

    async def read_text(self, storage_path: str) -> str:
        return await asyncio.to_thread(Path(storage_path).read_text, encoding="utf-8")

    async def get_pdf_page_counts(self, storage_paths: list[str]) -> dict[str, int]:
        assert self._db is not None
        if not storage_paths:
            return {}
        placeholders = ",".join("?" for _ in storage_paths)
        cursor = await self._db.execute(
            "SELECT storage_path, page_count FROM attachments"
            f" WHERE storage_path IN ({placeholders}) AND page_count IS NOT NULL",
            tuple(storage_paths),
        )
        return {row["storage_path"]: row["page_count"] for row in await cursor.fetchall()}

    async def delete_attachments(self, user_id: str, ids: list[str]) -> int:
        """Delete the user's attachments among *ids*, rows and files."""
        records = await self.get_attachments(user_id, ids)
        if not records:
            return 0
        assert self._db is not None
        placeholders = ",".join("?" for _ in records)
        async with self._write_lock:
            await self._db.execute(
                f"DELETE FROM attachments WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *(r.id for r in records)),
            )
            await self._db.commit()
        for record in records:
            try:
                await asyncio.to_thread(Path(record.storage_path).unlink, missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", record.storage_path, exc)
        return len(records)
