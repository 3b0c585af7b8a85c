"""Storage adapter contract and backends for promoted uploads."""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiosqlite

from .errors import StorageError
from .records import StorageMetadata, StorageReceipt, utc_now_iso


class KeyValueStore(ABC):
    """Generic metadata persistence keyed by storage token."""

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace one record."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return one record, or None when absent."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove one record, returning whether it existed."""

    @abstractmethod
    async def keys(self, prefix: str = "") -> List[str]:
        """List keys that start with ``prefix``."""


class InMemoryKeyValueStore(KeyValueStore):
    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._items[key] = dict(value)

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            item = self._items.get(key)
            return dict(item) if item is not None else None

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._items.pop(key, None) is not None

    async def keys(self, prefix: str = "") -> List[str]:
        async with self._lock:
            return sorted(key for key in self._items if key.startswith(prefix))


_KV_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed metadata records, durable across restarts."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_KV_SCHEMA_SQL)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SQLiteKeyValueStore.start() has not been awaited")
        return self._db

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        db = self._conn()
        await db.execute(
            "INSERT OR REPLACE INTO kv (key, value_json, updated_at) VALUES (?, ?, ?)",
            (key, json.dumps(value, sort_keys=True), utc_now_iso()),
        )
        await db.commit()

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._conn().execute("SELECT value_json FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        return json.loads(row["value_json"]) if row else None

    async def delete(self, key: str) -> bool:
        db = self._conn()
        cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await db.commit()
        return cursor.rowcount > 0

    async def keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        async with self._conn().execute(
            "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (f"{escaped}%",),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["key"] for row in rows]


class StorageAdapter(ABC):
    """Final persistence for content that cleared validation and quarantine.

    Implementations must make an object visible only once it is completely
    written. The ingestion core calls ``persist`` at most once per section and
    treats any ``StorageError`` as terminal.
    """

    @abstractmethod
    async def persist(self, source: AsyncIterator[bytes], metadata: StorageMetadata) -> StorageReceipt:
        """Write ``source`` and return a receipt, or raise StorageError."""


class LocalFileStorageAdapter(StorageAdapter):
    """Local-disk backend; objects are named by their generated token."""

    def __init__(self, root_dir: Path, metadata_store: Optional[KeyValueStore] = None) -> None:
        self.root_dir = root_dir.resolve()
        self.metadata_store = metadata_store

    async def persist(self, source: AsyncIterator[bytes], metadata: StorageMetadata) -> StorageReceipt:
        target = self._resolve_target(metadata.token)
        partial = target.with_name(f"{target.name}.part")
        digest = hashlib.sha256()
        written = 0
        completed = False

        def _open():
            target.parent.mkdir(parents=True, exist_ok=True)
            return open(partial, "xb")

        try:
            handle = await asyncio.to_thread(_open)
            try:
                async for chunk in source:
                    await asyncio.to_thread(handle.write, chunk)
                    digest.update(chunk)
                    written += len(chunk)
                await asyncio.to_thread(handle.flush)
                await asyncio.to_thread(os.fsync, handle.fileno())
            finally:
                await asyncio.to_thread(handle.close)
            await asyncio.to_thread(os.replace, partial, target)
            completed = True
        except OSError as exc:
            raise StorageError(f"Failed to write stored object: {exc}") from exc
        finally:
            if not completed:
                with contextlib.suppress(OSError):
                    await asyncio.to_thread(partial.unlink, True)

        receipt = StorageReceipt(locator=f"file://{target.as_posix()}", byte_count=written, checksum=digest.hexdigest())
        if self.metadata_store is not None:
            record = metadata.to_dict()
            record.update({"locator": receipt.locator, "stored_at": utc_now_iso()})
            try:
                await self.metadata_store.put(metadata.token, record)
            except Exception as exc:
                # No receipt is issued, so the object must not stay visible.
                with contextlib.suppress(OSError):
                    await asyncio.to_thread(target.unlink, True)
                raise StorageError(f"Failed to record stored object metadata: {exc}") from exc
        return receipt

    def _resolve_target(self, token: str) -> Path:
        candidate = token.strip()
        if not candidate or "/" in candidate or "\\" in candidate or candidate in {".", ".."}:
            raise StorageError(f"Invalid storage token {token!r}")
        resolved = (self.root_dir / candidate).resolve()
        try:
            resolved.relative_to(self.root_dir)
        except ValueError as exc:
            raise StorageError("Storage token escapes the storage root") from exc
        return resolved


_BLOB_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS uploads (
    token TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    field_name TEXT NOT NULL,
    sanitized_name TEXT NOT NULL,
    content_type TEXT,
    size INTEGER NOT NULL,
    sha256 TEXT NOT NULL,
    content BLOB NOT NULL,
    stored_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_uploads_session ON uploads(session_id);
"""


class SQLiteBlobStorageAdapter(StorageAdapter):
    """Stores each object in a blob column; the insert commits atomically.

    The content is collected in memory before the insert, which is bounded by
    the section size limit.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_BLOB_SCHEMA_SQL)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def persist(self, source: AsyncIterator[bytes], metadata: StorageMetadata) -> StorageReceipt:
        if self._db is None:
            raise StorageError("SQLite blob storage is not started")
        parts: List[bytes] = []
        digest = hashlib.sha256()
        async for chunk in source:
            parts.append(chunk)
            digest.update(chunk)
        content = b"".join(parts)
        try:
            async with self._lock:
                await self._db.execute(
                    """
                    INSERT INTO uploads
                        (token, session_id, field_name, sanitized_name, content_type, size, sha256, content, stored_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        metadata.token,
                        metadata.session_id,
                        metadata.field_name,
                        metadata.sanitized_name,
                        metadata.content_type,
                        len(content),
                        digest.hexdigest(),
                        content,
                        utc_now_iso(),
                    ),
                )
                try:
                    await self._db.commit()
                except aiosqlite.Error:
                    await self._db.rollback()
                    raise
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to insert stored object: {exc}") from exc
        return StorageReceipt(
            locator=f"sqlite://uploads/{metadata.token}",
            byte_count=len(content),
            checksum=digest.hexdigest(),
        )

    async def read(self, token: str) -> Optional[bytes]:
        if self._db is None:
            raise StorageError("SQLite blob storage is not started")
        async with self._db.execute("SELECT content FROM uploads WHERE token = ?", (token,)) as cursor:
            row = await cursor.fetchone()
        return bytes(row["content"]) if row else None
