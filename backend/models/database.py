"""Persistence gateway for node snapshots, context logs and guidance templates.

Every node writes its own snapshot under its node id; a coordinator's child
additionally writes a fire-and-forget result record under
``"<parent_id>_child_result_<child_id>"``. Conversation and execution log
entries are append-only and kept apart from the snapshot so they can grow
without rewriting it.

Two implementations share the PersistenceGateway protocol:

    SqliteNodeStore: aiosqlite-backed, one connection per call.
    InMemoryNodeStore: dict-backed, for tests and throwaway clusters.

Tables (SqliteNodeStore):
    records: key -> JSON record, last-write-wins.
    context_logs: append-only (key, kind, entry) rows, kind is
        ``conversation`` or ``execution``.
    templates: name -> markdown guidance document for a node role.

Usage:
    >>> from models.database import SqliteNodeStore
    >>> store = SqliteNodeStore("./data/cluster.db")
    >>> await store.init()
    >>> await store.put("coordinator_1a2b3c", {"status": "idle"})
"""

import json
import time
from collections import defaultdict
from pathlib import Path
from typing import Any, Literal, Protocol, runtime_checkable

import aiosqlite
import structlog

from swarm.errors import PersistenceFailureError

logger = structlog.get_logger(__name__)

LogKind = Literal["conversation", "execution"]


@runtime_checkable
class PersistenceGateway(Protocol):
    """Durable key/value store for node records plus append-only logs.

    Keys are node ids or hierarchical path strings such as
    ``"root/child-a/grandchild-1"``. There are no cross-key transactions.
    Implementations raise PersistenceFailureError on failure.
    """

    async def init(self) -> None: ...

    async def put(self, key: str, record: dict[str, Any]) -> None: ...

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys(self) -> list[str]: ...

    async def append_conversation(self, key: str, entry: dict[str, Any]) -> None: ...

    async def append_execution_log(self, key: str, entry: dict[str, Any]) -> None: ...

    async def get_log(self, key: str, kind: LogKind) -> list[dict[str, Any]]: ...

    async def save_template(self, name: str, content: str) -> None: ...

    async def load_template(self, name: str) -> str | None: ...

    async def list_templates(self) -> list[str]: ...

    async def delete_template(self, name: str) -> None: ...


class SqliteNodeStore:
    """Async SQLite implementation of PersistenceGateway.

    Unlike a best-effort store, every failure is logged and re-raised as
    PersistenceFailureError; the calling node decides to swallow it.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the node store.

        Args:
            db_path: Filesystem path to the SQLite database file.
                     Parent directories are created automatically on init().
        """
        self.db_path = db_path

    async def init(self) -> None:
        """Create database tables if they do not exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS records (
                        key TEXT PRIMARY KEY,
                        record TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS context_logs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        key TEXT NOT NULL,
                        kind TEXT NOT NULL,
                        entry TEXT NOT NULL,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_context_logs_key_kind
                    ON context_logs(key, kind, id)
                """)
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS templates (
                        name TEXT PRIMARY KEY,
                        content TEXT NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("node_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("node_store_init_failed", db_path=self.db_path, error=str(e))
            raise PersistenceFailureError(f"Failed to initialize {self.db_path}: {e}") from e

    # -----------------------------------------------------------------
    # Records
    # -----------------------------------------------------------------

    async def put(self, key: str, record: dict[str, Any]) -> None:
        """Insert or replace the record stored under ``key``."""
        try:
            payload = json.dumps(record, default=str)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO records (key, record, updated_at) VALUES (?, ?, ?)",
                    (key, payload, time.time()),
                )
                await db.commit()
        except Exception as e:
            logger.error("node_record_put_failed", key=key, error=str(e))
            raise PersistenceFailureError(f"Failed to write {key}: {e}") from e

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT record FROM records WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("node_record_get_failed", key=key, error=str(e))
            raise PersistenceFailureError(f"Failed to read {key}: {e}") from e

        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError as e:
            logger.error("node_record_corrupt", key=key, error=str(e))
            raise PersistenceFailureError(f"Corrupt record under {key}") from e

    async def delete(self, key: str) -> None:
        """Delete a record and its logs. Unknown keys are ignored."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM records WHERE key = ?", (key,))
                await db.execute("DELETE FROM context_logs WHERE key = ?", (key,))
                await db.commit()
        except Exception as e:
            logger.error("node_record_delete_failed", key=key, error=str(e))
            raise PersistenceFailureError(f"Failed to delete {key}: {e}") from e

    async def list_keys(self) -> list[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT key FROM records ORDER BY key")
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("node_record_list_failed", error=str(e))
            raise PersistenceFailureError(f"Failed to list keys: {e}") from e
        return [row[0] for row in rows]

    # -----------------------------------------------------------------
    # Append-only logs
    # -----------------------------------------------------------------

    async def _append(self, key: str, kind: LogKind, entry: dict[str, Any]) -> None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT INTO context_logs (key, kind, entry, created_at) VALUES (?, ?, ?, ?)",
                    (key, kind, json.dumps(entry, default=str), time.time()),
                )
                await db.commit()
        except Exception as e:
            logger.error("node_log_append_failed", key=key, kind=kind, error=str(e))
            raise PersistenceFailureError(f"Failed to append {kind} log for {key}: {e}") from e

    async def append_conversation(self, key: str, entry: dict[str, Any]) -> None:
        await self._append(key, "conversation", entry)

    async def append_execution_log(self, key: str, entry: dict[str, Any]) -> None:
        await self._append(key, "execution", entry)

    async def get_log(self, key: str, kind: LogKind) -> list[dict[str, Any]]:
        """Return the entries of one log in append order."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT entry FROM context_logs WHERE key = ? AND kind = ? ORDER BY id",
                    (key, kind),
                )
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("node_log_get_failed", key=key, kind=kind, error=str(e))
            raise PersistenceFailureError(f"Failed to read {kind} log for {key}: {e}") from e
        return [json.loads(row[0]) for row in rows]

    # -----------------------------------------------------------------
    # Guidance templates
    # -----------------------------------------------------------------

    async def save_template(self, name: str, content: str) -> None:
        """Insert or replace the template called ``name``."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO templates (name, content, updated_at) VALUES (?, ?, ?)",
                    (name, content, time.time()),
                )
                await db.commit()
        except Exception as e:
            logger.error("template_save_failed", name=name, error=str(e))
            raise PersistenceFailureError(f"Failed to save template {name}: {e}") from e

    async def load_template(self, name: str) -> str | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT content FROM templates WHERE name = ?", (name,))
                row = await cursor.fetchone()
        except Exception as e:
            logger.error("template_load_failed", name=name, error=str(e))
            raise PersistenceFailureError(f"Failed to load template {name}: {e}") from e
        return row[0] if row is not None else None

    async def list_templates(self) -> list[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT name FROM templates ORDER BY name")
                rows = await cursor.fetchall()
        except Exception as e:
            logger.error("template_list_failed", error=str(e))
            raise PersistenceFailureError(f"Failed to list templates: {e}") from e
        return [row[0] for row in rows]

    async def delete_template(self, name: str) -> None:
        """Delete a template. Unknown names are ignored."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM templates WHERE name = ?", (name,))
                await db.commit()
        except Exception as e:
            logger.error("template_delete_failed", name=name, error=str(e))
            raise PersistenceFailureError(f"Failed to delete template {name}: {e}") from e


class InMemoryNodeStore:
    """Dict-backed PersistenceGateway.

    Records are round-tripped through JSON so callers never share mutable
    state with the store, matching SqliteNodeStore semantics.
    """

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._logs: dict[tuple[str, str], list[str]] = defaultdict(list)
        self._templates: dict[str, str] = {}

    async def init(self) -> None:
        logger.info("node_store_initialized", db_path=":memory:")

    async def put(self, key: str, record: dict[str, Any]) -> None:
        self._records[key] = json.dumps(record, default=str)

    async def get(self, key: str) -> dict[str, Any] | None:
        payload = self._records.get(key)
        return json.loads(payload) if payload is not None else None

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)
        for log_key in [k for k in self._logs if k[0] == key]:
            del self._logs[log_key]

    async def list_keys(self) -> list[str]:
        return sorted(self._records)

    async def append_conversation(self, key: str, entry: dict[str, Any]) -> None:
        self._logs[(key, "conversation")].append(json.dumps(entry, default=str))

    async def append_execution_log(self, key: str, entry: dict[str, Any]) -> None:
        self._logs[(key, "execution")].append(json.dumps(entry, default=str))

    async def get_log(self, key: str, kind: LogKind) -> list[dict[str, Any]]:
        return [json.loads(entry) for entry in self._logs.get((key, kind), [])]

    async def save_template(self, name: str, content: str) -> None:
        self._templates[name] = content

    async def load_template(self, name: str) -> str | None:
        return self._templates.get(name)

    async def list_templates(self) -> list[str]:
        return sorted(self._templates)

    async def delete_template(self, name: str) -> None:
        self._templates.pop(name, None)
