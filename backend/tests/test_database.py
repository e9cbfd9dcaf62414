"""Tests for models/database.py -- SQLite and in-memory node stores."""

from pathlib import Path

import pytest

from models.database import InMemoryNodeStore, PersistenceGateway, SqliteNodeStore
from swarm.errors import PersistenceFailureError

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def sqlite_store(tmp_path: Path) -> SqliteNodeStore:
    store = SqliteNodeStore(str(tmp_path / "nested" / "cluster.db"))
    await store.init()
    return store


@pytest.fixture(params=["sqlite", "memory"])
async def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> PersistenceGateway:
    if request.param == "sqlite":
        store: PersistenceGateway = SqliteNodeStore(str(tmp_path / "cluster.db"))
    else:
        store = InMemoryNodeStore()
    await store.init()
    return store


# =========================================================================
# Shared behavior
# =========================================================================


class TestRecords:
    """Last-write-wins key/value records."""

    async def test_put_get(self, any_store: PersistenceGateway) -> None:
        await any_store.put("worker_1", {"status": "idle", "errors": ["X"]})
        assert await any_store.get("worker_1") == {"status": "idle", "errors": ["X"]}

    async def test_overwrite(self, any_store: PersistenceGateway) -> None:
        await any_store.put("worker_1", {"status": "idle"})
        await any_store.put("worker_1", {"status": "running"})
        assert await any_store.get("worker_1") == {"status": "running"}

    async def test_missing_key(self, any_store: PersistenceGateway) -> None:
        assert await any_store.get("nope") is None

    async def test_hierarchical_keys_and_listing(self, any_store: PersistenceGateway) -> None:
        await any_store.put("root/child-a/grandchild-1", {"n": 1})
        await any_store.put("root", {"n": 0})
        assert await any_store.list_keys() == ["root", "root/child-a/grandchild-1"]

    async def test_delete(self, any_store: PersistenceGateway) -> None:
        await any_store.put("worker_1", {"n": 1})
        await any_store.append_execution_log("worker_1", {"action": "a"})

        await any_store.delete("worker_1")
        await any_store.delete("never-existed")

        assert await any_store.get("worker_1") is None
        assert await any_store.get_log("worker_1", "execution") == []

    async def test_records_are_copies(self, any_store: PersistenceGateway) -> None:
        record = {"items": [1]}
        await any_store.put("k", record)
        record["items"].append(2)
        fetched = await any_store.get("k")
        assert fetched == {"items": [1]}


class TestLogs:
    """Append-only conversation and execution logs."""

    async def test_logs_keep_order_and_kind(self, any_store: PersistenceGateway) -> None:
        await any_store.append_conversation("n", {"role": "user", "content": "hi"})
        await any_store.append_execution_log("n", {"action": "a"})
        await any_store.append_execution_log("n", {"action": "b"})

        assert await any_store.get_log("n", "conversation") == [{"role": "user", "content": "hi"}]
        assert await any_store.get_log("n", "execution") == [{"action": "a"}, {"action": "b"}]


class TestTemplates:
    """Named guidance documents, kept apart from node records."""

    async def test_save_load_overwrite(self, any_store: PersistenceGateway) -> None:
        await any_store.save_template("worker", "# Worker\nv1")
        await any_store.save_template("worker", "# Worker\nv2")
        assert await any_store.load_template("worker") == "# Worker\nv2"
        assert await any_store.load_template("missing") is None

    async def test_list_and_delete(self, any_store: PersistenceGateway) -> None:
        await any_store.save_template("reviewer", "r")
        await any_store.save_template("builder", "b")
        await any_store.put("coordinator_1", {"status": "idle"})

        assert await any_store.list_templates() == ["builder", "reviewer"]
        assert await any_store.list_keys() == ["coordinator_1"]

        await any_store.delete_template("reviewer")
        await any_store.delete_template("never-existed")
        assert await any_store.list_templates() == ["builder"]


# =========================================================================
# SQLite specifics
# =========================================================================


class TestSqliteNodeStore:
    async def test_init_creates_parent_dirs(self, sqlite_store: SqliteNodeStore) -> None:
        assert Path(sqlite_store.db_path).exists()

    async def test_init_is_idempotent(self, sqlite_store: SqliteNodeStore) -> None:
        await sqlite_store.put("k", {"v": 1})
        await sqlite_store.init()
        assert await sqlite_store.get("k") == {"v": 1}

    async def test_data_survives_new_instance(self, sqlite_store: SqliteNodeStore) -> None:
        await sqlite_store.put("k", {"v": 1})
        reopened = SqliteNodeStore(sqlite_store.db_path)
        assert await reopened.get("k") == {"v": 1}

    async def test_templates_survive_new_instance(self, sqlite_store: SqliteNodeStore) -> None:
        await sqlite_store.save_template("worker", "guide")
        reopened = SqliteNodeStore(sqlite_store.db_path)
        assert await reopened.load_template("worker") == "guide"

    async def test_failures_raise_persistence_error(self, tmp_path: Path) -> None:
        # Tables were never created.
        store = SqliteNodeStore(str(tmp_path / "uninitialized.db"))
        with pytest.raises(PersistenceFailureError):
            await store.put("k", {"v": 1})
        with pytest.raises(PersistenceFailureError):
            await store.get_log("k", "execution")
        with pytest.raises(PersistenceFailureError):
            await store.load_template("worker")

    def test_satisfies_protocol(self, tmp_path: Path) -> None:
        assert isinstance(SqliteNodeStore(str(tmp_path / "x.db")), PersistenceGateway)
        assert isinstance(InMemoryNodeStore(), PersistenceGateway)
