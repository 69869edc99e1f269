"""Tests for document store engine implementations.

Each engine must conform to the same contract and pass the same tests.
"""

import asyncio
import sqlite3

import pytest
import pytest_asyncio

from instancestore.engines import (
    MemoryDocumentStore,
    SQLiteDocumentStore,
    open_engine,
)
from instancestore.events import EventType
from instancestore.exceptions import (
    AlreadyExistsError,
    EngineError,
    NotFoundError,
    QueryError,
    UnsupportedEngineError,
    UsageError,
    ValidationError,
)
from instancestore.models import CollectionDeclaration, IndexDeclaration

ITEMS = CollectionDeclaration(
    name="Items",
    indexes=(
        IndexDeclaration(name="color", properties=("color",)),
        IndexDeclaration(name="color+size", properties=("color", "size")),
        IndexDeclaration(name="size", properties=("size",)),
    ),
)

DOCUMENTS = {
    "a": {"color": "red", "size": 3},
    "b": {"color": "blue", "size": 1},
    "c": {"color": "red", "size": 1},
    "d": {"size": 2},
    "e": {"color": "red", "size": 3},
}


async def fill(engine):
    for key, document in DOCUMENTS.items():
        await engine.put("Items", key, document)


def keys(results):
    return [key for key, _ in results]


class EngineContract:
    """Contract tests that all engines must pass."""

    @pytest.mark.asyncio
    async def test_put_get_cycle(self, engine):
        """Basic write/read operations work correctly."""
        assert await engine.get("Items", "a", error_if_missing=False) is None

        await engine.put("Items", "a", {"color": "red"})

        assert await engine.get("Items", "a") == {"color": "red"}

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, engine):
        """get() raises when asked to."""
        with pytest.raises(NotFoundError) as exc_info:
            await engine.get("Items", "zzz")
        assert exc_info.value.key == "zzz"

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self, engine):
        """Mutating a returned document does not touch the stored one."""
        await engine.put("Items", "a", {"tags": ["x"]})
        document = await engine.get("Items", "a")
        document["tags"].append("y")

        assert await engine.get("Items", "a") == {"tags": ["x"]}

    @pytest.mark.asyncio
    async def test_put_flags(self, engine):
        """put() honours create_if_missing and error_if_exists."""
        with pytest.raises(NotFoundError):
            await engine.put("Items", "a", {}, create_if_missing=False)

        await engine.put("Items", "a", {"v": 1}, error_if_exists=True)
        with pytest.raises(AlreadyExistsError):
            await engine.put("Items", "a", {"v": 2}, error_if_exists=True)

        await engine.put("Items", "a", {"v": 3}, create_if_missing=False)
        assert await engine.get("Items", "a") == {"v": 3}

    @pytest.mark.asyncio
    async def test_delete(self, engine):
        """delete() removes documents and reports missing ones."""
        await engine.put("Items", "a", {"color": "red"})

        assert await engine.delete("Items", "a") is True
        assert await engine.get("Items", "a", error_if_missing=False) is None
        assert await engine.count("Items", query={"color": "red"}) == 0

        assert await engine.delete("Items", "a", error_if_missing=False) is False
        with pytest.raises(NotFoundError):
            await engine.delete("Items", "a")

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, engine):
        """The same key can live in two collections."""
        await engine.put("Items", "a", {"v": 1})
        await engine.put("Other", "a", {"v": 2})

        assert await engine.get("Items", "a") == {"v": 1}
        assert await engine.get("Other", "a") == {"v": 2}

    @pytest.mark.asyncio
    async def test_get_many(self, engine):
        """get_many() keeps the order of the requested keys."""
        await fill(engine)

        results = await engine.get_many("Items", ["c", "zzz", "a"], error_if_missing=False)
        assert results == [("c", DOCUMENTS["c"]), ("a", DOCUMENTS["a"])]

        with pytest.raises(NotFoundError):
            await engine.get_many("Items", ["c", "zzz"])

    @pytest.mark.asyncio
    async def test_find_all(self, engine):
        """Without query or order every document comes back by key."""
        await fill(engine)
        assert keys(await engine.find("Items")) == ["a", "b", "c", "d", "e"]

    @pytest.mark.asyncio
    async def test_find_by_equality(self, engine):
        """Equality queries go through the matching index."""
        await fill(engine)

        results = await engine.find("Items", query={"color": "red"})

        assert keys(results) == ["a", "c", "e"]
        assert results[0][1] == DOCUMENTS["a"]

    @pytest.mark.asyncio
    async def test_find_ordered(self, engine):
        """Order properties follow the queried ones in the index."""
        await fill(engine)

        results = await engine.find("Items", query={"color": "red"}, order="size")
        assert keys(results) == ["c", "a", "e"]

        results = await engine.find(
            "Items", query={"color": "red"}, order=["size"], reverse=True
        )
        assert keys(results) == ["e", "a", "c"]

        results = await engine.find("Items", query={"color": "red"}, order="size", limit=2)
        assert keys(results) == ["c", "a"]

    @pytest.mark.asyncio
    async def test_sparse_index(self, engine):
        """Documents without the leading property are not indexed."""
        await fill(engine)
        results = await engine.find("Items", order="color")
        assert keys(results) == ["b", "a", "c", "e"]

    @pytest.mark.asyncio
    async def test_find_bounds(self, engine):
        """Range bounds apply to the order properties."""
        await fill(engine)

        assert keys(await engine.find("Items", order="size", start=2)) == ["d", "a", "e"]
        assert keys(await engine.find("Items", order="size", end_before=3)) == [
            "b",
            "c",
            "d",
        ]
        assert keys(
            await engine.find("Items", order="size", start_after=1, end=2)
        ) == ["d"]

    @pytest.mark.asyncio
    async def test_find_projection(self, engine):
        """Only the requested properties are returned."""
        await fill(engine)

        results = await engine.find("Items", query={"color": "blue"}, properties=["size"])
        assert results == [("b", {"size": 1})]

        results = await engine.find("Items", query={"color": "blue"}, properties="*")
        assert results == [("b", DOCUMENTS["b"])]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "query,order",
        [({"shape": "round"}, None), ({"size": 1}, "color"), (None, "shape")],
    )
    async def test_find_without_index(self, engine, query, order):
        """Queries no index can serve are rejected."""
        with pytest.raises(QueryError):
            await engine.find("Items", query=query, order=order)

    @pytest.mark.asyncio
    async def test_count(self, engine):
        """count() matches find()."""
        await fill(engine)

        assert await engine.count("Items") == 5
        assert await engine.count("Items", query={"color": "red"}) == 3
        assert await engine.count("Items", query={"color": "red", "size": 3}) == 2
        assert await engine.count("Items", order="size", start=3) == 2

    @pytest.mark.asyncio
    async def test_count_with_limit(self, engine):
        """count() stops at the limit."""
        await fill(engine)

        assert await engine.count("Items", limit=2) == 2
        assert await engine.count("Items", query={"color": "red"}, limit=10) == 3
        assert await engine.count("Items", order="size", start=2, limit=1) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("key", [("a", 1), ["a"], {"a": 1}, None])
    async def test_put_rejects_structured_keys(self, engine, key):
        """Only strings and numbers are accepted as keys."""
        with pytest.raises(ValidationError) as exc_info:
            await engine.put("Items", key, {"color": "red"})

        assert exc_info.value.field == "key"
        assert await engine.count("Items") == 0

    @pytest.mark.asyncio
    async def test_numeric_keys_read_back_unchanged(self, engine):
        """Number keys come back as numbers and differ from their text."""
        await engine.put("Items", 1, {"color": "red"})
        await engine.put("Items", "1", {"color": "blue"})

        results = await engine.find("Items", order="color")
        assert results == [("1", {"color": "blue"}), (1, {"color": "red"})]

    @pytest.mark.asyncio
    async def test_for_each_batches(self, engine):
        """for_each() visits every match across batches, in order."""
        await fill(engine)
        visited = []

        async def visit(document, key):
            visited.append(key)

        count = await engine.for_each("Items", visit, batch_size=2)

        assert count == 5
        assert visited == ["a", "b", "c", "d", "e"]

    @pytest.mark.asyncio
    async def test_for_each_ordered_with_limit(self, engine):
        """for_each() stops at the limit and keeps the query order."""
        await fill(engine)
        visited = []

        async def visit(document, key):
            visited.append((key, document))

        count = await engine.for_each(
            "Items", visit, batch_size=1, order="size", reverse=True,
            properties=["size"], limit=3,
        )

        assert count == 3
        assert visited == [("e", {"size": 3}), ("a", {"size": 3}), ("d", {"size": 2})]

    @pytest.mark.asyncio
    async def test_find_and_delete(self, engine):
        """find_and_delete() removes every match."""
        await fill(engine)

        deleted = await engine.find_and_delete("Items", batch_size=2, query={"color": "red"})

        assert deleted == 3
        assert keys(await engine.find("Items")) == ["b", "d"]

    @pytest.mark.asyncio
    async def test_transaction_commits(self, engine):
        """Writes made in a transaction are visible once it returns."""

        async def work(access):
            await access.put("Items", "a", {"color": "red"})
            assert await access.get("Items", "a") == {"color": "red"}
            assert keys(await access.find("Items", query={"color": "red"})) == ["a"]
            return "done"

        assert await engine.transaction(work) == "done"
        assert await engine.get("Items", "a") == {"color": "red"}

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self, engine):
        """A failing transaction leaves no trace."""
        await engine.put("Items", "a", {"v": 1})

        async def work(access):
            await access.put("Items", "b", {"v": 2})
            await access.delete("Items", "a")
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await engine.transaction(work)

        assert await engine.get("Items", "a") == {"v": 1}
        assert await engine.get("Items", "b", error_if_missing=False) is None

    @pytest.mark.asyncio
    async def test_transaction_deletes(self, engine):
        """Deletes inside a transaction hide documents from its queries."""
        await fill(engine)

        async def work(access):
            await access.delete("Items", "a")
            return await access.count("Items", query={"color": "red"})

        assert await engine.transaction(work) == 2
        assert await engine.count("Items", query={"color": "red"}) == 2

    @pytest.mark.asyncio
    async def test_lock(self, engine):
        """lock() and unlock() pair up."""
        await engine.lock()
        assert engine._lock.locked()
        await engine.unlock()
        assert not engine._lock.locked()

    @pytest.mark.asyncio
    async def test_lock_excludes_other_tasks(self, engine):
        """A second task waits until the holder unlocks."""
        order = []
        await engine.lock()

        async def contender():
            await engine.lock()
            order.append("contender")
            await engine.unlock()

        task = asyncio.create_task(contender())
        await asyncio.sleep(0)
        order.append("holder")
        await engine.unlock()
        await task

        assert order == ["holder", "contender"]

    @pytest.mark.asyncio
    async def test_destroy_all(self, engine):
        """destroy_all() removes every document."""
        await fill(engine)

        await engine.destroy_all()
        await engine.initialize()

        assert await engine.count("Items") == 0


class TestMemoryEngine(EngineContract):
    """Test the in-memory engine."""

    @pytest_asyncio.fixture
    async def engine(self):
        engine = MemoryDocumentStore([ITEMS])
        await engine.initialize()
        yield engine
        await engine.close()

    @pytest.mark.asyncio
    async def test_get_size(self, engine):
        """get_size() counts documents across collections."""
        await fill(engine)
        await engine.put("Other", "a", {})
        assert engine.get_size() == 6


class TestSQLiteEngine(EngineContract):
    """Test the SQLite engine."""

    @pytest_asyncio.fixture
    async def engine(self, tmp_path):
        engine = SQLiteDocumentStore(tmp_path / "engine.db", [ITEMS])
        await engine.initialize()
        yield engine
        await engine.close()

    @pytest.mark.asyncio
    async def test_persists_across_connections(self, engine, tmp_path):
        """Data survives closing and reopening the database."""
        await fill(engine)
        await engine.close()

        reopened = SQLiteDocumentStore(tmp_path / "engine.db", [ITEMS])
        await reopened.initialize()
        try:
            assert keys(await reopened.find("Items", query={"color": "red"})) == [
                "a",
                "c",
                "e",
            ]
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_creates_parent_directory(self, tmp_path):
        """The database directory is created on demand."""
        engine = SQLiteDocumentStore(tmp_path / "nested" / "dir" / "engine.db")
        await engine.initialize()
        await engine.close()
        assert (tmp_path / "nested" / "dir" / "engine.db").exists()

    @pytest.mark.asyncio
    async def test_first_initialize_is_silent(self, tmp_path):
        """A fresh database emits no upgrade or migration events."""
        engine = SQLiteDocumentStore(tmp_path / "fresh.db", [ITEMS])
        await engine.initialize()
        await engine.close()
        assert engine.events.get_history() == []

    @pytest.mark.asyncio
    async def test_index_migration(self, engine, tmp_path):
        """Changed index declarations are rebuilt on initialize."""
        await fill(engine)
        await engine.close()

        changed = CollectionDeclaration(
            name="Items",
            indexes=ITEMS.indexes + (IndexDeclaration(name="shape", properties=("shape",)),),
        )
        reopened = SQLiteDocumentStore(tmp_path / "engine.db", [changed])
        try:
            await reopened.initialize()

            assert [e.type for e in reopened.events.get_history()] == [
                EventType.WILL_MIGRATE,
                EventType.DID_MIGRATE,
            ]
            assert keys(await reopened.find("Items", order="size", end=1)) == ["b", "c"]

            await reopened.put("Items", "f", {"shape": "round"})
            assert keys(await reopened.find("Items", query={"shape": "round"})) == ["f"]
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_engine_upgrade(self, engine):
        """An older engine layout is upgraded with notifications."""
        engine._set_meta("engine_version", 0)

        await engine.initialize()

        assert [e.type for e in engine.events.get_history()] == [
            EventType.WILL_UPGRADE,
            EventType.DID_UPGRADE,
        ]

    @pytest.mark.asyncio
    async def test_writes_wait_for_open_transaction(self, engine):
        """A write from another task waits for the transaction to end."""
        started = asyncio.Event()
        release = asyncio.Event()

        async def work(access):
            await access.put("Items", "a", {"v": 1})
            started.set()
            await release.wait()

        transaction = asyncio.create_task(engine.transaction(work))
        await started.wait()

        writer = asyncio.create_task(engine.put("Items", "b", {"v": 2}))
        await asyncio.sleep(0)
        assert not writer.done()

        release.set()
        await asyncio.wait_for(asyncio.gather(transaction, writer), timeout=5)

        assert await engine.get("Items", "a") == {"v": 1}
        assert await engine.get("Items", "b") == {"v": 2}

    @pytest.mark.asyncio
    async def test_write_inside_own_transaction_rejected(self, engine):
        """Writing through the engine from its own open transaction fails fast."""

        async def work(access):
            await access.put("Items", "a", {"v": 1})
            await engine.put("Items", "b", {"v": 2})

        with pytest.raises(UsageError):
            await asyncio.wait_for(engine.transaction(work), timeout=5)

        assert await engine.get("Items", "a", error_if_missing=False) is None
        assert await engine.get("Items", "b", error_if_missing=False) is None

    @pytest.mark.asyncio
    async def test_locked_database_raises_engine_error(self, tmp_path):
        """A database held by another connection surfaces as EngineError."""
        path = tmp_path / "busy.db"
        engine = SQLiteDocumentStore(path, [ITEMS], timeout=0.05)
        await engine.initialize()

        blocker = sqlite3.connect(str(path), isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(EngineError) as exc_info:
                await engine.put("Items", "a", {"v": 1})
            assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()
            await engine.close()


class TestOpenEngine:
    """Test engine selection from URLs."""

    def test_memory(self):
        assert isinstance(open_engine("memory://"), MemoryDocumentStore)

    def test_sqlite(self, tmp_path):
        engine = open_engine(f"sqlite://{tmp_path / 'store.db'}", [ITEMS])
        assert isinstance(engine, SQLiteDocumentStore)
        assert engine.db_path == tmp_path / "store.db"
        assert "Items" in engine.collections

    @pytest.mark.parametrize("url", ["postgres://localhost/db", "sqlite://", "nothing"])
    def test_unsupported(self, url):
        with pytest.raises(UnsupportedEngineError):
            open_engine(url)
