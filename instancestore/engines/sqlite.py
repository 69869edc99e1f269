"""SQLite document store engine.

Documents are stored as JSON in a ``documents`` table. Each declared
index keeps its computed key values in ``index_entries``; queries read
the entries of the chosen index only. Transactions run on their own
connection so the root connection only sees committed data.

Root writes and transactions of one engine take turns on an asyncio
lock, so a task never waits on SQLite's file lock while holding the
event loop.
"""

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Any, TypeVar

import msgspec

from ..events import EventType
from ..exceptions import EngineError, UsageError
from ..models import CollectionDeclaration, IndexDeclaration, property_value
from .base import DocumentAccess, DocumentStore
from .query import IndexEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENGINE_VERSION = 1

SCHEMA = """
    CREATE TABLE IF NOT EXISTS meta (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS documents (
        collection TEXT NOT NULL,
        key TEXT NOT NULL,
        data TEXT NOT NULL,
        PRIMARY KEY (collection, key)
    );

    CREATE TABLE IF NOT EXISTS index_entries (
        collection TEXT NOT NULL,
        position INTEGER NOT NULL,
        key TEXT NOT NULL,
        vals TEXT NOT NULL,
        PRIMARY KEY (collection, position, key)
    );
"""

_encoder = msgspec.json.Encoder()


def _encode(value: Any) -> str:
    return _encoder.encode(value).decode()


def _decode(text: str) -> Any:
    return msgspec.json.decode(text)


@contextmanager
def sqlite_errors() -> Iterator[None]:
    """Re-raise SQLite failures as EngineError."""
    try:
        yield
    except sqlite3.Error as e:
        raise EngineError(f"SQLite error: {e}") from e


class SQLiteAccess(DocumentAccess):
    """Keyed storage and queries over one SQLite connection."""

    collections: dict[str, CollectionDeclaration]

    def _connection(self) -> sqlite3.Connection:
        raise NotImplementedError

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        """Wait for the right to write. Transaction handles already have it."""
        yield

    @contextmanager
    def _atomic(self) -> Iterator[sqlite3.Connection]:
        """Group statements, unless a transaction is already open."""
        conn = self._connection()
        if conn.in_transaction:
            yield conn
            return
        conn.execute("BEGIN")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _index_rows(
        self, collection: str, key: str, document: dict[str, Any]
    ) -> list[tuple[str, int, str, str]]:
        declaration = self.collections.get(collection)
        rows = []
        for position, index in enumerate(declaration.indexes if declaration else ()):
            values = [property_value(document, p) for p in index.properties]
            if values[0] is not None:
                rows.append((collection, position, key, _encode(values)))
        return rows

    async def _read(self, collection: str, key: Any) -> dict[str, Any] | None:
        with sqlite_errors():
            row = self._connection().execute(
                "SELECT data FROM documents WHERE collection = ? AND key = ?",
                (collection, _encode(key)),
            ).fetchone()
        return _decode(row[0]) if row else None

    async def _write(self, collection: str, key: Any, document: dict[str, Any]) -> None:
        encoded_key = _encode(key)
        async with self._writing():
            with sqlite_errors(), self._atomic() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO documents (collection, key, data) VALUES (?, ?, ?)",
                    (collection, encoded_key, _encode(document)),
                )
                conn.execute(
                    "DELETE FROM index_entries WHERE collection = ? AND key = ?",
                    (collection, encoded_key),
                )
                conn.executemany(
                    "INSERT INTO index_entries (collection, position, key, vals) VALUES (?, ?, ?, ?)",
                    self._index_rows(collection, encoded_key, document),
                )

    async def _remove(self, collection: str, key: Any) -> bool:
        encoded_key = _encode(key)
        async with self._writing():
            with sqlite_errors(), self._atomic() as conn:
                cursor = conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND key = ?",
                    (collection, encoded_key),
                )
                conn.execute(
                    "DELETE FROM index_entries WHERE collection = ? AND key = ?",
                    (collection, encoded_key),
                )
                return cursor.rowcount > 0

    async def _entries(
        self, collection: str, position: int | None, index: IndexDeclaration | None
    ) -> list[IndexEntry]:
        conn = self._connection()
        with sqlite_errors():
            if index is None:
                cursor = conn.execute(
                    "SELECT key, data FROM documents WHERE collection = ?", (collection,)
                )
                return [IndexEntry((), _decode(k), _decode(d)) for k, d in cursor]

            cursor = conn.execute(
                """
                SELECT e.key, e.vals, d.data
                FROM index_entries e
                JOIN documents d ON d.collection = e.collection AND d.key = e.key
                WHERE e.collection = ? AND e.position = ?
                """,
                (collection, position),
            )
            return [
                IndexEntry(tuple(_decode(v)), _decode(k), _decode(d))
                for k, v, d in cursor
            ]


class SQLiteTransaction(SQLiteAccess):
    """Transaction handle bound to a dedicated connection."""

    def __init__(self, store: "SQLiteDocumentStore", conn: sqlite3.Connection):
        super().__init__(store.collections.values())
        self._conn = conn

    def _connection(self) -> sqlite3.Connection:
        return self._conn


class SQLiteDocumentStore(SQLiteAccess, DocumentStore):
    """Document store engine persisting to a SQLite database file."""

    def __init__(
        self,
        db_path: Path | str,
        collections: Iterable[CollectionDeclaration] = (),
        log=None,
        timeout: float = 5.0,
    ):
        super().__init__(collections, log)
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._writer = asyncio.Lock()
        self._writer_task: asyncio.Task | None = None

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with sqlite_errors():
            conn = sqlite3.connect(
                str(self.db_path), timeout=self.timeout, isolation_level=None
            )
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            self.conn = self._open()
        return self.conn

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[None]:
        """Wait until no transaction of this engine is open."""
        if self._writer_task is not None and self._writer_task is asyncio.current_task():
            raise UsageError(
                "Cannot write through the engine while the same task has a "
                "transaction open"
            )
        async with self._writer:
            yield

    # Lifecycle

    async def initialize(self) -> None:
        """Create the schema, upgrade it and rebuild stale indexes."""
        async with self._writing():
            with sqlite_errors():
                self._connection().executescript(SCHEMA)

                version = self._get_meta("engine_version")
                if version is None:
                    self._set_meta("engine_version", ENGINE_VERSION)
                elif version < ENGINE_VERSION:
                    await self.events.emit(EventType.WILL_UPGRADE, engine_version=version)
                    self._set_meta("engine_version", ENGINE_VERSION)
                    await self.events.emit(
                        EventType.DID_UPGRADE, engine_version=ENGINE_VERSION
                    )

                for collection in self.collections.values():
                    await self._migrate_collection(collection)

    async def _migrate_collection(self, collection: CollectionDeclaration) -> None:
        """Rebuild index entries when the declared indexes changed."""
        signature = _encode(collection.indexes)
        stored = self._get_meta(f"indexes:{collection.name}")
        if stored == signature:
            return

        if stored is not None:
            await self.events.emit(EventType.WILL_MIGRATE, collection=collection.name)
        self.log.debug("Rebuilding indexes of collection %r", collection.name)

        with self._atomic() as conn:
            conn.execute(
                "DELETE FROM index_entries WHERE collection = ?", (collection.name,)
            )
            rows = conn.execute(
                "SELECT key, data FROM documents WHERE collection = ?",
                (collection.name,),
            ).fetchall()
            for key, data in rows:
                conn.executemany(
                    "INSERT INTO index_entries (collection, position, key, vals) VALUES (?, ?, ?, ?)",
                    self._index_rows(collection.name, key, _decode(data)),
                )
            self._set_meta(f"indexes:{collection.name}", signature, raw=True)

        if stored is not None:
            await self.events.emit(EventType.DID_MIGRATE, collection=collection.name)

    def _get_meta(self, name: str) -> Any:
        row = self._connection().execute(
            "SELECT value FROM meta WHERE name = ?", (name,)
        ).fetchone()
        if row is None:
            return None
        return row[0] if name.startswith("indexes:") else _decode(row[0])

    def _set_meta(self, name: str, value: Any, raw: bool = False) -> None:
        self._connection().execute(
            "INSERT OR REPLACE INTO meta (name, value) VALUES (?, ?)",
            (name, value if raw else _encode(value)),
        )

    async def destroy_all(self) -> None:
        """Drop every table of the database."""
        async with self._writing():
            with sqlite_errors():
                self._connection().executescript(
                    """
                    DROP TABLE IF EXISTS index_entries;
                    DROP TABLE IF EXISTS documents;
                    DROP TABLE IF EXISTS meta;
                    """
                )

    async def close(self) -> None:
        """Close the database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    async def lock(self) -> None:
        """Acquire the store-wide lock.

        The lock excludes the tasks of this process only. Processes
        sharing a database file are not excluded from each other.
        """
        await self._lock.acquire()

    async def unlock(self) -> None:
        """Release the store-wide lock."""
        self._lock.release()

    async def transaction(self, fn: Callable[[DocumentAccess], Awaitable[T]]) -> T:
        """Run ``fn`` on a dedicated connection inside BEGIN IMMEDIATE.

        Root writes and transactions of other tasks wait until it ends.
        """
        async with self._writer:
            self._writer_task = asyncio.current_task()
            conn = self._open()
            try:
                with sqlite_errors():
                    conn.execute("BEGIN IMMEDIATE")
                try:
                    result = await fn(SQLiteTransaction(self, conn))
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                with sqlite_errors():
                    conn.execute("COMMIT")
                return result
            finally:
                self._writer_task = None
                conn.close()
