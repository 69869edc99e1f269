"""Document store engine contract.

An engine stores JSON-like documents in named collections, keeps the
declared indexes of each collection, and runs equality queries through
them. Instance stores only ever talk to an engine through this contract.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import Any, TypeVar

from ..events import EventBus
from ..exceptions import AlreadyExistsError, NotFoundError, ValidationError
from ..models import CollectionDeclaration, IndexDeclaration
from .query import IndexEntry, QueryPlan, plan_query, project, select_entries

# Number of items processed between two yields to the event loop.
RESPIRATION_RATE = 250
DEFAULT_BATCH_SIZE = 250

T = TypeVar("T")


async def respire(count: int) -> None:
    """Give other tasks a chance to run every RESPIRATION_RATE items."""
    if count % RESPIRATION_RATE == 0:
        await asyncio.sleep(0)


def check_key(key: Any) -> None:
    """Keys are strings or numbers so that they read back unchanged."""
    if not isinstance(key, (str, int, float)):
        raise ValidationError(
            "key", f"keys must be strings or numbers, not {type(key).__name__}"
        )


class DocumentAccess(ABC):
    """Keyed storage and query surface shared by engines and transactions."""

    def __init__(self, collections: Iterable[CollectionDeclaration] = ()):
        self.collections = {c.name: c for c in collections}

    # Primitives

    @abstractmethod
    async def _read(self, collection: str, key: Any) -> dict[str, Any] | None:
        """Read a document, or None when missing."""
        pass

    @abstractmethod
    async def _write(self, collection: str, key: Any, document: dict[str, Any]) -> None:
        """Create or replace a document."""
        pass

    @abstractmethod
    async def _remove(self, collection: str, key: Any) -> bool:
        """Delete a document, returning whether it existed."""
        pass

    @abstractmethod
    async def _entries(
        self, collection: str, position: int | None, index: IndexDeclaration | None
    ) -> list[IndexEntry]:
        """List the documents of a collection through one of its indexes.

        Documents whose leading index value is None are not part of the
        index. Without an index every document is listed.
        """
        pass

    # Keyed storage

    async def get(
        self, collection: str, key: Any, error_if_missing: bool = True
    ) -> dict[str, Any] | None:
        """Fetch a document by key."""
        document = await self._read(collection, key)
        if document is None and error_if_missing:
            raise NotFoundError(collection, key)
        return document

    async def put(
        self,
        collection: str,
        key: Any,
        document: dict[str, Any],
        create_if_missing: bool = True,
        error_if_exists: bool = False,
    ) -> None:
        """Store a document, creating or replacing it."""
        check_key(key)
        if error_if_exists or not create_if_missing:
            exists = await self._read(collection, key) is not None
            if exists and error_if_exists:
                raise AlreadyExistsError(collection, key)
            if not exists and not create_if_missing:
                raise NotFoundError(collection, key)
        await self._write(collection, key, document)

    async def delete(
        self, collection: str, key: Any, error_if_missing: bool = True
    ) -> bool:
        """Delete a document by key."""
        deleted = await self._remove(collection, key)
        if not deleted and error_if_missing:
            raise NotFoundError(collection, key)
        return deleted

    async def get_many(
        self, collection: str, keys: Sequence[Any], error_if_missing: bool = True
    ) -> list[tuple[Any, dict[str, Any]]]:
        """Fetch several documents, in the order of ``keys``."""
        results = []
        for count, key in enumerate(keys, 1):
            document = await self.get(collection, key, error_if_missing)
            if document is not None:
                results.append((key, document))
            await respire(count)
        return results

    # Queries

    async def _select(
        self,
        collection: str,
        query: dict[str, Any] | None = None,
        order: str | Sequence[str] | None = None,
        start: Any = None,
        start_after: Any = None,
        end: Any = None,
        end_before: Any = None,
        reverse: bool = False,
        limit: int | None = None,
        after: tuple | None = None,
    ) -> tuple[QueryPlan, list[IndexEntry]]:
        plan = plan_query(self.collections.get(collection), query, order)
        entries = await self._entries(collection, plan.position, plan.index)
        selected = select_entries(
            plan,
            entries,
            start=start,
            start_after=start_after,
            end=end,
            end_before=end_before,
            reverse=reverse,
            limit=limit,
            after=after,
        )
        return plan, selected

    async def find(
        self,
        collection: str,
        query: dict[str, Any] | None = None,
        order: str | Sequence[str] | None = None,
        start: Any = None,
        start_after: Any = None,
        end: Any = None,
        end_before: Any = None,
        reverse: bool = False,
        properties: str | Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[tuple[Any, dict[str, Any]]]:
        """Run an indexed query and return ``(key, document)`` pairs."""
        _, entries = await self._select(
            collection,
            query=query,
            order=order,
            start=start,
            start_after=start_after,
            end=end,
            end_before=end_before,
            reverse=reverse,
            limit=limit,
        )
        return [(e.key, project(e.document, properties)) for e in entries]

    async def count(
        self,
        collection: str,
        query: dict[str, Any] | None = None,
        order: str | Sequence[str] | None = None,
        start: Any = None,
        start_after: Any = None,
        end: Any = None,
        end_before: Any = None,
        limit: int | None = None,
    ) -> int:
        """Count the documents a query would return, up to ``limit``."""
        _, entries = await self._select(
            collection,
            query=query,
            order=order,
            start=start,
            start_after=start_after,
            end=end,
            end_before=end_before,
            limit=limit,
        )
        return len(entries)

    async def for_each(
        self,
        collection: str,
        fn: Callable[[dict[str, Any], Any], Awaitable[None]],
        batch_size: int = DEFAULT_BATCH_SIZE,
        query: dict[str, Any] | None = None,
        order: str | Sequence[str] | None = None,
        start: Any = None,
        start_after: Any = None,
        end: Any = None,
        end_before: Any = None,
        reverse: bool = False,
        properties: str | Sequence[str] | None = None,
        limit: int | None = None,
    ) -> int:
        """Await ``fn(document, key)`` for each match, fetching by batches.

        Returns the number of documents visited.
        """
        visited = 0
        cursor = None
        while limit is None or visited < limit:
            size = batch_size if limit is None else min(batch_size, limit - visited)
            plan, entries = await self._select(
                collection,
                query=query,
                order=order,
                start=start,
                start_after=start_after,
                end=end,
                end_before=end_before,
                reverse=reverse,
                limit=size,
                after=cursor,
            )
            if not entries:
                break
            for entry in entries:
                await fn(project(entry.document, properties), entry.key)
                visited += 1
                await respire(visited)
            if len(entries) < size:
                break
            cursor = plan.sort_key(entries[-1])
        return visited

    async def find_and_delete(
        self,
        collection: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        query: dict[str, Any] | None = None,
        order: str | Sequence[str] | None = None,
        start: Any = None,
        start_after: Any = None,
        end: Any = None,
        end_before: Any = None,
        reverse: bool = False,
        limit: int | None = None,
    ) -> int:
        """Delete every document matching a query, returning how many."""
        deleted = 0

        async def remove(document: dict[str, Any], key: Any) -> None:
            nonlocal deleted
            if await self._remove(collection, key):
                deleted += 1

        await self.for_each(
            collection,
            remove,
            batch_size=batch_size,
            query=query,
            order=order,
            start=start,
            start_after=start_after,
            end=end,
            end_before=end_before,
            reverse=reverse,
            limit=limit,
        )
        return deleted


class DocumentStore(DocumentAccess):
    """A document store engine with lifecycle, locking and transactions."""

    def __init__(self, collections: Iterable[CollectionDeclaration] = (), log=None):
        super().__init__(collections)
        self.events = EventBus(log)
        self.log = self.events.log

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the engine for use."""
        pass

    @abstractmethod
    async def destroy_all(self) -> None:
        """Remove every collection and record."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the engine's resources."""
        pass

    @abstractmethod
    async def lock(self) -> None:
        """Acquire the store-wide exclusive lock."""
        pass

    @abstractmethod
    async def unlock(self) -> None:
        """Release the store-wide exclusive lock."""
        pass

    @abstractmethod
    async def transaction(self, fn: Callable[[DocumentAccess], Awaitable[T]]) -> T:
        """Await ``fn(handle)`` inside a transaction.

        Commits when ``fn`` returns, rolls back when it raises.
        """
        pass
