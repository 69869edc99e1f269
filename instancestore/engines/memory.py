"""In-memory document store engine for testing and ephemeral stores."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from copy import deepcopy
from typing import Any, TypeVar

from ..models import CollectionDeclaration, IndexDeclaration, property_value
from .base import DocumentAccess, DocumentStore
from .query import IndexEntry

T = TypeVar("T")

_DELETED = object()


def _index_entries(
    items: Iterable[tuple[Any, dict[str, Any]]], index: IndexDeclaration | None
) -> list[IndexEntry]:
    entries = []
    for key, document in items:
        if index is None:
            entries.append(IndexEntry((), key, deepcopy(document)))
            continue
        values = tuple(property_value(document, p) for p in index.properties)
        if values[0] is None:
            continue
        entries.append(IndexEntry(values, key, deepcopy(document)))
    return entries


class MemoryTransaction(DocumentAccess):
    """Transaction handle buffering writes until commit."""

    def __init__(self, store: "MemoryDocumentStore"):
        super().__init__(store.collections.values())
        self._store = store
        self._pending: dict[str, dict[Any, Any]] = {}

    async def _read(self, collection: str, key: Any) -> dict[str, Any] | None:
        pending = self._pending.get(collection, {})
        if key in pending:
            document = pending[key]
            return None if document is _DELETED else deepcopy(document)
        return await self._store._read(collection, key)

    async def _write(self, collection: str, key: Any, document: dict[str, Any]) -> None:
        self._pending.setdefault(collection, {})[key] = deepcopy(document)

    async def _remove(self, collection: str, key: Any) -> bool:
        existed = await self._read(collection, key) is not None
        if existed:
            self._pending.setdefault(collection, {})[key] = _DELETED
        return existed

    async def _entries(
        self, collection: str, position: int | None, index: IndexDeclaration | None
    ) -> list[IndexEntry]:
        merged = dict(self._store._get_collection(collection))
        for key, document in self._pending.get(collection, {}).items():
            if document is _DELETED:
                merged.pop(key, None)
            else:
                merged[key] = document
        return _index_entries(merged.items(), index)

    def _commit(self) -> None:
        """Apply buffered writes to the store."""
        for collection, pending in self._pending.items():
            data = self._store._get_collection(collection)
            for key, document in pending.items():
                if document is _DELETED:
                    data.pop(key, None)
                else:
                    data[key] = document
        self._pending.clear()


class MemoryDocumentStore(DocumentStore):
    """Document store engine keeping everything in process memory."""

    def __init__(self, collections: Iterable[CollectionDeclaration] = (), log=None):
        super().__init__(collections, log)
        self._data: dict[str, dict[Any, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _get_collection(self, collection: str) -> dict[Any, dict[str, Any]]:
        return self._data.setdefault(collection, {})

    async def initialize(self) -> None:
        """Initialize the engine (no-op for memory)."""
        pass

    async def destroy_all(self) -> None:
        """Drop all collections."""
        self._data.clear()

    async def close(self) -> None:
        """Close the engine (no-op for memory)."""
        pass

    async def lock(self) -> None:
        """Acquire the store-wide lock."""
        await self._lock.acquire()

    async def unlock(self) -> None:
        """Release the store-wide lock."""
        self._lock.release()

    async def _read(self, collection: str, key: Any) -> dict[str, Any] | None:
        document = self._get_collection(collection).get(key)
        return deepcopy(document) if document is not None else None

    async def _write(self, collection: str, key: Any, document: dict[str, Any]) -> None:
        self._get_collection(collection)[key] = deepcopy(document)

    async def _remove(self, collection: str, key: Any) -> bool:
        data = self._get_collection(collection)
        if key in data:
            del data[key]
            return True
        return False

    async def _entries(
        self, collection: str, position: int | None, index: IndexDeclaration | None
    ) -> list[IndexEntry]:
        return _index_entries(self._get_collection(collection).items(), index)

    async def transaction(self, fn: Callable[[DocumentAccess], Awaitable[T]]) -> T:
        """Run ``fn`` against a buffered handle, committing on success."""
        handle = MemoryTransaction(self)
        result = await fn(handle)
        handle._commit()
        return result

    def get_size(self) -> int:
        """Get the number of stored documents."""
        return sum(len(data) for data in self._data.values())
