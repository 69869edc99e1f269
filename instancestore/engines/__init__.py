"""Pluggable document store engines.

Provides one contract with two implementations:

- **MemoryDocumentStore**: in-process storage for tests and scratch stores
- **SQLiteDocumentStore**: durable single-file storage with index tables

``open_engine`` picks an engine from a connection URL.
"""

import logging
from collections.abc import Iterable

from ..exceptions import UnsupportedEngineError
from ..models import CollectionDeclaration
from .base import DEFAULT_BATCH_SIZE, RESPIRATION_RATE, DocumentAccess, DocumentStore
from .memory import MemoryDocumentStore
from .sqlite import SQLiteDocumentStore


def open_engine(
    url: str,
    collections: Iterable[CollectionDeclaration] = (),
    log: logging.Logger | None = None,
) -> DocumentStore:
    """Create the engine a URL designates.

    Supported forms are ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://relative/file.db`` for relative paths).
    """
    if url.startswith("memory:"):
        return MemoryDocumentStore(collections, log=log)
    if url.startswith("sqlite://"):
        path = url[len("sqlite://") :]
        if path:
            return SQLiteDocumentStore(path, collections, log=log)
    raise UnsupportedEngineError(url)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "RESPIRATION_RATE",
    "DocumentAccess",
    "DocumentStore",
    "MemoryDocumentStore",
    "SQLiteDocumentStore",
    "open_engine",
]
