"""Polymorphic, class-tagged instance storage over document store engines.

- **Classes as labels**: an instance may belong to several classes at once
- **Indexed scoping**: every class query runs through a membership index
- **Lifecycle**: lazy, at-most-once store creation and versioned upgrades
- **Transactions**: transaction views with the same operations as the store
- **Engines**: in-memory and SQLite engines behind one contract
"""

from .config import StoreSettings, load_config, to_settings
from .engines import MemoryDocumentStore, SQLiteDocumentStore, open_engine
from .events import Event, EventBus, EventType
from .exceptions import (
    AlreadyExistsError,
    EngineError,
    InstanceStoreError,
    LifecycleError,
    MembershipError,
    NotFoundError,
    QueryError,
    UnsupportedEngineError,
    UsageError,
    ValidationError,
)
from .indexes import COLLECTION_NAME, compile_indexes
from .lifecycle import CURRENT_VERSION, LifecycleState
from .models import ClassDeclaration, IndexDeclaration, InstanceResult
from .store import InstanceStore

__version__ = "0.2.0"

__all__ = [
    "__version__",
    # Store
    "InstanceStore",
    "InstanceResult",
    "ClassDeclaration",
    "IndexDeclaration",
    "COLLECTION_NAME",
    "CURRENT_VERSION",
    "LifecycleState",
    "compile_indexes",
    # Engines
    "MemoryDocumentStore",
    "SQLiteDocumentStore",
    "open_engine",
    # Events
    "Event",
    "EventBus",
    "EventType",
    # Configuration
    "StoreSettings",
    "load_config",
    "to_settings",
    # Errors
    "InstanceStoreError",
    "ValidationError",
    "MembershipError",
    "UsageError",
    "LifecycleError",
    "EngineError",
    "NotFoundError",
    "AlreadyExistsError",
    "QueryError",
    "UnsupportedEngineError",
]
