"""Operation contexts: the root store or a transaction-scoped view."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .engines.base import DocumentAccess, DocumentStore
from .events import EventBus
from .lifecycle import LifecycleManager
from .models import CollectionDeclaration


@dataclass(frozen=True)
class StoreConfig:
    """Configuration shared by a store and all of its transaction contexts."""

    name: str
    collection: CollectionDeclaration
    engine: DocumentStore
    lifecycle: LifecycleManager
    events: EventBus
    log: logging.Logger


@dataclass(frozen=True)
class StoreContext:
    """Where the operations of a store view are routed.

    ``access`` is the engine itself for the root context, or the engine's
    transaction handle for a transaction context.
    """

    config: StoreConfig
    access: DocumentAccess
    in_transaction: bool = False

    @classmethod
    def root(cls, config: StoreConfig) -> StoreContext:
        return cls(config=config, access=config.engine)

    def for_transaction(self, handle: DocumentAccess) -> StoreContext:
        """Build a new context routing storage calls through ``handle``."""
        return replace(self, access=handle, in_transaction=True)
