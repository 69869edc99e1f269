"""One-time creation and versioned upgrade of an instance store.

The store record ``{name, version}`` lives in the engine's
``$InstanceStore`` collection under the store name. Initialization
creates it when absent; otherwise it upgrades the store under the
engine's store-wide lock. Downgrades are never supported.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum

import msgspec

from .engines.base import DocumentAccess, DocumentStore
from .events import EventBus, EventType
from .exceptions import LifecycleError, UsageError
from .models import StoreRecord

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2
METADATA_COLLECTION = "$InstanceStore"

# A step upgrades a store from the version it is registered under to the next one.
UpgradeStep = Callable[[DocumentAccess], Awaitable[None]]


class LifecycleState(str, Enum):
    """Initialization state of a store."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"


class LifecycleManager:
    """Drives creation and upgrade of one store's record."""

    def __init__(
        self,
        name: str,
        engine: DocumentStore,
        events: EventBus,
        log: logging.Logger | None = None,
        version: int = CURRENT_VERSION,
        steps: Mapping[int, UpgradeStep] | None = None,
    ):
        self.name = name
        self.engine = engine
        self.events = events
        self.log = log or logger
        self.version = version
        self.steps = dict(steps or {})
        self.state = LifecycleState.UNINITIALIZED

    @property
    def initialized(self) -> bool:
        return self.state is LifecycleState.INITIALIZED

    async def ensure_initialized(self, in_transaction: bool = False) -> None:
        """Initialize the store unless done or already in progress."""
        if self.state is not LifecycleState.UNINITIALIZED:
            return
        if in_transaction:
            raise UsageError("Cannot initialize the instance store inside a transaction")

        self.state = LifecycleState.INITIALIZING
        try:
            await self.engine.initialize()
            if not await self.create_if_missing():
                await self.engine.lock()
                try:
                    await self.upgrade()
                finally:
                    await self.engine.unlock()
            self.state = LifecycleState.INITIALIZED
        finally:
            if self.state is LifecycleState.INITIALIZING:
                self.state = LifecycleState.UNINITIALIZED

        self.log.debug("Instance store '%s' initialized", self.name)
        await self.events.emit(EventType.DID_INITIALIZE, name=self.name)

    def reset(self) -> None:
        """Forget initialization, e.g. after the store was destroyed."""
        self.state = LifecycleState.UNINITIALIZED

    async def load_record(
        self, access: DocumentAccess | None = None, error_if_missing: bool = True
    ) -> StoreRecord | None:
        """Read the store record."""
        access = access or self.engine
        document = await access.get(
            METADATA_COLLECTION, self.name, error_if_missing=error_if_missing
        )
        if document is None:
            return None
        return msgspec.convert(document, StoreRecord)

    async def save_record(
        self,
        record: StoreRecord,
        access: DocumentAccess | None = None,
        error_if_exists: bool = False,
    ) -> None:
        """Write the store record."""
        access = access or self.engine
        await access.put(
            METADATA_COLLECTION,
            self.name,
            msgspec.to_builtins(record),
            create_if_missing=True,
            error_if_exists=error_if_exists,
        )

    async def create_if_missing(self) -> bool:
        """Create the store record in a transaction if absent.

        Returns whether the store has been created.
        """

        async def create(access: DocumentAccess) -> bool:
            if await self.load_record(access, error_if_missing=False) is not None:
                return False
            record = StoreRecord(name=self.name, version=self.version)
            await self.save_record(record, access, error_if_exists=True)
            return True

        created = await self.engine.transaction(create)
        if created:
            self.log.info("Instance store '%s' created", self.name)
            await self.events.emit(EventType.CREATED, name=self.name)
        return created

    async def upgrade(self) -> None:
        """Bring an existing store up to the current version."""
        record = await self.load_record()
        stored = record.version

        if stored == self.version:
            return

        if stored > self.version:
            raise LifecycleError(
                f"Cannot downgrade the instance store '{self.name}' "
                f"from version {stored} to {self.version}",
                version=stored,
            )

        await self.events.emit(
            EventType.WILL_UPGRADE, name=self.name, version=stored
        )

        for version in range(stored, self.version):
            step = self.steps.get(version)
            if step is None:
                raise LifecycleError(
                    f"Cannot upgrade the instance store '{self.name}' "
                    f"to version {version + 1}",
                    version=stored,
                )
            await step(self.engine)

        record.version = self.version
        await self.save_record(record)
        self.log.info(
            "Instance store '%s' upgraded to version %d", self.name, self.version
        )

        await self.events.emit(
            EventType.DID_UPGRADE, name=self.name, version=self.version
        )
