"""Polymorphic instance store.

Instances are stored in a single engine collection, each tagged with the
ordered list of classes it belongs to. Every class gets an index led by a
membership predicate, so that class-scoped queries are ordinary indexed
queries.

Example:
    store = InstanceStore(
        name="Test",
        url="sqlite:///tmp/test.db",
        classes=[{"name": "Person", "indexes": ["country"]}],
    )
    await store.put(["Person"], "mvila", {"country": "France"})
    result = await store.get("Person", "mvila")
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from .context import StoreConfig, StoreContext
from .engines import open_engine
from .engines.base import DEFAULT_BATCH_SIZE, DocumentAccess, respire
from .events import ENGINE_EVENTS, EventBus, EventType, Handler
from .exceptions import UsageError, ValidationError
from .indexes import COLLECTION_NAME, compile_collection, make_index_name
from .lifecycle import LifecycleManager
from .models import CLASSES_FIELD, InstanceResult
from .tagging import check_class, check_membership, tag_document, untag_document

if TYPE_CHECKING:
    from .config import StoreSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InstanceStore:
    """Class-tagged instance storage on top of a document store engine."""

    def __init__(
        self,
        name: str,
        url: str,
        log: logging.Logger | None = None,
        classes: Iterable[Any] | None = None,
    ):
        if not name:
            raise ValidationError("name", "instance store name is missing")
        if not url:
            raise ValidationError("url", "instance store URL is missing")

        log = log or logger
        collection = compile_collection(classes)
        engine = open_engine(url, [collection], log=log)
        events = EventBus(log)

        for event_type in ENGINE_EVENTS:
            engine.events.subscribe(event_type, events.publish)

        config = StoreConfig(
            name=name,
            collection=collection,
            engine=engine,
            lifecycle=LifecycleManager(name, engine, events, log=log),
            events=events,
            log=log,
        )
        self.url = url
        self._context = StoreContext.root(config)

    @classmethod
    def from_settings(
        cls, settings: StoreSettings, log: logging.Logger | None = None
    ) -> InstanceStore:
        """Build a store from loaded settings."""
        return cls(settings.name, settings.url, log=log, classes=settings.classes)

    @classmethod
    def _view(cls, context: StoreContext, url: str) -> InstanceStore:
        """A store object operating in another context."""
        view = cls.__new__(cls)
        view.url = url
        view._context = context
        return view

    # Context

    @property
    def name(self) -> str:
        return self._context.config.name

    @property
    def log(self) -> logging.Logger:
        return self._context.config.log

    @property
    def events(self) -> EventBus:
        return self._context.config.events

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._context.config.lifecycle

    @property
    def engine(self):
        """The root document store engine."""
        return self._context.config.engine

    @property
    def collection(self):
        """Declaration of the collection backing all classes."""
        return self._context.config.collection

    @property
    def context(self) -> StoreContext:
        return self._context

    @property
    def _access(self) -> DocumentAccess:
        return self._context.access

    @property
    def in_transaction(self) -> bool:
        """True for a view created by transaction()."""
        return self._context.in_transaction

    def on(self, event_type: EventType, handler: Handler) -> None:
        """Register a lifecycle notification handler."""
        self.events.subscribe(event_type, handler)

    def off(self, event_type: EventType, handler: Handler) -> None:
        """Remove a lifecycle notification handler."""
        self.events.unsubscribe(event_type, handler)

    # Store

    async def initialize(self) -> None:
        """Create or upgrade the store if not done yet."""
        await self.lifecycle.ensure_initialized(in_transaction=self.in_transaction)

    async def destroy_all(self) -> None:
        """Remove everything the engine holds."""
        if self.in_transaction:
            raise UsageError("Cannot destroy an instance store inside a transaction")
        await self.engine.destroy_all()
        self.lifecycle.reset()

    async def close(self) -> None:
        """Close the engine."""
        await self.engine.close()

    async def __aenter__(self) -> InstanceStore:
        return self

    async def __aexit__(self, *exc_info) -> None:
        if not self.in_transaction:
            await self.close()

    # Basic operations

    async def get(
        self, klass: str, key: Any, error_if_missing: bool = True
    ) -> InstanceResult | None:
        """Fetch an instance of ``klass`` by key.

        Returns None when the key is missing and ``error_if_missing`` is
        false.
        """
        check_class(klass)
        await self.initialize()
        document = await self._access.get(
            COLLECTION_NAME, key, error_if_missing=error_if_missing
        )
        if document is None:
            return None
        return untag_document(document, key, klass)

    async def put(
        self,
        classes: Sequence[str],
        key: Any,
        instance: dict[str, Any],
        create_if_missing: bool = True,
        error_if_exists: bool = False,
    ) -> None:
        """Store an instance under ``key``, tagged with ``classes``.

        By default the instance is created, or replaced if present.
        """
        document = tag_document(classes, instance)
        await self.initialize()
        await self._access.put(
            COLLECTION_NAME,
            key,
            document,
            create_if_missing=create_if_missing,
            error_if_exists=error_if_exists,
        )

    async def delete(self, klass: str, key: Any, error_if_missing: bool = True) -> bool:
        """Delete an instance of ``klass``, returning whether it existed."""
        check_class(klass)

        async def remove(transaction: InstanceStore) -> bool:
            document = await transaction._access.get(
                COLLECTION_NAME, key, error_if_missing=error_if_missing
            )
            if document is None:
                return False
            check_membership(document, klass, key)
            return await transaction._access.delete(COLLECTION_NAME, key)

        return await self.transaction(remove)

    async def get_many(
        self, klass: str, keys: Sequence[Any], error_if_missing: bool = True
    ) -> list[InstanceResult]:
        """Fetch several instances of ``klass``, in the order of ``keys``."""
        check_class(klass)
        await self.initialize()
        documents = await self._access.get_many(
            COLLECTION_NAME, keys, error_if_missing=error_if_missing
        )
        results = []
        for count, (key, document) in enumerate(documents, 1):
            results.append(untag_document(document, key, klass))
            await respire(count)
        return results

    async def find(
        self,
        klass: str,
        query: dict[str, Any] | None = None,
        properties: str | Sequence[str] | None = None,
        **options: Any,
    ) -> list[InstanceResult]:
        """Find instances of ``klass``.

        Options: ``order`` (property or list), ``start``, ``start_after``,
        ``end``, ``end_before`` (bounds on the order values), ``reverse``
        and ``limit``. ``properties`` is ``"*"`` or a list of property
        names to fetch.
        """
        query = self._scope_query(klass, query)
        await self.initialize()
        documents = await self._access.find(
            COLLECTION_NAME,
            query=query,
            properties=self._scope_properties(properties),
            **options,
        )
        results = []
        for count, (key, document) in enumerate(documents, 1):
            results.append(untag_document(document, key))
            await respire(count)
        return results

    async def count(
        self, klass: str, query: dict[str, Any] | None = None, **options: Any
    ) -> int:
        """Count instances of ``klass``, up to ``limit``.

        Takes find() options except ``reverse`` and ``properties``.
        """
        query = self._scope_query(klass, query)
        await self.initialize()
        return await self._access.count(COLLECTION_NAME, query=query, **options)

    # Composed operations

    async def for_each(
        self,
        klass: str,
        fn: Callable[[InstanceResult], Awaitable[None] | None],
        query: dict[str, Any] | None = None,
        properties: str | Sequence[str] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        **options: Any,
    ) -> None:
        """Call ``fn`` for each instance of ``klass``, in query order.

        Instances are fetched ``batch_size`` at a time. Takes the same
        options as find().
        """
        query = self._scope_query(klass, query)
        await self.initialize()

        async def visit(document: dict[str, Any], key: Any) -> None:
            result = fn(untag_document(document, key))
            if inspect.isawaitable(result):
                await result

        await self._access.for_each(
            COLLECTION_NAME,
            visit,
            batch_size=batch_size,
            query=query,
            properties=self._scope_properties(properties),
            **options,
        )

    async def find_and_delete(
        self,
        klass: str,
        query: dict[str, Any] | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        **options: Any,
    ) -> int:
        """Delete every instance of ``klass`` matching a query.

        Returns the number of deleted instances.
        """
        query = self._scope_query(klass, query)
        await self.initialize()
        return await self._access.find_and_delete(
            COLLECTION_NAME, batch_size=batch_size, query=query, **options
        )

    # Transactions

    async def transaction(self, fn: Callable[[InstanceStore], Awaitable[T]]) -> T:
        """Await ``fn(transaction)`` inside an engine transaction.

        ``transaction`` offers the same operations as the store. Inside a
        transaction, ``fn`` is given the current one: transactions do not
        nest.
        """
        if self.in_transaction:
            return await fn(self)
        await self.initialize()

        async def run(handle: DocumentAccess) -> T:
            return await fn(self._view(self._context.for_transaction(handle), self.url))

        return await self.engine.transaction(run)

    # Helpers

    def _scope_query(self, klass: str, query: dict[str, Any] | None) -> dict[str, Any]:
        """Restrict a query to the instances of ``klass``."""
        check_class(klass)
        query = dict(query or {})
        query[make_index_name(klass)] = True
        return query

    @staticmethod
    def _scope_properties(properties: str | Sequence[str] | None):
        """Make sure fetched properties include the class list."""
        if properties is None or properties == "*":
            return properties
        properties = [properties] if isinstance(properties, str) else list(properties)
        if CLASSES_FIELD not in properties:
            properties.append(CLASSES_FIELD)
        return properties
