"""Core data models for class-tagged instances.

This module defines the value types exchanged between the instance store
and its document store engine:

- ClassDeclaration: a class name with its secondary index declarations
- ClassPredicate: computed membership property used as an index key
- IndexDeclaration: one compiled index of the physical collection
- CollectionDeclaration: a collection and its compiled indexes
- StoreRecord: the persisted name/version record of a store
- InstanceResult: what read operations hand back to callers
"""

from typing import Any

import msgspec

# Reserved document property holding the ordered list of class names.
CLASSES_FIELD = "_classes"


class ClassDeclaration(msgspec.Struct, frozen=True, kw_only=True):
    """A class an instance can belong to.

    ``indexes`` entries may be a property name, an ordered list of
    property names, or a mapping ``{"properties": ..., "projection": ...}``.
    """

    name: str
    indexes: tuple[Any, ...] = ()


class ClassPredicate(msgspec.Struct, frozen=True):
    """Computed boolean property: true when a document belongs to a class.

    Documents outside the class yield ``None`` so they stay out of any
    index led by this predicate.
    """

    name: str
    class_name: str

    def compute(self, document: dict[str, Any]) -> bool | None:
        classes = document.get(CLASSES_FIELD)
        if classes and self.class_name in classes:
            return True
        return None


IndexProperty = str | ClassPredicate


class IndexDeclaration(msgspec.Struct, frozen=True, kw_only=True):
    """An ordered list of indexed properties with an optional projection."""

    name: str
    properties: tuple[IndexProperty, ...]
    projection: tuple[str, ...] | None = None

    @property
    def property_names(self) -> tuple[str, ...]:
        """Names of the indexed properties, in key order."""
        return tuple(property_name(p) for p in self.properties)


class CollectionDeclaration(msgspec.Struct, frozen=True, kw_only=True):
    """A physical collection and the indexes declared on it."""

    name: str
    indexes: tuple[IndexDeclaration, ...] = ()


class StoreRecord(msgspec.Struct, kw_only=True):
    """Persisted metadata of an instance store."""

    name: str
    version: int


class InstanceResult(msgspec.Struct, frozen=True):
    """An instance as seen by callers, with its classes split out."""

    classes: list[str]
    key: Any
    instance: dict[str, Any]


def property_name(prop: IndexProperty) -> str:
    """Return the query name of an index property."""
    if isinstance(prop, ClassPredicate):
        return prop.name
    return prop


def property_value(document: dict[str, Any], prop: IndexProperty) -> Any:
    """Read a plain or computed property from a document."""
    if isinstance(prop, ClassPredicate):
        return prop.compute(document)
    return document.get(prop)
