"""Compilation of class declarations into index declarations.

All classes share one physical collection. Every index of a class is led
by the class's membership predicate, so that a query scoped to a class
is always served by an index instead of a collection scan.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from .exceptions import ValidationError
from .models import (
    CLASSES_FIELD,
    ClassDeclaration,
    ClassPredicate,
    CollectionDeclaration,
    IndexDeclaration,
    property_name,
)

COLLECTION_NAME = "Objects"


def make_index_name(klass: str) -> str:
    """Return the name of the membership predicate of a class."""
    return klass + "?"


def normalize_class(declaration: str | Mapping[str, Any] | ClassDeclaration) -> ClassDeclaration:
    """Accept a bare name, a mapping or a ClassDeclaration."""
    if isinstance(declaration, ClassDeclaration):
        result = declaration
    elif isinstance(declaration, str):
        result = ClassDeclaration(name=declaration)
    elif isinstance(declaration, Mapping):
        indexes = declaration.get("indexes") or ()
        if isinstance(indexes, str):
            indexes = (indexes,)
        result = ClassDeclaration(
            name=declaration.get("name", ""), indexes=tuple(indexes)
        )
    else:
        raise ValidationError("classes", f"unsupported declaration {declaration!r}")

    if not isinstance(result.name, str) or not result.name:
        raise ValidationError("classes", "class name is missing or empty")
    return result


def _split_index(index: Any) -> tuple[list[str], list[str] | None]:
    """Return the property list and projection of a declared index."""
    projection = None
    if isinstance(index, Mapping):
        properties = index.get("properties")
        if index.get("projection") is not None:
            projection = list(index["projection"])
    else:
        properties = index

    if isinstance(properties, str):
        properties = [properties]
    elif isinstance(properties, Iterable):
        properties = list(properties)
    else:
        raise ValidationError("indexes", f"unsupported index {index!r}")

    if not properties or not all(isinstance(p, str) and p for p in properties):
        raise ValidationError("indexes", f"invalid index properties {index!r}")
    return properties, projection


def compile_class(declaration: ClassDeclaration) -> list[IndexDeclaration]:
    """Compile the indexes of one class."""
    predicate = ClassPredicate(make_index_name(declaration.name), declaration.name)
    indexes = [IndexDeclaration(name=predicate.name, properties=(predicate,))]

    for index in declaration.indexes:
        properties, projection = _split_index(index)
        keys = (predicate, *properties)
        if projection is not None:
            projection.append(CLASSES_FIELD)
        indexes.append(
            IndexDeclaration(
                name="+".join(property_name(p) for p in keys),
                properties=keys,
                projection=tuple(projection) if projection is not None else None,
            )
        )
    return indexes


def compile_indexes(classes: Iterable[Any] | None) -> list[IndexDeclaration]:
    """Compile class declarations into a flat list of indexes.

    Declaration order is preserved and duplicates are kept.
    """
    indexes: list[IndexDeclaration] = []
    for declaration in classes or ():
        indexes.extend(compile_class(normalize_class(declaration)))
    return indexes


def compile_collection(classes: Iterable[Any] | None) -> CollectionDeclaration:
    """Build the declaration of the collection backing all classes."""
    return CollectionDeclaration(
        name=COLLECTION_NAME, indexes=tuple(compile_indexes(classes))
    )
