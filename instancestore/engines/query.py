"""Query planning and evaluation shared by document store engines.

A query is an equality mapping over plain or computed properties. It is
always served by a declared index: the index's leading properties must
be exactly the queried properties, followed by the requested order.
Results come back in index order, ties broken by document key.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from ..exceptions import QueryError
from ..models import CollectionDeclaration, IndexDeclaration


class IndexEntry(NamedTuple):
    """A document as seen through an index."""

    values: tuple[Any, ...]
    key: Any
    document: dict[str, Any]


def collation_key(value: Any) -> tuple:
    """Total ordering over JSON-like values of mixed types."""
    if value is None:
        return (0,)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, (list, tuple)):
        return (4, tuple(collation_key(v) for v in value))
    return (5, repr(value))


def as_list(value: Any) -> list[Any]:
    """Wrap a scalar option value into a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


@dataclass
class QueryPlan:
    """How a find/count is executed against one collection."""

    position: int | None
    index: IndexDeclaration | None
    query: dict[str, Any] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def order_values(self, entry: IndexEntry) -> tuple:
        """Collation keys of the order properties of an entry."""
        start = len(self.query)
        return tuple(
            collation_key(v) for v in entry.values[start : start + len(self.order)]
        )

    def sort_key(self, entry: IndexEntry) -> tuple:
        """Full ordering key of an entry: query suffix values, then key."""
        suffix = entry.values[len(self.query) :]
        return (
            tuple(collation_key(v) for v in suffix),
            collation_key(entry.key),
        )

    def matches(self, entry: IndexEntry) -> bool:
        """Check the equality conditions against the index values."""
        names = self.index.property_names if self.index else ()
        for name, value in self.query.items():
            actual = entry.values[names.index(name)]
            if actual != value or isinstance(actual, bool) != isinstance(value, bool):
                return False
        return True


def plan_query(
    collection: CollectionDeclaration | None,
    query: dict[str, Any] | None = None,
    order: str | Sequence[str] | None = None,
) -> QueryPlan:
    """Pick the first declared index able to serve a query."""
    query = dict(query or {})
    order = as_list(order)

    if not query and not order:
        return QueryPlan(position=None, index=None)

    if collection is not None:
        for position, index in enumerate(collection.indexes):
            names = index.property_names
            prefix, rest = names[: len(query)], names[len(query) :]
            if set(prefix) == set(query) and list(rest[: len(order)]) == order:
                return QueryPlan(position, index, query, order)

    raise QueryError(
        f"No index found for query {sorted(query)} ordered by {order}"
        + (f" in collection {collection.name!r}" if collection else "")
    )


def _bound(value: Any) -> tuple:
    return tuple(collation_key(v) for v in as_list(value))


def _within(values: tuple, start, start_after, end, end_before) -> bool:
    """Check order values against range bounds, compared by prefix."""
    if start is not None:
        bound = _bound(start)
        if values[: len(bound)] < bound:
            return False
    if start_after is not None:
        bound = _bound(start_after)
        if values[: len(bound)] <= bound:
            return False
    if end is not None:
        bound = _bound(end)
        if values[: len(bound)] > bound:
            return False
    if end_before is not None:
        bound = _bound(end_before)
        if values[: len(bound)] >= bound:
            return False
    return True


def select_entries(
    plan: QueryPlan,
    entries: Iterable[IndexEntry],
    start: Any = None,
    start_after: Any = None,
    end: Any = None,
    end_before: Any = None,
    reverse: bool = False,
    limit: int | None = None,
    after: tuple | None = None,
) -> list[IndexEntry]:
    """Filter, order, bound and limit index entries.

    ``after`` is a sort key cursor used for paging: only entries strictly
    beyond it in traversal direction are returned.
    """
    bounded = any(b is not None for b in (start, start_after, end, end_before))
    selected = []
    for entry in entries:
        if not plan.matches(entry):
            continue
        if bounded and not _within(
            plan.order_values(entry), start, start_after, end, end_before
        ):
            continue
        selected.append(entry)

    selected.sort(key=plan.sort_key, reverse=reverse)

    if after is not None:
        if reverse:
            selected = [e for e in selected if plan.sort_key(e) < after]
        else:
            selected = [e for e in selected if plan.sort_key(e) > after]

    if limit is not None:
        selected = selected[:limit]
    return selected


def project(document: dict[str, Any], properties: Any) -> dict[str, Any]:
    """Keep only the requested properties of a document."""
    if properties is None or properties == "*":
        return document
    return {p: document[p] for p in as_list(properties) if p in document}
