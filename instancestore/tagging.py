"""Attach and detach class membership on documents."""

from copy import deepcopy
from typing import Any

from .exceptions import MembershipError, ValidationError
from .models import CLASSES_FIELD, InstanceResult


def check_class(klass: Any) -> None:
    """Validate a class name argument."""
    if not isinstance(klass, str):
        raise ValidationError("class", "class parameter must be a string")
    if not klass:
        raise ValidationError("class", "class parameter is missing or empty")


def check_classes(classes: Any) -> list[str]:
    """Validate a list of class names and return it as a new list."""
    if not isinstance(classes, (list, tuple)):
        raise ValidationError("classes", "classes parameter must be a list")
    if not classes:
        raise ValidationError("classes", "classes parameter is empty")
    for klass in classes:
        check_class(klass)
    return list(classes)


def tag_document(classes: Any, instance: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``instance`` carrying its class list.

    The caller's instance is left untouched.
    """
    classes = check_classes(classes)
    if CLASSES_FIELD in instance:
        raise ValidationError("instance", f"{CLASSES_FIELD!r} is a reserved property")
    document = deepcopy(instance)
    document[CLASSES_FIELD] = classes
    return document


def check_membership(document: dict[str, Any], klass: str, key: Any) -> None:
    """Raise MembershipError unless the document belongs to ``klass``."""
    if klass not in (document.get(CLASSES_FIELD) or ()):
        raise MembershipError(klass, key)


def untag_document(
    document: dict[str, Any], key: Any, klass: str | None = None
) -> InstanceResult:
    """Split a stored document into its classes and caller-visible instance."""
    if klass is not None:
        check_membership(document, klass, key)
    instance = dict(document)
    classes = list(instance.pop(CLASSES_FIELD, None) or ())
    return InstanceResult(classes=classes, key=key, instance=instance)
