"""Classify store events into re-triggers of the control loop.

Events on managed resources drive the write-back of their live state. The
classifier is built from named predicates comparing the previous and current
state of an object, so the conditions for re-triggering are explicit.
"""

from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

from .manifest import nested_get

__all__ = [
    "EventKind",
    "Predicate",
    "resource_version_changed",
    "generation_changed",
    "labels_changed",
    "annotations_changed",
    "status_changed",
    "deletion_requested",
    "CHILD_UPDATE_PREDICATES",
    "classify_child_event",
    "instance_needs_cycle",
]


class EventKind(str, Enum):
    """Kind of a store event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    GENERIC = "generic"


Predicate = Callable[[dict[str, Any], dict[str, Any]], bool]


def resource_version_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when the object was written."""
    return nested_get(old, "metadata", "resourceVersion") != nested_get(
        new, "metadata", "resourceVersion"
    )


def generation_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when the desired state of the object changed."""
    return nested_get(old, "metadata", "generation") != nested_get(
        new, "metadata", "generation"
    )


def labels_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when the labels differ."""
    return (nested_get(old, "metadata", "labels") or {}) != (
        nested_get(new, "metadata", "labels") or {}
    )


def annotations_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when the annotations differ."""
    return (nested_get(old, "metadata", "annotations") or {}) != (
        nested_get(new, "metadata", "annotations") or {}
    )


def status_changed(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when the observed state of the object changed."""
    return old.get("status") != new.get("status")


def deletion_requested(old: dict[str, Any], new: dict[str, Any]) -> bool:
    """Return True when a deletion timestamp was just set."""
    return not nested_get(old, "metadata", "deletionTimestamp") and bool(
        nested_get(new, "metadata", "deletionTimestamp")
    )


CHILD_UPDATE_PREDICATES: tuple[Predicate, ...] = (
    status_changed,
    resource_version_changed,
    generation_changed,
    annotations_changed,
    labels_changed,
)


def classify_child_event(
    kind: EventKind,
    old: dict[str, Any] | None,
    new: dict[str, Any] | None,
    predicates: Sequence[Predicate] = CHILD_UPDATE_PREDICATES,
) -> bool:
    """Return True if a managed resource event should trigger a write-back.

    Creates always trigger, updates trigger when any predicate matches, and
    deletes and generic events never do.
    """
    if kind == EventKind.CREATE:
        return True
    if kind == EventKind.UPDATE:
        if old is None or new is None:
            return True
        return any(predicate(old, new) for predicate in predicates)
    return False


def instance_needs_cycle(
    kind: EventKind, old: dict[str, Any] | None, new: dict[str, Any] | None
) -> bool:
    """Return True if an instance event should run a cycle immediately.

    A cycle runs when the instance is created, its spec generation changes
    or its deletion is requested. Status only updates (including the ones the
    engine writes itself) do not trigger a cycle.
    """
    if kind == EventKind.CREATE:
        return True
    if kind == EventKind.UPDATE:
        if old is None or new is None:
            return True
        return generation_changed(old, new) or deletion_requested(old, new)
    return False
