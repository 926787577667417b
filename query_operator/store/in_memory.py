"""Module for in memory object store."""

import copy
from collections import defaultdict
from collections.abc import Callable, Iterable
import datetime
import logging
from typing import Any, DefaultDict
import uuid

from query_operator.exceptions import (
    AlreadyExistsError,
    ApplyNotSupportedError,
    ConflictError,
    ObjectNotFoundError,
    StoreException,
)
from query_operator.manifest import GroupVersionKind, ResourceKey

from .store import Listener, Store, StoreEvent


_LOGGER = logging.getLogger(__name__)

# Metadata fields owned by the store rather than by clients
SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _spec_body(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the object without metadata and status."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Objects are kept as unstructured dictionaries keyed by ResourceKey. The
    store assigns uid, resourceVersion, generation and creationTimestamp,
    rejects stale updates, honors finalizers and allocates a cluster IP for
    Services. Owner reference garbage collection and server-side apply can be
    turned off to exercise the fallback paths of clients.
    """

    def __init__(
        self,
        kinds: Iterable[GroupVersionKind] | None = None,
        supports_apply: bool = True,
        garbage_collect: bool = True,
    ) -> None:
        """Initialize the InMemoryStore.

        Args:
            kinds: When set, only these kinds (plus any kind created in the
                store) can be listed.
            supports_apply: When false, apply raises ApplyNotSupportedError.
            garbage_collect: Delete dependents when their owner is deleted.
        """
        self._objects: dict[ResourceKey, dict[str, Any]] = {}
        self._kinds: set[GroupVersionKind] | None = set(kinds) if kinds else None
        self._supports_apply = supports_apply
        self._garbage_collect = garbage_collect
        self._resource_version = 0
        self._next_cluster_ip = 1
        self._listeners: DefaultDict[StoreEvent, list[Listener]] = defaultdict(list)

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _allocate_cluster_ip(self) -> str:
        ip = self._next_cluster_ip
        self._next_cluster_ip += 1
        return f"10.96.{ip // 250}.{ip % 250 + 1}"

    def add_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Insert an object as-is, assigning any missing server metadata.

        This is used to seed the store (for example when loading manifests
        from disk) and fires ADDED listeners like a create.
        """
        resource_id = ResourceKey.from_object(obj)
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = self._next_version()
        metadata.setdefault("generation", 1)
        metadata.setdefault("creationTimestamp", _now())
        self._objects[resource_id] = stored
        if self._kinds is not None:
            self._kinds.add(resource_id.gvk)
        _LOGGER.debug("Adding object %s to store", resource_id)
        self._fire_event(StoreEvent.ADDED, resource_id, stored)
        return copy.deepcopy(stored)

    async def get(self, resource_id: ResourceKey) -> dict[str, Any]:
        """Return the live object."""
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        return copy.deepcopy(obj)

    async def list_objects(
        self,
        gvk: GroupVersionKind | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally within a namespace and matching labels."""
        if gvk is not None and self._kinds is not None and gvk not in self._kinds:
            raise ObjectNotFoundError(f"Kind {gvk} is not served by the store")
        result = []
        for resource_id, obj in sorted(self._objects.items()):
            if gvk is not None and resource_id.gvk != gvk:
                continue
            if namespace is not None and resource_id.namespace != namespace:
                continue
            if labels:
                obj_labels = (obj.get("metadata") or {}).get("labels") or {}
                if any(obj_labels.get(k) != v for k, v in labels.items()):
                    continue
            result.append(copy.deepcopy(obj))
        return result

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, returning it with server assigned metadata."""
        resource_id = ResourceKey.from_object(obj)
        if resource_id in self._objects:
            raise AlreadyExistsError(f"Object {resource_id} already exists")
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        for key in SERVER_METADATA:
            metadata.pop(key, None)
        metadata["uid"] = str(uuid.uuid4())
        metadata["resourceVersion"] = self._next_version()
        metadata["generation"] = 1
        metadata["creationTimestamp"] = _now()
        if resource_id.kind == "Service" and resource_id.group == "":
            spec = stored.setdefault("spec", {})
            if not spec.get("clusterIP"):
                spec["clusterIP"] = self._allocate_cluster_ip()
                spec["clusterIPs"] = [spec["clusterIP"]]
        self._objects[resource_id] = stored
        if self._kinds is not None:
            self._kinds.add(resource_id.gvk)
        _LOGGER.debug("Created object %s", resource_id)
        self._fire_event(StoreEvent.ADDED, resource_id, stored)
        return copy.deepcopy(stored)

    def _existing(self, obj: dict[str, Any]) -> tuple[ResourceKey, dict[str, Any]]:
        resource_id = ResourceKey.from_object(obj)
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        version = (obj.get("metadata") or {}).get("resourceVersion")
        current = existing["metadata"]["resourceVersion"]
        if version and version != current:
            raise ConflictError(
                f"Object {resource_id} has been modified (resourceVersion {version} != {current})"
            )
        return resource_id, existing

    def _check_immutable(
        self, resource_id: ResourceKey, existing: dict[str, Any], desired: dict[str, Any]
    ) -> None:
        if resource_id.kind != "Service" or resource_id.group != "":
            return
        live_ip = (existing.get("spec") or {}).get("clusterIP")
        new_ip = (desired.get("spec") or {}).get("clusterIP")
        if live_ip and live_ip != "None" and new_ip != live_ip:
            raise StoreException(
                f"Service {resource_id.namespaced_name} spec.clusterIP: field is immutable"
            )

    def _store_updated(
        self,
        resource_id: ResourceKey,
        existing: dict[str, Any],
        desired: dict[str, Any],
    ) -> dict[str, Any]:
        """Replace the existing object, bumping versions if anything changed."""
        if desired == existing:
            _LOGGER.debug("Object %s unchanged", resource_id)
            return copy.deepcopy(existing)
        metadata = desired["metadata"]
        metadata["resourceVersion"] = self._next_version()
        if _spec_body(desired) != _spec_body(existing):
            metadata["generation"] = int(existing["metadata"].get("generation", 1)) + 1
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            _LOGGER.debug("Last finalizer removed from %s", resource_id)
            self._remove(resource_id, desired)
            return copy.deepcopy(desired)
        self._objects[resource_id] = desired
        self._fire_event(StoreEvent.MODIFIED, resource_id, desired)
        return copy.deepcopy(desired)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object."""
        resource_id, existing = self._existing(obj)
        desired = copy.deepcopy(obj)
        metadata = desired.setdefault("metadata", {})
        for key in SERVER_METADATA:
            if key in existing["metadata"]:
                metadata[key] = existing["metadata"][key]
            else:
                metadata.pop(key, None)
        if "status" in existing:
            desired["status"] = copy.deepcopy(existing["status"])
        else:
            desired.pop("status", None)
        self._check_immutable(resource_id, existing, desired)
        return self._store_updated(resource_id, existing, desired)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object."""
        resource_id, existing = self._existing(obj)
        desired = copy.deepcopy(existing)
        if "status" in obj:
            desired["status"] = copy.deepcopy(obj["status"])
        else:
            desired.pop("status", None)
        if desired == existing:
            return copy.deepcopy(existing)
        desired["metadata"]["resourceVersion"] = self._next_version()
        self._objects[resource_id] = desired
        self._fire_event(StoreEvent.MODIFIED, resource_id, desired)
        return copy.deepcopy(desired)

    async def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = True
    ) -> dict[str, Any]:
        """Server-side apply the desired object state.

        The applied configuration is the single source of truth for every
        client owned field: top level fields and labels, annotations and owner
        references are replaced, server owned metadata, finalizers, status and
        an allocated Service cluster IP are kept.
        """
        if not self._supports_apply:
            raise ApplyNotSupportedError("Server-side apply is not supported")
        resource_id = ResourceKey.from_object(obj)
        if (existing := self._objects.get(resource_id)) is None:
            _LOGGER.debug("Apply (%s) creating %s", field_manager, resource_id)
            return await self.create(obj)
        desired = copy.deepcopy(obj)
        desired.pop("status", None)
        metadata = desired.setdefault("metadata", {})
        for key in SERVER_METADATA:
            metadata.pop(key, None)
        live_metadata = existing["metadata"]
        for key in SERVER_METADATA:
            if key in live_metadata:
                metadata[key] = live_metadata[key]
        if "finalizers" not in metadata and "finalizers" in live_metadata:
            metadata["finalizers"] = list(live_metadata["finalizers"])
        if "status" in existing:
            desired["status"] = copy.deepcopy(existing["status"])
        if resource_id.kind == "Service" and resource_id.group == "":
            live_spec = existing.get("spec") or {}
            spec = desired.setdefault("spec", {})
            for key in ("clusterIP", "clusterIPs"):
                if key not in spec and key in live_spec:
                    spec[key] = copy.deepcopy(live_spec[key])
        self._check_immutable(resource_id, existing, desired)
        return self._store_updated(resource_id, existing, desired)

    async def delete(self, resource_id: ResourceKey) -> None:
        """Request deletion of an object."""
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        metadata = existing["metadata"]
        if metadata.get("finalizers"):
            if metadata.get("deletionTimestamp"):
                return
            updated = copy.deepcopy(existing)
            updated["metadata"]["deletionTimestamp"] = _now()
            updated["metadata"]["resourceVersion"] = self._next_version()
            self._objects[resource_id] = updated
            _LOGGER.debug("Marked %s for deletion", resource_id)
            self._fire_event(StoreEvent.MODIFIED, resource_id, updated)
            return
        self._remove(resource_id, existing)

    def _remove(self, resource_id: ResourceKey, obj: dict[str, Any]) -> None:
        self._objects.pop(resource_id, None)
        _LOGGER.debug("Deleted object %s", resource_id)
        self._fire_event(StoreEvent.DELETED, resource_id, obj)
        if not self._garbage_collect:
            return
        uid = obj["metadata"].get("uid")
        dependents = [
            dep_id
            for dep_id, dep in self._objects.items()
            if any(
                ref.get("uid") == uid
                for ref in (dep.get("metadata") or {}).get("ownerReferences") or ()
            )
        ]
        for dep_id in dependents:
            if (dep := self._objects.get(dep_id)) is None:
                continue
            _LOGGER.debug("Garbage collecting %s owned by %s", dep_id, resource_id)
            if dep["metadata"].get("finalizers"):
                dep = copy.deepcopy(dep)
                dep["metadata"].setdefault("deletionTimestamp", _now())
                self._objects[dep_id] = dep
                self._fire_event(StoreEvent.MODIFIED, dep_id, dep)
                continue
            self._remove(dep_id, dep)

    def add_listener(
        self,
        event: StoreEvent,
        callback: Listener,
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event (added, modified, deleted)."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)

        if flush and event == StoreEvent.ADDED:
            _LOGGER.debug("Flushing objects for event type %s", event)
            for resource_id, obj in list(self._objects.items()):
                callback(resource_id, copy.deepcopy(obj))

        return remove

    def _fire_event(
        self, event: StoreEvent, resource_id: ResourceKey, obj: dict[str, Any]
    ) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(resource_id, copy.deepcopy(obj))
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)
