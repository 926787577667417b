"""Store module for the objects the engine reads and writes."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from query_operator.manifest import GroupVersionKind, ResourceKey


class StoreEvent(str, Enum):
    """Enum for store events."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


Listener = Callable[[ResourceKey, dict[str, Any]], None]


class Store(ABC):
    """Abstract base class for the cluster object store with listener support.

    All data methods are coroutines since a store backed by an API server
    performs network calls. Objects passed in and returned are copies, callers
    are free to mutate them.
    """

    @abstractmethod
    async def get(self, resource_id: ResourceKey) -> dict[str, Any]:
        """Return the live object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def list_objects(
        self,
        gvk: GroupVersionKind | None = None,
        namespace: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally within a namespace and matching labels.

        Raises:
            ObjectNotFoundError: If the kind is not served by the store.
        """

    @abstractmethod
    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, returning it with server assigned metadata.

        Raises:
            AlreadyExistsError: If an object with the same identity exists.
        """

    @abstractmethod
    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object.

        When the object carries metadata.resourceVersion it must match the
        live object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the resourceVersion is stale.
        """

    @abstractmethod
    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace only the status of an existing object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the resourceVersion is stale.
        """

    @abstractmethod
    async def apply(
        self, obj: dict[str, Any], field_manager: str, force: bool = True
    ) -> dict[str, Any]:
        """Server-side apply the desired object state.

        Raises:
            ApplyNotSupportedError: If the store cannot apply.
        """

    @abstractmethod
    async def delete(self, resource_id: ResourceKey) -> None:
        """Request deletion of an object.

        An object carrying finalizers is marked with a deletionTimestamp and
        removed once its last finalizer is cleared.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Listener,
        flush: bool = False,
    ) -> Callable[[], None]:
        """Register a callback for a specific event (added, modified, deleted).

        When flush is set, ADDED listeners are invoked for every existing object.
        Returns a callable that can be called to remove the listener.
        """
