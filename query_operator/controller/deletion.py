"""Finalizer gated cascading deletion of managed resources."""

import asyncio
import logging

from query_operator.config import OperatorConfig
from query_operator.context import TERMINATING, cycle_phase
from query_operator.exceptions import (
    ConflictError,
    ObjectNotFoundError,
    PruneError,
    StoreException,
)
from query_operator.manifest import SyncSpec
from query_operator.prune import collect_owned
from query_operator.store import Store

__all__ = ["DeletionCoordinator"]

_LOGGER = logging.getLogger(__name__)


class DeletionCoordinator:
    """Removes all managed resources before releasing the instance finalizer."""

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        self._store = store
        self._config = config

    async def handle(self, spec: SyncSpec) -> bool:
        """Clean up an instance whose deletion was requested.

        Without the finalizer nothing is done and the managed resources are
        left to the store. With it, every owned resource is deleted and then
        the finalizer is removed.

        Returns True if the finalizer was removed.

        Raises:
            PruneError: If any owned resource could not be deleted, the
                finalizer is kept so the deletion can be retried.
        """
        if not spec.has_finalizer:
            _LOGGER.info(
                "Instance %s has no finalizer, managed resources are not cleaned up",
                spec.resource_id,
            )
            return False

        with cycle_phase(TERMINATING):
            owned = await collect_owned(
                self._store, spec, self._config.watched_kinds, self._config
            )
            errors = []
            for resource_id in sorted(owned):
                try:
                    async with asyncio.timeout(self._config.request_timeout):
                        await self._store.delete(resource_id)
                except ObjectNotFoundError:
                    _LOGGER.debug("Managed resource %s already deleted", resource_id)
                except (StoreException, TimeoutError) as err:
                    _LOGGER.error("Failed to delete managed resource %s: %s", resource_id, err)
                    errors.append(f"{resource_id}: {err or 'timed out'}")
                else:
                    _LOGGER.info("Deleted managed resource %s", resource_id)
            if errors:
                raise PruneError(
                    f"Failed to delete managed resources of {spec.resource_id}: {'; '.join(errors)}"
                )
            return await self._remove_finalizer(spec)

    async def _remove_finalizer(self, spec: SyncSpec) -> bool:
        resource_id = spec.resource_id
        for attempt in range(self._config.status_update_retries):
            try:
                async with asyncio.timeout(self._config.request_timeout):
                    live = await self._store.get(resource_id)
                    finalizers = live["metadata"].get("finalizers") or []
                    if spec.finalizer not in finalizers:
                        return False
                    live["metadata"]["finalizers"] = [
                        f for f in finalizers if f != spec.finalizer
                    ]
                    await self._store.update(live)
            except ObjectNotFoundError:
                _LOGGER.debug("Instance %s already removed", resource_id)
                return False
            except ConflictError:
                _LOGGER.debug(
                    "Conflict removing finalizer from %s (attempt %d)",
                    resource_id,
                    attempt + 1,
                )
                continue
            _LOGGER.info("Removed finalizer from %s", resource_id)
            return True
        raise ConflictError(
            f"Failed to remove finalizer from {resource_id} after {self._config.status_update_retries} attempts"
        )
