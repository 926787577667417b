"""Find and delete managed resources that are no longer produced."""

import asyncio
from collections.abc import Iterable
import logging
from typing import Any

from .config import OperatorConfig
from .exceptions import ObjectNotFoundError, PruneError, StoreException
from .manifest import MANAGED_BY_LABEL, GroupVersionKind, ResourceKey, SyncSpec
from .store import Store

__all__ = [
    "collect_owned",
    "prune_stale",
]

_LOGGER = logging.getLogger(__name__)


def is_owned_by(obj: dict[str, Any], owner: SyncSpec) -> bool:
    """Return True if the object has an owner reference to the owner uid."""
    refs = (obj.get("metadata") or {}).get("ownerReferences") or ()
    return any(ref.get("uid") == owner.uid for ref in refs)


async def collect_owned(
    store: Store,
    owner: SyncSpec,
    kinds: Iterable[GroupVersionKind],
    config: OperatorConfig,
) -> dict[ResourceKey, dict[str, Any]]:
    """Return the live resources of the watched kinds owned by the instance.

    Resources are listed in the owner's namespace by ownership label and
    kept only when an owner reference matches the owner uid. Kinds the store
    does not serve are skipped.

    Raises:
        PruneError: If listing a kind fails.
    """
    owned: dict[ResourceKey, dict[str, Any]] = {}
    for gvk in kinds:
        try:
            async with asyncio.timeout(config.request_timeout):
                items = await store.list_objects(
                    gvk,
                    namespace=owner.namespace,
                    labels={MANAGED_BY_LABEL: owner.name},
                )
        except ObjectNotFoundError:
            _LOGGER.debug("Skipping kind %s not served by the store", gvk)
            continue
        except (StoreException, TimeoutError) as err:
            raise PruneError(f"Failed to list {gvk}: {err}") from err
        for item in items:
            if is_owned_by(item, owner):
                owned[ResourceKey.from_object(item)] = item
    return owned


async def prune_stale(
    store: Store,
    owned: dict[ResourceKey, dict[str, Any]],
    keep: Iterable[ResourceKey],
    config: OperatorConfig,
) -> tuple[list[ResourceKey], list[str]]:
    """Delete owned resources outside the set to keep.

    Returns the deleted keys and the messages of deletions that failed. A
    resource that is already gone counts as deleted.
    """
    keep_set = set(keep)
    deleted: list[ResourceKey] = []
    errors: list[str] = []
    for resource_id in sorted(set(owned) - keep_set):
        try:
            async with asyncio.timeout(config.request_timeout):
                await store.delete(resource_id)
        except ObjectNotFoundError:
            _LOGGER.debug("Stale resource %s already deleted", resource_id)
        except (StoreException, TimeoutError) as err:
            _LOGGER.error("Failed to delete stale resource %s: %s", resource_id, err)
            errors.append(f"{resource_id}: {err or 'timed out'}")
            continue
        else:
            _LOGGER.info("Deleted stale resource %s", resource_id)
        deleted.append(resource_id)
    return deleted, errors
