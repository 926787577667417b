"""Upsert materialized resources into the cluster store.

Server-side apply with the configured field manager is preferred. When the
store does not support it, the resource is created if absent, or updated in
place when any significant field differs from the live object.
"""

import asyncio
import copy
from enum import Enum
import logging
from typing import Any

from .config import OperatorConfig
from .exceptions import (
    AlreadyExistsError,
    ApplyError,
    ApplyNotSupportedError,
    ConflictError,
    ObjectNotFoundError,
    StoreException,
)
from .manifest import ResourceKey, get_annotations, get_labels
from .store import Store

__all__ = [
    "ApplyResult",
    "apply_resource",
]

_LOGGER = logging.getLogger(__name__)

# Service fields allocated by the cluster that a template never renders
SERVICE_ALLOCATED_FIELDS = ("clusterIP", "clusterIPs")


class ApplyResult(str, Enum):
    """Outcome of applying a single resource."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    APPLIED = "applied"
    """Server-side applied, the store decides whether anything changed."""


def _body(obj: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


def is_unchanged(desired: dict[str, Any], live: dict[str, Any]) -> bool:
    """Return True if the body, labels and annotations are equal."""
    return (
        _body(desired) == _body(live)
        and get_labels(desired) == get_labels(live)
        and get_annotations(desired) == get_annotations(live)
    )


def _preserve_allocated_fields(
    resource_id: ResourceKey, desired: dict[str, Any], live: dict[str, Any]
) -> None:
    if resource_id.kind != "Service" or resource_id.group != "":
        return
    live_spec = live.get("spec") or {}
    cluster_ip = live_spec.get("clusterIP")
    if not cluster_ip or cluster_ip == "None":
        return
    spec = desired.setdefault("spec", {})
    for key in SERVICE_ALLOCATED_FIELDS:
        if key in live_spec:
            spec[key] = copy.deepcopy(live_spec[key])


async def _create_or_update(
    store: Store, resource_id: ResourceKey, obj: dict[str, Any]
) -> ApplyResult:
    try:
        live = await store.get(resource_id)
    except ObjectNotFoundError:
        _LOGGER.info("Creating %s", resource_id)
        await store.create(obj)
        return ApplyResult.CREATED

    desired = copy.deepcopy(obj)
    desired["metadata"]["resourceVersion"] = live["metadata"].get("resourceVersion")
    _preserve_allocated_fields(resource_id, desired, live)
    if is_unchanged(desired, live):
        _LOGGER.debug("Resource %s is unchanged, skipping update", resource_id)
        return ApplyResult.UNCHANGED
    _LOGGER.info("Updating %s", resource_id)
    await store.update(desired)
    return ApplyResult.UPDATED


async def apply_resource(
    store: Store, obj: dict[str, Any], config: OperatorConfig
) -> ApplyResult:
    """Create or update a single resource in the store.

    Raises:
        ApplyError: If the resource could not be written.
    """
    resource_id = ResourceKey.from_object(obj)
    try:
        async with asyncio.timeout(config.request_timeout):
            try:
                await store.apply(obj, field_manager=config.field_manager, force=True)
            except ApplyNotSupportedError:
                _LOGGER.debug(
                    "Server-side apply not supported, falling back to create or update for %s",
                    resource_id,
                )
            else:
                _LOGGER.debug("Applied %s", resource_id)
                return ApplyResult.APPLIED
            try:
                return await _create_or_update(store, resource_id, obj)
            except (ConflictError, AlreadyExistsError) as err:
                _LOGGER.debug("Retrying apply of %s after conflict: %s", resource_id, err)
                return await _create_or_update(store, resource_id, obj)
    except StoreException as err:
        raise ApplyError(f"Failed to apply {resource_id}: {err}") from err
    except TimeoutError as err:
        raise ApplyError(f"Timed out applying {resource_id}") from err
