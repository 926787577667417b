"""Helpers shared by the actions that run the control loop offline."""

from argparse import ArgumentParser
import dataclasses
import logging
import pathlib
from typing import Any

from query_operator.config import OperatorConfig
from query_operator.loader import LoadOptions, load_store
from query_operator.manifest import (
    CONDITION_RECONCILED,
    MANAGED_BY_LABEL,
    ResourceKey,
    get_labels,
    is_sync_spec,
    nested_get,
    parse_gvks,
)
from query_operator.store import InMemoryStore

_LOGGER = logging.getLogger(__name__)


def add_common_flags(args: ArgumentParser) -> None:
    """Add the flags for loading a store from manifests on disk."""
    args.add_argument(
        "path", type=pathlib.Path, help="Path to the manifests to load into the store"
    )
    args.add_argument(
        "--gvk-pattern",
        type=str,
        default=None,
        help="Watched kinds as a semicolon separated list (e.g. v1/ConfigMap;apps/v1/Deployment)",
    )
    args.add_argument(
        "--output",
        "-o",
        choices=["yaml", "json"],
        default="yaml",
        help="Output format of the managed resources",
    )
    args.add_argument(
        "--output-file",
        type=str,
        default="/dev/stdout",
        help="Output file for the results of the command",
    )


def make_config(gvk_pattern: str | None) -> OperatorConfig:
    """Build the configuration from the environment and flags."""
    config = OperatorConfig.from_env()
    if gvk_pattern:
        config = dataclasses.replace(
            config, watched_kinds=tuple(parse_gvks(gvk_pattern))
        )
    return config


async def load(path: pathlib.Path) -> tuple[InMemoryStore, list[ResourceKey]]:
    """Load the manifests into a new store, returning the instances found."""
    store = InMemoryStore()
    keys = await load_store(store, LoadOptions(path=path))
    instances = []
    for key in keys:
        if is_sync_spec(await store.get(key)):
            instances.append(key)
    _LOGGER.info("Loaded %d objects with %d instances", len(keys), len(instances))
    return store, instances


async def managed_resources(store: InMemoryStore) -> list[dict[str, Any]]:
    """Return every object in the store created for an instance."""
    return [
        obj
        for obj in await store.list_objects()
        if MANAGED_BY_LABEL in get_labels(obj) and not is_sync_spec(obj)
    ]


def status_row(obj: dict[str, Any]) -> dict[str, Any]:
    """Summarize the Reconciled condition of an instance."""
    conditions = nested_get(obj, "status", "conditions") or []
    reconciled = next(
        (c for c in conditions if c.get("type") == CONDITION_RECONCILED), {}
    )
    return {
        "kind": obj.get("kind", ""),
        "namespace": nested_get(obj, "metadata", "namespace") or "",
        "name": nested_get(obj, "metadata", "name") or "",
        "ready": reconciled.get("status", "Unknown"),
        "reason": reconciled.get("reason", ""),
        "resources": len(nested_get(obj, "status", "managedResources") or []),
        "message": reconciled.get("message", ""),
    }
