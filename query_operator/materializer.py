"""Stamp ownership identity onto rendered resources."""

import copy
import logging
from typing import Any

from .exceptions import OwnershipError, ParseError
from .manifest import (
    MANAGED_BY_LABEL,
    ORIGINAL_ITEM_ANNOTATION,
    ResourceKey,
    SyncSpec,
)
from .record import Record

__all__ = ["materialize"]

_LOGGER = logging.getLogger(__name__)


def materialize(
    doc: dict[str, Any], owner: SyncSpec, record: Record
) -> tuple[ResourceKey, dict[str, Any]]:
    """Return the identity and the materialized copy of a rendered document.

    The namespace defaults to the owner namespace, the ownership label and
    the original record annotation are merged in, and a controller owner
    reference to the owner is set.

    Raises:
        ParseError: If the document is missing apiVersion, kind or name.
        OwnershipError: If the document targets a namespace other than the owner's.
    """
    obj = copy.deepcopy(doc)
    if not isinstance(obj.get("apiVersion"), str) or not obj["apiVersion"]:
        raise ParseError("Rendered resource is missing apiVersion")
    if not isinstance(obj.get("kind"), str) or not obj["kind"]:
        raise ParseError("Rendered resource is missing kind")
    if not isinstance(metadata := obj.get("metadata"), dict):
        raise ParseError(f"Rendered {obj['kind']} is missing metadata")
    if not metadata.get("name"):
        raise ParseError(f"Rendered {obj['kind']} is missing metadata.name")
    if not isinstance(metadata["name"], str):
        raise ParseError(f"Rendered {obj['kind']} metadata.name must be a string")
    if not isinstance(metadata.get("namespace") or "", str):
        raise ParseError(f"Rendered {obj['kind']} metadata.namespace must be a string")
    for field in ("labels", "annotations"):
        if not isinstance(metadata.get(field) or {}, dict):
            raise ParseError(f"Rendered {obj['kind']} metadata.{field} must be a mapping")
    refs = metadata.get("ownerReferences") or []
    if not isinstance(refs, list) or not all(isinstance(ref, dict) for ref in refs):
        raise ParseError(
            f"Rendered {obj['kind']} metadata.ownerReferences must be a list of mappings"
        )

    if not metadata.get("namespace"):
        metadata["namespace"] = owner.namespace
    elif metadata["namespace"] != owner.namespace:
        raise OwnershipError(
            f"Cannot set owner reference on {obj['kind']} {metadata['namespace']}/{metadata['name']}: "
            f"cross-namespace owner references are not allowed (owner namespace {owner.namespace})"
        )
    if not owner.uid:
        raise OwnershipError(f"Owner {owner.resource_id} has no uid")

    labels = metadata.get("labels") or {}
    labels[MANAGED_BY_LABEL] = owner.name
    metadata["labels"] = labels

    annotations = metadata.get("annotations") or {}
    annotations[ORIGINAL_ITEM_ANNOTATION] = record.to_json()
    metadata["annotations"] = annotations

    owner_ref = owner.owner_reference()
    refs = [
        ref
        for ref in refs
        if ref.get("uid") != owner.uid and not ref.get("controller")
    ]
    refs.append(owner_ref)
    metadata["ownerReferences"] = refs

    resource_id = ResourceKey.from_object(obj)
    _LOGGER.debug("Materialized %s for %s", resource_id, owner.resource_id)
    return resource_id, obj
