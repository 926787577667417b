"""
The store module provides the cluster store the engine reconciles against.

- Uses ResourceKey (group, version, kind, namespace, name) as the key for all objects.
- Stores values as unstructured dictionaries since managed resources have
  whatever schema the user template renders.
- Provides optimistic concurrency through metadata.resourceVersion, finalizer
  gated deletion, server-side apply and change listeners.

This abstract interface allows for various implementations (in-memory, API
server backed, etc.).
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
]
