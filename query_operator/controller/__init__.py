"""Controller running synchronization cycles for instances.

This module provides the cycle orchestration along with the deletion
coordinator and the write-back of managed resource state.
"""

from query_operator.status import CycleOutcome

from .controller import SyncController
from .deletion import DeletionCoordinator
from .writeback import WriteBack

__all__ = [
    "SyncController",
    "CycleOutcome",
    "DeletionCoordinator",
    "WriteBack",
]
