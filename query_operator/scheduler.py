"""Scheduler driving the synchronization cycles of every instance.

Each instance gets one worker task. The worker runs a cycle immediately when
the instance appears, then again at the poll interval. Store events
re-trigger it early: a spec change or a deletion request runs a cycle right
away, and a change to a managed resource runs a write-back pass for that
resource. Cycles and write-back passes for the same instance never overlap,
while different instances run concurrently.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
import logging
from typing import Any

from .config import OperatorConfig
from .controller import SyncController
from .events import EventKind, classify_child_event, instance_needs_cycle
from .exceptions import QueryOperatorException
from .manifest import (
    MANAGED_BY_LABEL,
    SYNC_SPEC_KINDS,
    GroupVersionKind,
    ResourceKey,
    get_labels,
    is_sync_spec,
)
from .store import Store, StoreEvent

__all__ = ["Scheduler"]

_LOGGER = logging.getLogger(__name__)


@dataclass
class _Worker:
    """State of the worker task of a single instance."""

    resource_id: ResourceKey
    lock: asyncio.Lock
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    cycle_requested: bool = True
    pending_children: set[ResourceKey] = field(default_factory=set)
    stopped: bool = False
    task: asyncio.Task[None] | None = None


def owner_of(obj: dict[str, Any]) -> ResourceKey | None:
    """Return the instance controlling a managed resource, if any."""
    metadata = obj.get("metadata") or {}
    for ref in metadata.get("ownerReferences") or ():
        if not ref.get("controller") or ref.get("kind") not in SYNC_SPEC_KINDS:
            continue
        gvk = GroupVersionKind.from_api_version(ref.get("apiVersion", ""), ref["kind"])
        return ResourceKey.for_gvk(gvk, metadata.get("namespace"), ref.get("name", ""))
    return None


class Scheduler:
    """Runs the worker of every instance found in the store."""

    def __init__(
        self,
        store: Store,
        controller: SyncController,
        config: OperatorConfig,
    ) -> None:
        self._store = store
        self._controller = controller
        self._config = config
        self._watched = set(config.watched_kinds)
        self._workers: dict[ResourceKey, _Worker] = {}
        # Outlives workers so a recreated instance waits for a running cycle
        self._locks: defaultdict[ResourceKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._last_seen: dict[ResourceKey, dict[str, Any]] = {}
        self._cycles: defaultdict[ResourceKey, int] = defaultdict(int)
        self._cycle_done = asyncio.Condition()
        self._remove_listeners: list[Any] = []

    async def start(self) -> None:
        """Register store listeners and schedule all existing instances."""
        if self._remove_listeners:
            return
        _LOGGER.info("Starting scheduler")
        self._remove_listeners = [
            self._store.add_listener(StoreEvent.ADDED, self._on_added, flush=True),
            self._store.add_listener(StoreEvent.MODIFIED, self._on_modified),
            self._store.add_listener(StoreEvent.DELETED, self._on_deleted),
        ]

    async def stop(self) -> None:
        """Cancel all workers and wait for them to finish."""
        _LOGGER.info("Stopping scheduler")
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        tasks = [w.task for w in self._workers.values() if w.task is not None]
        for task in tasks:
            task.cancel()
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            pass
        self._workers.clear()
        _LOGGER.info("Scheduler stopped")

    @property
    def instances(self) -> list[ResourceKey]:
        """Return the instances with a running worker."""
        return sorted(self._workers)

    def cycles(self, resource_id: ResourceKey) -> int:
        """Return the number of cycles completed for an instance."""
        return self._cycles[resource_id]

    def trigger(self, resource_id: ResourceKey) -> None:
        """Run a cycle for the instance as soon as possible."""
        if (worker := self._workers.get(resource_id)) is None:
            worker = self._start_worker(resource_id)
        worker.cycle_requested = True
        worker.wake.set()

    async def wait_for_cycles(self, resource_id: ResourceKey, count: int) -> None:
        """Wait until the instance has completed at least count cycles."""
        async with self._cycle_done:
            await self._cycle_done.wait_for(lambda: self._cycles[resource_id] >= count)

    async def run_once(self, resource_id: ResourceKey) -> None:
        """Run a single cycle for the instance, serialized with its worker."""
        worker = self._workers.get(resource_id) or _Worker(
            resource_id, self._locks[resource_id]
        )
        await self._cycle(worker)

    def _start_worker(self, resource_id: ResourceKey) -> _Worker:
        worker = _Worker(resource_id, self._locks[resource_id])
        self._workers[resource_id] = worker
        worker.task = asyncio.create_task(
            self._run_worker(worker), name=f"worker-{resource_id}"
        )
        _LOGGER.debug("Started worker for %s", resource_id)
        return worker

    def _request_write_back(self, child_id: ResourceKey, obj: dict[str, Any]) -> None:
        if (owner_id := owner_of(obj)) is None:
            return
        if get_labels(obj).get(MANAGED_BY_LABEL) != owner_id.name:
            return
        if (worker := self._workers.get(owner_id)) is None or worker.stopped:
            return
        worker.pending_children.add(child_id)
        worker.wake.set()

    def _on_added(self, resource_id: ResourceKey, obj: dict[str, Any]) -> None:
        if is_sync_spec(obj):
            self._last_seen[resource_id] = obj
            if instance_needs_cycle(EventKind.CREATE, None, obj):
                self.trigger(resource_id)
            return
        if resource_id.gvk not in self._watched:
            return
        self._last_seen[resource_id] = obj
        if classify_child_event(EventKind.CREATE, None, obj):
            self._request_write_back(resource_id, obj)

    def _on_modified(self, resource_id: ResourceKey, obj: dict[str, Any]) -> None:
        old = self._last_seen.get(resource_id)
        if is_sync_spec(obj):
            self._last_seen[resource_id] = obj
            if instance_needs_cycle(EventKind.UPDATE, old, obj):
                _LOGGER.debug("Instance %s changed, triggering a cycle", resource_id)
                self.trigger(resource_id)
            return
        if resource_id.gvk not in self._watched:
            return
        self._last_seen[resource_id] = obj
        if classify_child_event(EventKind.UPDATE, old, obj):
            self._request_write_back(resource_id, obj)

    def _on_deleted(self, resource_id: ResourceKey, obj: dict[str, Any]) -> None:
        old = self._last_seen.pop(resource_id, None)
        if is_sync_spec(obj):
            if (worker := self._workers.pop(resource_id, None)) is not None:
                _LOGGER.info("Instance %s deleted, stopping its worker", resource_id)
                worker.stopped = True
                worker.wake.set()
            return
        if resource_id.gvk in self._watched and classify_child_event(
            EventKind.DELETE, old, obj
        ):
            self._request_write_back(resource_id, obj)

    async def _cycle(self, worker: _Worker) -> float | None:
        """Run one cycle, returning the delay until the next one."""
        delay: float | None
        async with worker.lock:
            try:
                outcome = await self._controller.reconcile(worker.resource_id)
            except QueryOperatorException as err:
                _LOGGER.error("Cycle for %s failed: %s", worker.resource_id, err)
                delay = self._config.recoverable_requeue_interval
            except Exception:
                _LOGGER.exception("Unexpected error in cycle for %s", worker.resource_id)
                delay = self._config.recoverable_requeue_interval
            else:
                delay = outcome.requeue_after if outcome is not None else None
            # The end of cycle write-back covered every managed resource
            worker.pending_children.clear()
        async with self._cycle_done:
            self._cycles[worker.resource_id] += 1
            self._cycle_done.notify_all()
        return delay

    async def _write_back(self, worker: _Worker, children: list[ResourceKey]) -> None:
        async with worker.lock:
            try:
                await self._controller.write_back(worker.resource_id, children)
            except QueryOperatorException as err:
                _LOGGER.error("Write-back for %s failed: %s", worker.resource_id, err)
            except Exception:
                _LOGGER.exception("Unexpected error in write-back for %s", worker.resource_id)

    async def _run_worker(self, worker: _Worker) -> None:
        loop = asyncio.get_running_loop()
        next_due: float | None = None
        while not worker.stopped:
            worker.wake.clear()
            if worker.cycle_requested or (
                next_due is not None and loop.time() >= next_due
            ):
                worker.cycle_requested = False
                delay = await self._cycle(worker)
                next_due = None if delay is None else loop.time() + delay
                if delay is not None:
                    _LOGGER.debug(
                        "Next cycle for %s in %.1fs", worker.resource_id, delay
                    )
                continue
            if worker.pending_children:
                children = sorted(worker.pending_children)
                worker.pending_children.clear()
                await self._write_back(worker, children)
                continue
            timeout = None if next_due is None else max(0.0, next_due - loop.time())
            try:
                async with asyncio.timeout(timeout):
                    await worker.wake.wait()
            except TimeoutError:
                pass
        _LOGGER.debug("Worker for %s stopped", worker.resource_id)
