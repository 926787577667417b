"""
Synchronization controller implementation.

This controller runs a single cycle for an instance: it resolves the source
credentials, fetches the records, renders and materializes the resources for
each record, applies them, prunes the resources that are no longer produced,
writes back the live state when configured and reports the outcome as status
conditions.

Key Concepts:
    - Instance: A DatabaseQueryResource or HTTPQueryResource in the store.
    - Record: One row or item fetched from the data source.
    - Managed resource: A resource created for a record, labeled and owned
      by the instance.

Errors at the cycle level (invalid spec, credentials, source, template syntax)
skip straight to reporting. Errors for a single record are collected and the
remaining records are still applied.
"""

import asyncio
import logging
from typing import Any

from query_operator.auth import AuthResolver
from query_operator.config import OperatorConfig
from query_operator.context import (
    APPLYING,
    FETCHING,
    PRUNING,
    RENDERING,
    REPORTING,
    WRITING_BACK,
    cycle_phase,
)
from query_operator.exceptions import (
    ConflictError,
    CredentialError,
    InputException,
    InvalidSpecError,
    ObjectNotFoundError,
    PruneError,
    QueryOperatorException,
    SourceConnectionError,
    SourceException,
    StoreException,
    WholeTemplateParseError,
)
from query_operator.manifest import (
    CONDITION_RECONCILED,
    PARSE_ERRORS,
    DatabaseQueryResource,
    HTTPQueryResource,
    ResourceKey,
    SyncSpec,
    SyncStatus,
    is_sync_spec,
    parse_duration,
    parse_sync_spec,
)
from query_operator.materializer import materialize
from query_operator.apply import apply_resource
from query_operator.prune import collect_owned, prune_stale
from query_operator.record import Record
from query_operator.source import DataSource, SourceFactory, create_source
from query_operator.source.base import Credentials
from query_operator.status import (
    CycleOutcome,
    StatusTracker,
    reason_for,
    set_condition,
    truncate_message,
)
from query_operator.store import Store
from query_operator.template import TemplateRenderer

from .deletion import DeletionCoordinator
from .writeback import WriteBack

__all__ = ["SyncController"]

_LOGGER = logging.getLogger(__name__)


class SyncController:
    """
    Controller for reconciling synchronization instances.

    The controller itself holds no per instance state: every cycle reads the
    instance from the store, so a changed spec is picked up by re-rendering
    everything rather than diffing configuration.
    """

    def __init__(
        self,
        store: Store,
        config: OperatorConfig,
        source_factory: SourceFactory = create_source,
    ) -> None:
        """
        Initialize the controller with a store.

        Args:
            store: The cluster store holding instances, secrets and managed resources
            config: The operator configuration
            source_factory: Creates the data source for an instance
        """
        self._store = store
        self._config = config
        self._source_factory = source_factory
        self._auth = AuthResolver(store, config)
        self._status = StatusTracker(store, config)
        self._deletion = DeletionCoordinator(store, config)
        self._write_back = WriteBack(store, config, self._auth)

    async def _get(self, resource_id: ResourceKey) -> dict[str, Any]:
        async with asyncio.timeout(self._config.request_timeout):
            return await self._store.get(resource_id)

    async def reconcile(self, resource_id: ResourceKey) -> CycleOutcome | None:
        """
        Reconcile an instance.

        Returns the outcome of the cycle, or None when no cycle ran because
        the instance is gone or is being deleted.

        Raises:
            PruneError: If cleanup of a deleted instance failed.
        """
        try:
            obj = await self._get(resource_id)
        except ObjectNotFoundError:
            _LOGGER.info("Instance %s not found, ignoring since it must be deleted", resource_id)
            return None

        try:
            spec = parse_sync_spec(obj)
        except InputException as err:
            _LOGGER.error("Invalid instance %s: %s", resource_id, err)
            await self._report_invalid(obj, err)
            return CycleOutcome(fatal_error=err)

        if spec.deletion_requested:
            _LOGGER.info("Handling deletion of %s", resource_id)
            await self._deletion.handle(spec)
            return None

        if self._config.manage_finalizers and not spec.has_finalizer:
            if (spec := await self._add_finalizer(spec)) is None:
                return None

        _LOGGER.info("Reconciling %s", resource_id)
        outcome = await self._run_cycle(spec)
        with cycle_phase(REPORTING):
            status = self._status.build_status(spec, outcome)
            try:
                await self._status.write(spec, status)
            except (StoreException, TimeoutError) as err:
                _LOGGER.error("Failed to update status of %s: %s", resource_id, err)
        if outcome.succeeded:
            _LOGGER.info(
                "Reconciled %s with %d resources", resource_id, len(outcome.keys)
            )
        else:
            _LOGGER.error(
                "Failed to reconcile %s: %s",
                resource_id,
                truncate_message(outcome.error_message(), self._config.max_condition_message_length),
            )
        return outcome

    async def _report_invalid(self, obj: dict[str, Any], err: Exception) -> None:
        """Record a spec that could not be parsed on the raw object."""
        if not is_sync_spec(obj):
            return
        try:
            status = SyncStatus.from_dict(obj.get("status") or {})
        except PARSE_ERRORS:
            status = SyncStatus()
        generation = (obj.get("metadata") or {}).get("generation")
        set_condition(
            status.conditions,
            CONDITION_RECONCILED,
            False,
            reason_for(err),
            truncate_message(str(err), self._config.max_condition_message_length),
            observed_generation=generation,
        )
        obj = dict(obj)
        obj["status"] = status.to_dict()
        obj.get("metadata", {}).pop("resourceVersion", None)
        try:
            async with asyncio.timeout(self._config.request_timeout):
                await self._store.update_status(obj)
        except (StoreException, TimeoutError) as status_err:
            _LOGGER.error("Failed to update status of invalid instance: %s", status_err)

    async def _add_finalizer(self, spec: SyncSpec) -> SyncSpec | None:
        """Add the finalizer to the instance, returning the updated spec."""
        resource_id = spec.resource_id
        for attempt in range(self._config.status_update_retries):
            try:
                live = await self._get(resource_id)
                finalizers = live["metadata"].setdefault("finalizers", [])
                if spec.finalizer not in finalizers:
                    finalizers.append(spec.finalizer)
                    async with asyncio.timeout(self._config.request_timeout):
                        live = await self._store.update(live)
                    _LOGGER.info("Added finalizer to %s", resource_id)
                return parse_sync_spec(live)
            except ObjectNotFoundError:
                return None
            except ConflictError:
                _LOGGER.debug("Conflict adding finalizer to %s (attempt %d)", resource_id, attempt + 1)
        raise ConflictError(f"Failed to add finalizer to {resource_id}")

    async def _resolve_credentials(self, spec: SyncSpec) -> Credentials:
        if isinstance(spec, DatabaseQueryResource):
            return await self._auth.resolve_database_connection(
                spec.database.connection_secret_ref, spec.namespace
            )
        if isinstance(spec, HTTPQueryResource) and spec.http.authentication_ref:
            return await self._auth.resolve(spec.http.authentication_ref, spec.namespace)
        return None

    async def _run_cycle(self, spec: SyncSpec) -> CycleOutcome:
        outcome = CycleOutcome(prune_enabled=spec.prune)
        try:
            poll_interval = parse_duration(spec.poll_interval)
        except InvalidSpecError as err:
            outcome.fatal_error = err
            return outcome
        outcome.requeue_after = poll_interval

        with cycle_phase(FETCHING):
            try:
                credentials = await self._resolve_credentials(spec)
                source = self._source_factory(spec, credentials, self._config)
            except CredentialError as err:
                outcome.fatal_error = err
                outcome.connected = False
                outcome.requeue_after = self._config.recoverable_requeue_interval
                return outcome
            except SourceException as err:
                outcome.fatal_error = err
                outcome.connected = False
                return outcome
            except (StoreException, TimeoutError) as err:
                outcome.fatal_error = SourceConnectionError(
                    f"Failed to resolve credentials: {err or 'timed out'}"
                )
                outcome.connected = False
                return outcome

        try:
            async with source:
                await self._sync(spec, source, outcome)
        except SourceException as err:
            if outcome.fatal_error is None:
                outcome.fatal_error = err
                outcome.connected = False
        return outcome

    async def _fetch(self, source: DataSource) -> list[Record]:
        try:
            async with asyncio.timeout(self._config.request_timeout):
                return await source.fetch()
        except TimeoutError as err:
            raise SourceConnectionError("Timed out fetching records") from err

    async def _sync(
        self, spec: SyncSpec, source: DataSource, outcome: CycleOutcome
    ) -> None:
        with cycle_phase(FETCHING):
            try:
                records = await self._fetch(source)
            except SourceException as err:
                outcome.fatal_error = err
                outcome.connected = False
                return
        outcome.connected = True
        outcome.record_count = len(records)
        _LOGGER.info("Fetched %d records for %s", len(records), spec.resource_id)

        with cycle_phase(RENDERING):
            try:
                renderer = TemplateRenderer(spec.template)
            except WholeTemplateParseError as err:
                outcome.fatal_error = err
                return
            rendered, failed = self._render(spec, renderer, records, outcome)

        outcome.reached_apply = True
        outcome.keys = sorted(rendered)
        with cycle_phase(APPLYING):
            failed |= await self._apply(rendered, outcome)

        if records and len(failed) == len(records):
            outcome.fatal_error = QueryOperatorException(
                f"All {len(records)} records failed: {'; '.join(outcome.record_errors)}"
            )
            _LOGGER.error("All records failed for %s, skipping prune", spec.resource_id)
        elif spec.prune:
            with cycle_phase(PRUNING):
                await self._prune(spec, outcome)

        if spec.write_back_enabled:
            with cycle_phase(WRITING_BACK):
                outcome.write_back_errors = await self._write_back.run(
                    spec, outcome.keys, source
                )

    def _render(
        self,
        spec: SyncSpec,
        renderer: TemplateRenderer,
        records: list[Record],
        outcome: CycleOutcome,
    ) -> tuple[dict[ResourceKey, tuple[int, dict[str, Any]]], set[int]]:
        """Render and materialize every record, isolating failures per record."""
        rendered: dict[ResourceKey, tuple[int, dict[str, Any]]] = {}
        failed: set[int] = set()
        for index, record in enumerate(records):
            try:
                docs = renderer.render_record(record.to_dict(), index)
                materialized = [materialize(doc, spec, record) for doc in docs]
            except QueryOperatorException as err:
                _LOGGER.error("Failed to render record %d for %s: %s", index, spec.resource_id, err)
                outcome.record_errors.append(f"record {index}: {err}")
                failed.add(index)
                continue
            for resource_id, obj in materialized:
                if resource_id in rendered:
                    _LOGGER.warning(
                        "Record %d renders %s again, the last rendered resource wins",
                        index,
                        resource_id,
                    )
                rendered[resource_id] = (index, obj)
        return rendered, failed

    async def _apply(
        self,
        rendered: dict[ResourceKey, tuple[int, dict[str, Any]]],
        outcome: CycleOutcome,
    ) -> set[int]:
        """Apply every rendered resource, returning the records with no applied resource."""
        applied: set[int] = set()
        attempted: set[int] = set()
        for resource_id, (index, obj) in rendered.items():
            attempted.add(index)
            try:
                result = await apply_resource(self._store, obj, self._config)
            except QueryOperatorException as err:
                _LOGGER.error("Failed to apply %s: %s", resource_id, err)
                outcome.record_errors.append(f"record {index}: {err}")
                continue
            _LOGGER.debug("Apply %s: %s", resource_id, result.value)
            applied.add(index)
        return attempted - applied

    async def _prune(self, spec: SyncSpec, outcome: CycleOutcome) -> None:
        try:
            owned = await collect_owned(
                self._store, spec, self._config.watched_kinds, self._config
            )
        except PruneError as err:
            _LOGGER.error("Failed to list managed resources of %s: %s", spec.resource_id, err)
            outcome.prune_errors.append(str(err))
            return
        deleted, errors = await prune_stale(self._store, owned, outcome.keys, self._config)
        outcome.pruned = deleted
        outcome.prune_errors.extend(errors)
        if deleted:
            _LOGGER.info("Pruned %d stale resources of %s", len(deleted), spec.resource_id)

    async def write_back(
        self, resource_id: ResourceKey, children: list[ResourceKey]
    ) -> list[str] | None:
        """Write back the state of managed resources outside of a cycle.

        This runs when a managed resource changes. Returns the write-back
        errors, or None when the instance does not write back.
        """
        try:
            spec = parse_sync_spec(await self._get(resource_id))
        except ObjectNotFoundError:
            return None
        except InputException as err:
            _LOGGER.debug("Skipping write-back for invalid instance %s: %s", resource_id, err)
            return None
        if not spec.write_back_enabled or spec.deletion_requested:
            return None

        with cycle_phase(WRITING_BACK):
            try:
                credentials: Credentials = None
                if isinstance(spec, DatabaseQueryResource):
                    credentials = await self._resolve_credentials(spec)
                source = self._source_factory(spec, credentials, self._config)
                async with source:
                    errors = await self._write_back.run(spec, children, source)
            except (CredentialError, SourceException) as err:
                _LOGGER.error("Status update for %s failed: %s", resource_id, err)
                errors = [str(err)]

        with cycle_phase(REPORTING):
            status = SyncStatus.from_dict(spec.status.to_dict())
            self._status.set_write_back(status, errors, spec.generation)
            try:
                await self._status.write(spec, status)
            except (StoreException, TimeoutError) as err:
                _LOGGER.error("Failed to update status of %s: %s", resource_id, err)
        return errors
