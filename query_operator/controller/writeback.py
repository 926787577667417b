"""Report the live state of managed resources back to the data source."""

import asyncio
from collections.abc import Iterable
import logging
from typing import Any

from query_operator.auth import AuthResolver, CredentialBundle
from query_operator.config import OperatorConfig
from query_operator.exceptions import (
    CredentialError,
    ObjectNotFoundError,
    QueryOperatorException,
    StoreException,
    TemplateException,
    WriteBackError,
)
from query_operator.manifest import (
    MANAGED_BY_LABEL,
    ORIGINAL_ITEM_ANNOTATION,
    DatabaseQueryResource,
    HTTPQueryResource,
    ResourceKey,
    SyncSpec,
    get_annotations,
    get_labels,
)
from query_operator.record import Record
from query_operator.source import DataSource, WriteBackPayload
from query_operator.store import Store
from query_operator.template import TemplateRenderer

__all__ = ["WriteBack"]

_LOGGER = logging.getLogger(__name__)


class _PayloadBuilder:
    """Renders write-back payloads for one instance."""

    def __init__(self, spec: SyncSpec, credentials: CredentialBundle | None) -> None:
        self._credentials = credentials
        self._url: TemplateRenderer | None = None
        self._method: str | None = None
        self._headers: dict[str, str] = {}
        if isinstance(spec, DatabaseQueryResource):
            self._body = TemplateRenderer(
                spec.status_update_query_template or "", name="statusUpdateQueryTemplate"
            )
        elif isinstance(spec, HTTPQueryResource) and spec.status_update is not None:
            update = spec.status_update
            self._body = TemplateRenderer(update.body_template, name="statusUpdate.bodyTemplate")
            self._url = TemplateRenderer(update.url, name="statusUpdate.url")
            self._method = update.method
            self._headers = dict(update.headers or {})
        else:
            raise TemplateException(f"{spec.kind} has no status update configured")

    def build(self, live: dict[str, Any], record: Record) -> WriteBackPayload:
        item = record.to_dict()
        context = {"Resource": live, "Item": item, "Row": item}
        return WriteBackPayload(
            body=self._body.render(context),
            url=self._url.render(context).strip() if self._url is not None else None,
            method=self._method,
            headers=self._headers,
            credentials=self._credentials,
        )


class WriteBack:
    """Executes the status update template for managed resources."""

    def __init__(
        self, store: Store, config: OperatorConfig, auth: AuthResolver
    ) -> None:
        self._store = store
        self._config = config
        self._auth = auth

    async def _credentials(self, spec: SyncSpec) -> CredentialBundle | None:
        if isinstance(spec, HTTPQueryResource) and spec.status_update is not None:
            if (ref := spec.status_update.authentication_ref) is not None:
                return await self._auth.resolve(ref, spec.namespace)
        return None

    def _is_eligible(self, spec: SyncSpec, live: dict[str, Any]) -> bool:
        return (
            get_labels(live).get(MANAGED_BY_LABEL) == spec.name
            and ORIGINAL_ITEM_ANNOTATION in get_annotations(live)
        )

    async def _update(
        self,
        builder: _PayloadBuilder,
        source: DataSource,
        resource_id: ResourceKey,
        live: dict[str, Any],
    ) -> None:
        """Send the status update for one resource.

        Raises:
            WriteBackError: If the payload could not be rendered or sent.
        """
        record = Record.from_json(get_annotations(live).get(ORIGINAL_ITEM_ANNOTATION))
        try:
            payload = builder.build(live, record)
            async with asyncio.timeout(self._config.request_timeout):
                await source.execute(payload)
        except TimeoutError as err:
            raise WriteBackError(f"Status update for {resource_id} timed out") from err
        except QueryOperatorException as err:
            raise WriteBackError(
                f"Status update for {resource_id} failed: {err}"
            ) from err

    async def run(
        self, spec: SyncSpec, keys: Iterable[ResourceKey], source: DataSource
    ) -> list[str]:
        """Write back the state of each managed resource.

        Returns the messages of the write-backs that failed. A resource that
        no longer exists is skipped.
        """
        try:
            builder = _PayloadBuilder(spec, await self._credentials(spec))
        except (CredentialError, TemplateException) as err:
            _LOGGER.error("Failed to prepare status updates for %s: %s", spec.resource_id, err)
            return [f"Failed to prepare status updates: {err}"]

        errors: list[str] = []
        for resource_id in keys:
            try:
                async with asyncio.timeout(self._config.request_timeout):
                    live = await self._store.get(resource_id)
            except ObjectNotFoundError:
                _LOGGER.debug("Resource %s not found for status update, skipping", resource_id)
                continue
            except (StoreException, TimeoutError) as err:
                errors.append(f"{resource_id}: {err or 'timed out'}")
                continue
            if not self._is_eligible(spec, live):
                _LOGGER.debug("Resource %s is not eligible for status update", resource_id)
                continue
            try:
                await self._update(builder, source, resource_id, live)
            except WriteBackError as err:
                _LOGGER.error("%s", err)
                errors.append(str(err))
                continue
            _LOGGER.debug("Sent status update for %s", resource_id)
        return errors
