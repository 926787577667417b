"""Test helpers for query-operator."""

import base64
from typing import Any

from query_operator.config import OperatorConfig
from query_operator.manifest import API_VERSION, SyncSpec
from query_operator.record import Record
from query_operator.source import DataSource, WriteBackPayload
from query_operator.source.base import Credentials

NAMESPACE = "default"

CONFIGMAP_TEMPLATE = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: item-{{ Item.id }}
data:
  name: "{{ Item.name }}"
"""


def secret(name: str, values: dict[str, str], namespace: str = NAMESPACE) -> dict[str, Any]:
    """Return a Secret with base64 encoded data."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": name, "namespace": namespace},
        "data": {
            key: base64.b64encode(value.encode()).decode() for key, value in values.items()
        },
    }


def http_instance(
    name: str = "items",
    template: str = CONFIGMAP_TEMPLATE,
    poll_interval: str = "5m",
    prune: bool | None = None,
    http: dict[str, Any] | None = None,
    status_update: dict[str, Any] | None = None,
    finalizers: list[str] | None = None,
) -> dict[str, Any]:
    """Return an HTTPQueryResource object."""
    spec: dict[str, Any] = {
        "pollInterval": poll_interval,
        "http": http or {"url": "https://api.example.com/items"},
        "template": template,
    }
    if prune is not None:
        spec["prune"] = prune
    if status_update is not None:
        spec["statusUpdate"] = status_update
    metadata: dict[str, Any] = {"name": name, "namespace": NAMESPACE}
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    return {
        "apiVersion": API_VERSION,
        "kind": "HTTPQueryResource",
        "metadata": metadata,
        "spec": spec,
    }


def db_instance(
    name: str = "rows",
    template: str = CONFIGMAP_TEMPLATE.replace("Item.", "Row."),
    query: str = "SELECT id, name FROM items",
    secret_name: str = "db",
    status_update_query_template: str | None = None,
) -> dict[str, Any]:
    """Return a DatabaseQueryResource object."""
    spec: dict[str, Any] = {
        "pollInterval": "1m",
        "database": {"connectionSecretRef": {"name": secret_name}},
        "query": query,
        "template": template,
    }
    if status_update_query_template is not None:
        spec["statusUpdateQueryTemplate"] = status_update_query_template
    return {
        "apiVersion": API_VERSION,
        "kind": "DatabaseQueryResource",
        "metadata": {"name": name, "namespace": NAMESPACE},
        "spec": spec,
    }


def db_secret(name: str = "db") -> dict[str, Any]:
    return secret(
        name,
        {
            "host": "db.example.com",
            "port": "5432",
            "username": "app",
            "password": "s3cret",
            "dbname": "inventory",
        },
    )


class FakeSource(DataSource):
    """A data source returning fixed records and recording write-backs."""

    def __init__(
        self,
        records: list[dict[str, Any]] | None = None,
        error: Exception | None = None,
        execute_error: Exception | None = None,
    ) -> None:
        self.records = records or []
        self.error = error
        self.execute_error = execute_error
        self.executed: list[WriteBackPayload] = []
        self.fetches = 0
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def fetch(self) -> list[Record]:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return [Record(record) for record in self.records]

    async def execute(self, payload: WriteBackPayload) -> None:
        if self.execute_error is not None:
            raise self.execute_error
        self.executed.append(payload)


class FakeSourceFactory:
    """Source factory handing out a single FakeSource."""

    def __init__(self, source: FakeSource) -> None:
        self.source = source
        self.credentials: list[Credentials] = []

    def __call__(
        self, spec: SyncSpec, credentials: Credentials, config: OperatorConfig
    ) -> DataSource:
        self.credentials.append(credentials)
        return self.source
