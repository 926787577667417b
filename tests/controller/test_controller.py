"""Tests for the synchronization controller."""

from typing import Any

import pytest

from query_operator.auth import DatabaseConnection
from query_operator.config import OperatorConfig
from query_operator.controller import SyncController
from query_operator.exceptions import (
    PruneError,
    SourceConnectionError,
    SourceQueryError,
    StoreException,
)
from query_operator.manifest import (
    HTTP_QUERY_FINALIZER,
    MANAGED_BY_LABEL,
    ORIGINAL_ITEM_ANNOTATION,
    GroupVersionKind,
    ResourceKey,
)
from query_operator.store import InMemoryStore

from .. import (
    FakeSource,
    FakeSourceFactory,
    db_instance,
    db_secret,
    http_instance,
    secret,
)

CONFIGMAP = GroupVersionKind("", "v1", "ConfigMap")
RECORDS = [
    {"id": 1, "name": "one"},
    {"id": 2, "name": "two"},
    {"id": 3, "name": "three"},
]


def cm(name: str) -> ResourceKey:
    return ResourceKey("", "v1", "ConfigMap", "default", name)


def condition(obj: dict[str, Any], condition_type: str) -> dict[str, Any]:
    for item in obj["status"]["conditions"]:
        if item["type"] == condition_type:
            return item
    raise AssertionError(f"Condition {condition_type} not found in {obj['status']}")


async def configmap_names(store: InMemoryStore) -> list[str]:
    return [o["metadata"]["name"] for o in await store.list_objects(CONFIGMAP)]


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(records=list(RECORDS))


@pytest.fixture
def factory(source: FakeSource) -> FakeSourceFactory:
    return FakeSourceFactory(source)


@pytest.fixture
def controller(
    store: InMemoryStore, config: OperatorConfig, factory: FakeSourceFactory
) -> SyncController:
    return SyncController(store, config, source_factory=factory)


def add_instance(store: InMemoryStore, obj: dict[str, Any]) -> ResourceKey:
    return ResourceKey.from_object(store.add_object(obj))


async def test_instance_not_found(controller: SyncController) -> None:
    """Test reconciling an instance that does not exist."""
    assert await controller.reconcile(ResourceKey.from_object(http_instance())) is None


async def test_create_resources(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test every record creates a managed resource."""
    resource_id = add_instance(store, http_instance())

    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.succeeded
    assert outcome.requeue_after == 300
    assert outcome.managed_resources == [
        "v1/ConfigMap/default/item-1",
        "v1/ConfigMap/default/item-2",
        "v1/ConfigMap/default/item-3",
    ]
    assert source.closed

    instance = await store.get(resource_id)
    assert HTTP_QUERY_FINALIZER in instance["metadata"]["finalizers"]
    assert instance["status"]["managedResources"] == outcome.managed_resources
    assert instance["status"]["observedGeneration"] == 1
    assert instance["status"]["lastPollTime"]
    assert condition(instance, "Reconciled")["status"] == "True"
    assert condition(instance, "HTTPConnected")["reason"] == "Connected"
    assert condition(instance, "Pruned")["status"] == "True"

    live = await store.get(cm("item-2"))
    assert live["data"] == {"name": "two"}
    assert live["metadata"]["labels"][MANAGED_BY_LABEL] == "items"
    assert live["metadata"]["annotations"][ORIGINAL_ITEM_ANNOTATION] == '{"id":2,"name":"two"}'
    (owner_ref,) = live["metadata"]["ownerReferences"]
    assert owner_ref["uid"] == instance["metadata"]["uid"]
    assert owner_ref["controller"]


async def test_cycle_is_idempotent(store: InMemoryStore, controller: SyncController) -> None:
    """Test a second cycle with the same records changes no resource."""
    template = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: item-{{ Item.id }}
data:
  name: {{ Item.name | quote }}
---
apiVersion: v1
kind: Service
metadata:
  name: svc-{{ Item.id }}
spec:
  ports:
  - port: 80
"""
    resource_id = add_instance(store, http_instance(template=template))
    first = await controller.reconcile(resource_id)
    assert first is not None
    assert len(first.keys) == 6
    versions = {
        str(ResourceKey.from_object(o)): o["metadata"]["resourceVersion"]
        for o in await store.list_objects(namespace="default")
        if MANAGED_BY_LABEL in (o["metadata"].get("labels") or {})
    }
    assert len(versions) == 6

    second = await controller.reconcile(resource_id)
    assert second is not None
    assert second.succeeded
    assert second.keys == first.keys
    for obj in await store.list_objects(namespace="default"):
        if (key := str(ResourceKey.from_object(obj))) in versions:
            assert obj["metadata"]["resourceVersion"] == versions[key]


async def test_prune_removed_record(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a resource whose record disappeared is pruned."""
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)
    assert await configmap_names(store) == ["item-1", "item-2", "item-3"]

    source.records = [RECORDS[0], RECORDS[2]]
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.pruned == [cm("item-2")]
    assert await configmap_names(store) == ["item-1", "item-3"]
    instance = await store.get(resource_id)
    assert instance["status"]["managedResources"] == [
        "v1/ConfigMap/default/item-1",
        "v1/ConfigMap/default/item-3",
    ]
    assert condition(instance, "Pruned")["message"] == "Deleted 1 stale resources"


async def test_prune_disabled(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test resources are kept when pruning is disabled."""
    resource_id = add_instance(store, http_instance(prune=False))
    await controller.reconcile(resource_id)

    source.records = [RECORDS[0]]
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.pruned is None
    assert await configmap_names(store) == ["item-1", "item-2", "item-3"]
    instance = await store.get(resource_id)
    assert condition(instance, "Pruned")["reason"] == "PruneDisabled"


async def test_prune_ignores_unowned(
    store: InMemoryStore, controller: SyncController
) -> None:
    """Test resources not owned by the instance are never pruned."""
    store.add_object(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": "unrelated",
                "namespace": "default",
                "labels": {MANAGED_BY_LABEL: "items"},
            },
        }
    )
    await controller.reconcile(add_instance(store, http_instance()))
    assert "unrelated" in await configmap_names(store)


async def test_secret_not_found(
    store: InMemoryStore,
    controller: SyncController,
    source: FakeSource,
    factory: FakeSourceFactory,
) -> None:
    """Test a missing authentication Secret stops the cycle before fetching."""
    resource_id = add_instance(
        store,
        http_instance(
            http={
                "url": "https://api.example.com/items",
                "authenticationRef": {"name": "api-token", "type": "bearer"},
            }
        ),
    )
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert not outcome.succeeded
    assert outcome.requeue_after == 60
    assert factory.credentials == []
    assert source.fetches == 0

    instance = await store.get(resource_id)
    reconciled = condition(instance, "Reconciled")
    assert reconciled["status"] == "False"
    assert reconciled["reason"] == "SecretNotFound"
    assert "api-token" in reconciled["message"]
    assert condition(instance, "HTTPConnected")["status"] == "False"
    assert instance["status"]["managedResources"] == []


async def test_oauth2_missing_token_url(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test oauth2 without a token url fails before any request."""
    store.add_object(secret("api", {"clientId": "id", "clientSecret": "secret"}))
    resource_id = add_instance(
        store,
        http_instance(
            http={
                "url": "https://api.example.com/items",
                "authenticationRef": {"name": "api", "type": "oauth2"},
            }
        ),
    )
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert source.fetches == 0
    instance = await store.get(resource_id)
    reconciled = condition(instance, "Reconciled")
    assert reconciled["reason"] == "CredentialError"
    assert "tokenUrl" in reconciled["message"]


async def test_record_render_error(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a record that fails to render is skipped and reported."""
    source.records = [RECORDS[0], {"id": 2}, RECORDS[2]]
    resource_id = add_instance(store, http_instance())

    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert not outcome.succeeded
    assert len(outcome.record_errors) == 1
    assert outcome.record_errors[0].startswith("record 1:")
    assert await configmap_names(store) == ["item-1", "item-3"]

    instance = await store.get(resource_id)
    reconciled = condition(instance, "Reconciled")
    assert reconciled["status"] == "False"
    assert reconciled["reason"] == "ProcessingError"
    assert reconciled["message"].startswith("record 1:")
    assert instance["status"]["managedResources"] == [
        "v1/ConfigMap/default/item-1",
        "v1/ConfigMap/default/item-3",
    ]
    assert "observedGeneration" not in instance["status"]


async def test_all_records_fail(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test pruning is skipped when every record fails."""
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)

    source.records = [{"id": 1}, {"id": 2}]
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.fatal_error is not None
    assert "All 2 records failed" in str(outcome.fatal_error)
    assert outcome.pruned is None
    assert await configmap_names(store) == ["item-1", "item-2", "item-3"]
    instance = await store.get(resource_id)
    assert len(instance["status"]["managedResources"]) == 3
    assert condition(instance, "Reconciled")["status"] == "False"


async def test_no_records(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test an empty result prunes every managed resource."""
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)

    source.records = []
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.succeeded
    assert await configmap_names(store) == []


async def test_cross_namespace_resource(
    store: InMemoryStore, controller: SyncController
) -> None:
    """Test a record rendering into another namespace is an error."""
    template = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: item-{{ Item.id }}
  namespace: {{ "other" if Item.id == 2 else "default" }}
"""
    outcome = await controller.reconcile(
        add_instance(store, http_instance(template=template))
    )
    assert outcome is not None
    assert "cross-namespace" in outcome.record_errors[0]
    assert await configmap_names(store) == ["item-1", "item-3"]


async def test_record_helper_error(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a helper failing on one record only skips that record."""
    template = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: item-{{ Item.id }}
data:
  when: "{{ Item.when | date }}"
"""
    source.records = [
        {"id": 1, "when": "2024-01-02T03:04:05Z"},
        {"id": 2, "when": 5},
        {"id": 3, "when": "2024-03-04"},
    ]
    resource_id = add_instance(store, http_instance(template=template))

    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert len(outcome.record_errors) == 1
    assert outcome.record_errors[0].startswith("record 1:")
    assert await configmap_names(store) == ["item-1", "item-3"]
    item = await store.get(cm("item-1"))
    assert item["data"] == {"when": "2024-01-02"}
    assert condition(await store.get(resource_id), "Reconciled")["status"] == "False"


async def test_record_invalid_metadata(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a record rendering labels that are not a mapping is skipped."""
    template = (
        '{"apiVersion": "v1", "kind": "ConfigMap", "metadata": '
        '{"name": "item-{{ Item.id }}", "labels": {{ Item.labels | toJson }}}}'
    )
    source.records = [
        {"id": 1, "labels": {"a": "b"}},
        {"id": 2, "labels": ["x"]},
        {"id": 3, "labels": {"a": "c"}},
    ]
    resource_id = add_instance(store, http_instance(template=template))

    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.record_errors == [
        "record 1: Rendered ConfigMap metadata.labels must be a mapping"
    ]
    assert await configmap_names(store) == ["item-1", "item-3"]
    labels = (await store.get(cm("item-3")))["metadata"]["labels"]
    assert labels == {"a": "c", MANAGED_BY_LABEL: "items"}


async def test_record_apply_error(
    config: OperatorConfig, factory: FakeSourceFactory
) -> None:
    """Test a resource the store rejects does not block the other records."""

    class RejectingStore(InMemoryStore):
        async def apply(
            self, obj: dict[str, Any], field_manager: str, force: bool = True
        ) -> dict[str, Any]:
            if obj["metadata"]["name"] == "item-2":
                raise StoreException("admission webhook denied item-2")
            return await super().apply(obj, field_manager, force=force)

    store = RejectingStore()
    controller = SyncController(store, config, source_factory=factory)
    resource_id = add_instance(store, http_instance())

    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert not outcome.succeeded
    assert outcome.fatal_error is None
    assert len(outcome.record_errors) == 1
    assert outcome.record_errors[0].startswith("record 1:")
    assert "admission webhook denied" in outcome.record_errors[0]
    assert await configmap_names(store) == ["item-1", "item-3"]

    instance = await store.get(resource_id)
    reconciled = condition(instance, "Reconciled")
    assert reconciled["status"] == "False"
    assert reconciled["reason"] == "ProcessingError"
    assert "admission webhook denied" in reconciled["message"]


async def test_template_syntax_error(
    store: InMemoryStore, controller: SyncController
) -> None:
    """Test a template that does not compile fails the cycle."""
    resource_id = add_instance(store, http_instance(template="{{ Item.name "))
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.requeue_after == 300
    instance = await store.get(resource_id)
    assert condition(instance, "Reconciled")["reason"] == "TemplateError"
    assert condition(instance, "HTTPConnected")["status"] == "True"


async def test_source_error(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a source that cannot be reached."""
    source.error = SourceConnectionError("connection refused")
    resource_id = add_instance(store, http_instance())
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.requeue_after == 300
    instance = await store.get(resource_id)
    assert condition(instance, "Reconciled")["reason"] == "SourceConnectionFailed"
    connected = condition(instance, "HTTPConnected")
    assert connected["status"] == "False"
    assert connected["message"] == "connection refused"


async def test_invalid_poll_interval(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test an invalid poll interval is not requeued."""
    resource_id = add_instance(store, http_instance(poll_interval="soon"))
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.requeue_after is None
    assert source.fetches == 0
    instance = await store.get(resource_id)
    assert condition(instance, "Reconciled")["reason"] == "InvalidSpec"


async def test_invalid_spec(store: InMemoryStore, controller: SyncController) -> None:
    """Test an instance that cannot be parsed reports the error."""
    obj = http_instance()
    del obj["spec"]["template"]
    resource_id = add_instance(store, obj)
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.requeue_after is None
    instance = await store.get(resource_id)
    reconciled = condition(instance, "Reconciled")
    assert reconciled["reason"] == "InvalidSpec"
    assert "spec.template" in reconciled["message"]


async def test_long_error_message_truncated(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test condition messages are bounded."""
    source.error = SourceQueryError("x" * 5000)
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)
    instance = await store.get(resource_id)
    message = condition(instance, "Reconciled")["message"]
    assert len(message) == 1024
    assert message.endswith("...")


async def test_delete_with_finalizer(
    store: InMemoryStore, controller: SyncController
) -> None:
    """Test deleting an instance removes its resources then the finalizer."""
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)
    await store.delete(resource_id)
    assert (await store.get(resource_id))["metadata"]["deletionTimestamp"]

    assert await controller.reconcile(resource_id) is None
    assert await configmap_names(store) == []
    with pytest.raises(StoreException):
        await store.get(resource_id)


async def test_delete_without_finalizer(
    store: InMemoryStore, config: OperatorConfig, factory: FakeSourceFactory
) -> None:
    """Test resources are not cleaned up without the finalizer."""
    controller = SyncController(
        store,
        OperatorConfig(request_timeout=5.0, manage_finalizers=False),
        source_factory=factory,
    )
    resource_id = add_instance(store, http_instance(finalizers=["example.com/hold"]))
    await controller.reconcile(resource_id)
    await store.delete(resource_id)

    assert await controller.reconcile(resource_id) is None
    assert await configmap_names(store) == ["item-1", "item-2", "item-3"]
    instance = await store.get(resource_id)
    assert instance["metadata"]["finalizers"] == ["example.com/hold"]


async def test_delete_failure_keeps_finalizer(
    config: OperatorConfig, factory: FakeSourceFactory
) -> None:
    """Test the finalizer is kept when a resource cannot be deleted."""

    class FailingStore(InMemoryStore):
        async def delete(self, resource_id: ResourceKey) -> None:
            if resource_id.kind == "ConfigMap":
                raise StoreException("forbidden")
            await super().delete(resource_id)

    store = FailingStore()
    controller = SyncController(store, config, source_factory=factory)
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)
    await store.delete(resource_id)

    with pytest.raises(PruneError, match="forbidden"):
        await controller.reconcile(resource_id)
    instance = await store.get(resource_id)
    assert instance["metadata"]["finalizers"] == [HTTP_QUERY_FINALIZER]


STATUS_UPDATE = {
    "url": "https://api.example.com/items/{{ Item.id }}",
    "bodyTemplate": '{"resource": "{{ Resource.metadata.name }}", "uid": "{{ Resource.metadata.uid }}"}',
    "method": "PUT",
    "headers": {"X-Source": "query-operator"},
}


async def test_http_write_back(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test the live state of every resource is sent back to the API."""
    resource_id = add_instance(store, http_instance(status_update=STATUS_UPDATE))
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.write_back_errors == []

    assert [p.url for p in source.executed] == [
        "https://api.example.com/items/1",
        "https://api.example.com/items/2",
        "https://api.example.com/items/3",
    ]
    payload = source.executed[0]
    live = await store.get(cm("item-1"))
    assert payload.body == f'{{"resource": "item-1", "uid": "{live["metadata"]["uid"]}"}}'
    assert payload.method == "PUT"
    assert payload.headers == {"X-Source": "query-operator"}

    instance = await store.get(resource_id)
    assert condition(instance, "StatusUpdated")["reason"] == "StatusUpdateSuccess"


async def test_http_write_back_failure(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test write-back failures do not fail the cycle."""
    source.execute_error = SourceQueryError("HTTP request failed with status 500")
    resource_id = add_instance(store, http_instance(status_update=STATUS_UPDATE))
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.succeeded
    assert outcome.write_back_errors is not None
    assert len(outcome.write_back_errors) == 3

    instance = await store.get(resource_id)
    assert condition(instance, "Reconciled")["status"] == "True"
    updated = condition(instance, "StatusUpdated")
    assert updated["status"] == "False"
    assert "status 500" in updated["message"]


async def test_database_write_back(
    store: InMemoryStore,
    controller: SyncController,
    source: FakeSource,
    factory: FakeSourceFactory,
) -> None:
    """Test a database instance runs the status update statement per resource."""
    store.add_object(db_secret())
    resource_id = add_instance(
        store,
        db_instance(
            status_update_query_template=(
                "UPDATE items SET synced = '{{ Resource.metadata.name }}' WHERE id = {{ Item.id }}"
            )
        ),
    )
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert outcome.succeeded

    (credentials,) = factory.credentials
    assert isinstance(credentials, DatabaseConnection)
    assert credentials.dbname == "inventory"
    assert [p.body for p in source.executed] == [
        "UPDATE items SET synced = 'item-1' WHERE id = 1",
        "UPDATE items SET synced = 'item-2' WHERE id = 2",
        "UPDATE items SET synced = 'item-3' WHERE id = 3",
    ]
    instance = await store.get(resource_id)
    assert condition(instance, "DBConnected")["status"] == "True"


async def test_database_secret_missing_key(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test a connection Secret missing a key."""
    broken = db_secret()
    del broken["data"]["dbname"]
    store.add_object(broken)
    resource_id = add_instance(store, db_instance())
    outcome = await controller.reconcile(resource_id)
    assert outcome is not None
    assert source.fetches == 0
    assert outcome.requeue_after == 60
    instance = await store.get(resource_id)
    assert condition(instance, "Reconciled")["reason"] == "CredentialError"
    assert condition(instance, "DBConnected")["status"] == "False"


async def test_write_back_for_changed_resource(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test writing back a single resource outside of a cycle."""
    resource_id = add_instance(store, http_instance(status_update=STATUS_UPDATE))
    await controller.reconcile(resource_id)
    source.executed.clear()

    errors = await controller.write_back(resource_id, [cm("item-2"), cm("missing")])
    assert errors == []
    assert [p.url for p in source.executed] == ["https://api.example.com/items/2"]


async def test_write_back_disabled(
    store: InMemoryStore, controller: SyncController, source: FakeSource
) -> None:
    """Test no write-back runs for an instance without a status update."""
    resource_id = add_instance(store, http_instance())
    await controller.reconcile(resource_id)
    assert await controller.write_back(resource_id, [cm("item-1")]) is None
    assert source.executed == []
