"""Representation of the objects exchanged with the cluster store.

Managed resources are kept as plain unstructured dictionaries since their
schema is whatever the user template renders. The instances that drive the
control loop (DatabaseQueryResource and HTTPQueryResource) are parsed into
typed objects at the start of every cycle.
"""

from dataclasses import dataclass, field
import logging
import re
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import ConfigurationError, InputException, InvalidSpecError

__all__ = [
    "GroupVersionKind",
    "ResourceKey",
    "parse_gvks",
    "parse_duration",
    "SyncSpec",
    "DatabaseQueryResource",
    "HTTPQueryResource",
    "Condition",
    "SyncStatus",
    "parse_sync_spec",
]

_LOGGER = logging.getLogger(__name__)


API_GROUP = "konnektr.io"
API_VERSION = f"{API_GROUP}/v1alpha1"
DATABASE_QUERY_KIND = "DatabaseQueryResource"
HTTP_QUERY_KIND = "HTTPQueryResource"
SYNC_SPEC_KINDS = (DATABASE_QUERY_KIND, HTTP_QUERY_KIND)
SECRET_KIND = "Secret"

MANAGED_BY_LABEL = "konnektr.io/managed-by"
ORIGINAL_ITEM_ANNOTATION = "konnektr.io/original-item"
DATABASE_QUERY_FINALIZER = "konnektr.io/databasequeryresource-finalizer"
HTTP_QUERY_FINALIZER = "konnektr.io/httpqueryresource-finalizer"

# Errors raised by mashumaro when a document does not match a dataclass
PARSE_ERRORS = (MissingField, InvalidFieldValue, TypeError, ValueError)

CONDITION_RECONCILED = "Reconciled"
CONDITION_DB_CONNECTED = "DBConnected"
CONDITION_HTTP_CONNECTED = "HTTPConnected"
CONDITION_PRUNED = "Pruned"
CONDITION_STATUS_UPDATED = "StatusUpdated"

DEFAULT_DATABASE_TYPE = "postgres"


@dataclass(frozen=True, order=True)
class GroupVersionKind:
    """Identifier for a kind of kubernetes resource."""

    group: str
    version: str
    kind: str

    @property
    def api_version(self) -> str:
        """Return the apiVersion string, omitting the core group."""
        if self.group:
            return f"{self.group}/{self.version}"
        return self.version

    @classmethod
    def from_api_version(cls, api_version: str, kind: str) -> "GroupVersionKind":
        """Create from an apiVersion string like `apps/v1` or `v1`."""
        group, _, version = api_version.rpartition("/")
        return cls(group=group, version=version, kind=kind)

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind}"


SECRET_GVK = GroupVersionKind("", "v1", SECRET_KIND)


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a kubernetes resource, unique within the store."""

    group: str
    version: str
    kind: str
    namespace: str | None
    name: str

    @property
    def gvk(self) -> GroupVersionKind:
        return GroupVersionKind(self.group, self.version, self.kind)

    @property
    def api_version(self) -> str:
        return self.gvk.api_version

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "ResourceKey":
        """Return the identity of an unstructured object."""
        if not (api_version := obj.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {obj}")
        if not (kind := obj.get("kind")):
            raise InputException(f"Invalid object missing kind: {obj}")
        metadata = obj.get("metadata") or {}
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {obj}")
        gvk = GroupVersionKind.from_api_version(api_version, kind)
        return cls(
            group=gvk.group,
            version=gvk.version,
            kind=kind,
            namespace=metadata.get("namespace") or None,
            name=name,
        )

    @classmethod
    def for_gvk(
        cls, gvk: GroupVersionKind, namespace: str | None, name: str
    ) -> "ResourceKey":
        return cls(gvk.group, gvk.version, gvk.kind, namespace, name)

    def __str__(self) -> str:
        """Return the identity string persisted in the managed resource list."""
        return f"{self.api_version}/{self.kind}/{self.namespaced_name}"


def parse_gvks(pattern: str) -> list[GroupVersionKind]:
    """Parse a semicolon separated list of watched kinds.

    Each entry is either `version/kind` (core group) or `group/version/kind`.
    Empty or malformed entries are skipped.
    """
    gvks: list[GroupVersionKind] = []
    for entry in pattern.split(";"):
        if not (entry := entry.strip()):
            continue
        parts = entry.split("/")
        if len(parts) == 2:
            group, version, kind = "", parts[0], parts[1]
        elif len(parts) == 3:
            group, version, kind = parts
        else:
            _LOGGER.warning("Skipping invalid watched kind entry '%s'", entry)
            continue
        if not version or not kind:
            _LOGGER.warning("Skipping invalid watched kind entry '%s'", entry)
            continue
        gvks.append(GroupVersionKind(group=group, version=version, kind=kind))
    if not gvks:
        raise ConfigurationError(f"No valid watched kinds specified in '{pattern}'")
    return gvks


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """Parse a duration string like `5m`, `1h30m` or `500ms` into seconds."""
    text = (value or "").strip()
    if not text:
        raise InvalidSpecError("Invalid pollInterval: empty duration")
    pos = 0
    total = 0.0
    while pos < len(text):
        if not (match := _DURATION_RE.match(text, pos)):
            raise InvalidSpecError(f"Invalid pollInterval: '{value}'")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if total <= 0:
        raise InvalidSpecError(f"Invalid pollInterval: '{value}' must be positive")
    return total


def get_metadata(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the metadata of an unstructured object, creating it if needed."""
    return obj.setdefault("metadata", {})


def get_labels(obj: dict[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("labels") or {})


def get_annotations(obj: dict[str, Any]) -> dict[str, str]:
    return dict((obj.get("metadata") or {}).get("annotations") or {})


def nested_get(obj: dict[str, Any], *path: str) -> Any:
    """Return a nested field or None when any segment is missing."""
    value: Any = obj
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


class BaseManifest(DataClassDictMixin):
    """Base class for all typed manifest fragments."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class AuthenticationRef(BaseManifest):
    """Reference to a Secret holding credentials for an HTTP endpoint."""

    name: str
    """The name of the Secret."""

    type: str
    """The authentication type: basic, bearer, apikey or oauth2."""

    namespace: str | None = None
    """The namespace of the Secret, defaults to the instance namespace."""

    username_key: str | None = field(
        metadata=field_options(alias="usernameKey"), default=None
    )
    password_key: str | None = field(
        metadata=field_options(alias="passwordKey"), default=None
    )
    token_key: str | None = field(metadata=field_options(alias="tokenKey"), default=None)
    apikey_key: str | None = field(
        metadata=field_options(alias="apikeyKey"), default=None
    )
    apikey_header: str | None = field(
        metadata=field_options(alias="apikeyHeader"), default=None
    )
    client_id_key: str | None = field(
        metadata=field_options(alias="clientIdKey"), default=None
    )
    client_secret_key: str | None = field(
        metadata=field_options(alias="clientSecretKey"), default=None
    )
    token_url: str | None = field(metadata=field_options(alias="tokenUrl"), default=None)
    """The OAuth2 token endpoint, taken from the spec rather than the Secret."""

    scopes: str | None = None
    """Space separated OAuth2 scopes."""


@dataclass
class ConnectionSecretRef(BaseManifest):
    """Reference to a Secret holding database connection details."""

    name: str
    namespace: str | None = None
    host_key: str | None = field(metadata=field_options(alias="hostKey"), default=None)
    port_key: str | None = field(metadata=field_options(alias="portKey"), default=None)
    user_key: str | None = field(metadata=field_options(alias="userKey"), default=None)
    password_key: str | None = field(
        metadata=field_options(alias="passwordKey"), default=None
    )
    db_name_key: str | None = field(
        metadata=field_options(alias="dbNameKey"), default=None
    )
    ssl_mode_key: str | None = field(
        metadata=field_options(alias="sslModeKey"), default=None
    )


@dataclass
class DatabaseSpec(BaseManifest):
    """Database connection details."""

    connection_secret_ref: ConnectionSecretRef = field(
        metadata=field_options(alias="connectionSecretRef")
    )
    type: str = DEFAULT_DATABASE_TYPE


@dataclass
class HTTPSpec(BaseManifest):
    """HTTP request details."""

    url: str
    method: str | None = None
    headers: dict[str, str] | None = None
    body: str | None = None
    authentication_ref: AuthenticationRef | None = field(
        metadata=field_options(alias="authenticationRef"), default=None
    )
    response_path: str | None = field(
        metadata=field_options(alias="responsePath"), default=None
    )
    """Path to the array of items within the response, `$` is the root."""


@dataclass
class StatusUpdateSpec(BaseManifest):
    """HTTP request template used to report resource state back to the API."""

    url: str
    body_template: str = field(metadata=field_options(alias="bodyTemplate"), default="")
    method: str | None = None
    headers: dict[str, str] | None = None
    authentication_ref: AuthenticationRef | None = field(
        metadata=field_options(alias="authenticationRef"), default=None
    )


@dataclass
class Condition(BaseManifest):
    """A typed, timestamped observation of the instance state."""

    type: str
    status: str
    reason: str
    message: str
    last_transition_time: str = field(
        metadata=field_options(alias="lastTransitionTime")
    )
    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )

    @property
    def is_true(self) -> bool:
        return self.status == "True"


@dataclass
class SyncStatus(BaseManifest):
    """The observed state of an instance."""

    conditions: list[Condition] = field(default_factory=list)
    last_poll_time: str | None = field(
        metadata=field_options(alias="lastPollTime"), default=None
    )
    managed_resources: list[str] = field(
        metadata=field_options(alias="managedResources"), default_factory=list
    )
    observed_generation: int | None = field(
        metadata=field_options(alias="observedGeneration"), default=None
    )

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


def _parse_nested(cls: type[Any], doc: Any, kind: str, path: str) -> Any:
    if not isinstance(doc, dict):
        raise InvalidSpecError(f"Invalid {kind} missing {path}")
    try:
        return cls.from_dict(doc)
    except PARSE_ERRORS as err:
        raise InvalidSpecError(f"Invalid {kind} {path}: {err}") from err


@dataclass(kw_only=True)
class SyncSpec:
    """Common fields of an instance driving the synchronization loop."""

    kind: ClassVar[str]
    """The kind of the instance."""

    finalizer: ClassVar[str]
    """The finalizer marker gating cascading deletion."""

    connectivity_condition: ClassVar[str]
    """The condition type reporting source connectivity."""

    name: str
    namespace: str
    uid: str | None = None
    generation: int = 0
    resource_version: str | None = None
    finalizers: list[str] = field(default_factory=list)
    deletion_requested: bool = False

    poll_interval: str
    """Duration string like `5m`, `1h` or `30s`."""

    template: str
    """Template for the resources rendered for each record."""

    prune: bool = True
    """Delete previously managed resources no longer produced by a cycle."""

    status: SyncStatus = field(default_factory=SyncStatus)

    @property
    def resource_id(self) -> ResourceKey:
        group, _, version = API_VERSION.partition("/")
        return ResourceKey(group, version, self.kind, self.namespace, self.name)

    @property
    def has_finalizer(self) -> bool:
        return self.finalizer in self.finalizers

    @property
    def write_back_enabled(self) -> bool:
        """Return True if the instance reports state back to its source."""
        return False

    def owner_reference(self) -> dict[str, Any]:
        """Return an owner reference pointing at this instance."""
        return {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            "blockOwnerDeletion": True,
        }

    @classmethod
    def _parse_common(cls, doc: dict[str, Any]) -> dict[str, Any]:
        if not (api_version := doc.get("apiVersion")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing apiVersion")
        if not api_version.startswith(API_GROUP):
            raise InvalidSpecError(f"Invalid {cls.kind} expected '{API_GROUP}'")
        if not (metadata := doc.get("metadata")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing metadata")
        if not (name := metadata.get("name")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing metadata.name")
        if not (namespace := metadata.get("namespace")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing metadata.namespace")
        if not isinstance(spec := doc.get("spec"), dict):
            raise InvalidSpecError(f"Invalid {cls.kind} missing spec")
        if not (template := spec.get("template")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing spec.template")
        status = SyncStatus()
        if isinstance(raw_status := doc.get("status"), dict):
            try:
                status = SyncStatus.from_dict(raw_status)
            except PARSE_ERRORS:
                _LOGGER.warning("Ignoring unreadable status on %s/%s", namespace, name)
        if (prune := spec.get("prune")) is None:
            prune = True
        if not isinstance(prune, bool):
            raise InvalidSpecError(f"Invalid {cls.kind} spec.prune must be a boolean: {prune!r}")
        generation = metadata.get("generation") or 0
        if isinstance(generation, bool) or not isinstance(generation, int):
            raise InvalidSpecError(
                f"Invalid {cls.kind} metadata.generation must be an integer: {generation!r}"
            )
        return {
            "name": name,
            "namespace": namespace,
            "uid": metadata.get("uid"),
            "generation": generation,
            "resource_version": metadata.get("resourceVersion"),
            "finalizers": list(metadata.get("finalizers") or ()),
            "deletion_requested": bool(metadata.get("deletionTimestamp")),
            "poll_interval": spec.get("pollInterval") or "",
            "template": template,
            "prune": prune,
            "status": status,
        }


@dataclass(kw_only=True)
class DatabaseQueryResource(SyncSpec):
    """Synchronizes resources with the rows returned by a SQL query."""

    kind: ClassVar[str] = DATABASE_QUERY_KIND
    finalizer: ClassVar[str] = DATABASE_QUERY_FINALIZER
    connectivity_condition: ClassVar[str] = CONDITION_DB_CONNECTED

    database: DatabaseSpec
    query: str
    status_update_query_template: str | None = None
    """SQL statement template executed for each managed resource."""

    @property
    def write_back_enabled(self) -> bool:
        return bool(self.status_update_query_template)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "DatabaseQueryResource":
        """Parse a DatabaseQueryResource from an unstructured object."""
        common = cls._parse_common(doc)
        spec = doc["spec"]
        if not (query := spec.get("query")):
            raise InvalidSpecError(f"Invalid {cls.kind} missing spec.query")
        return cls(
            **common,
            database=_parse_nested(DatabaseSpec, spec.get("database"), cls.kind, "spec.database"),
            query=query,
            status_update_query_template=spec.get("statusUpdateQueryTemplate"),
        )


@dataclass(kw_only=True)
class HTTPQueryResource(SyncSpec):
    """Synchronizes resources with the items returned by an HTTP API."""

    kind: ClassVar[str] = HTTP_QUERY_KIND
    finalizer: ClassVar[str] = HTTP_QUERY_FINALIZER
    connectivity_condition: ClassVar[str] = CONDITION_HTTP_CONNECTED

    http: HTTPSpec
    status_update: StatusUpdateSpec | None = None

    @property
    def write_back_enabled(self) -> bool:
        return self.status_update is not None

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "HTTPQueryResource":
        """Parse an HTTPQueryResource from an unstructured object."""
        common = cls._parse_common(doc)
        spec = doc["spec"]
        status_update = None
        if (raw := spec.get("statusUpdate")) is not None:
            status_update = _parse_nested(
                StatusUpdateSpec, raw, cls.kind, "spec.statusUpdate"
            )
        return cls(
            **common,
            http=_parse_nested(HTTPSpec, spec.get("http"), cls.kind, "spec.http"),
            status_update=status_update,
        )


def is_sync_spec(obj: dict[str, Any]) -> bool:
    """Return True if the object is an instance driving the control loop."""
    return obj.get("kind") in SYNC_SPEC_KINDS and str(
        obj.get("apiVersion", "")
    ).startswith(API_GROUP)


def parse_sync_spec(obj: dict[str, Any]) -> SyncSpec:
    """Parse an unstructured instance into its typed representation."""
    kind = obj.get("kind")
    if kind == DATABASE_QUERY_KIND:
        return DatabaseQueryResource.parse_doc(obj)
    if kind == HTTP_QUERY_KIND:
        return HTTPQueryResource.parse_doc(obj)
    raise InputException(f"Object of kind {kind} is not a synchronization instance")
