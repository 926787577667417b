"""Configuration objects for query-operator.

The configuration is built once at process start and passed explicitly to
every component that needs it.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import os

from .exceptions import ConfigurationError
from .manifest import GroupVersionKind, parse_gvks

__all__ = [
    "OperatorConfig",
    "DEFAULT_GVK_PATTERN",
]

DEFAULT_GVK_PATTERN = "v1/ConfigMap;v1/Service;apps/v1/Deployment"
DEFAULT_FIELD_MANAGER = "query-operator"

GVK_PATTERN_ENV = "GVK_PATTERN"
FIELD_MANAGER_ENV = "QUERY_OPERATOR_FIELD_MANAGER"
REQUEST_TIMEOUT_ENV = "QUERY_OPERATOR_REQUEST_TIMEOUT"


@dataclass(frozen=True)
class OperatorConfig:
    """Process wide configuration for the synchronization engine."""

    watched_kinds: tuple[GroupVersionKind, ...] = field(
        default_factory=lambda: tuple(parse_gvks(DEFAULT_GVK_PATTERN))
    )
    """Kinds of managed resources considered for pruning and child events."""

    field_manager: str = DEFAULT_FIELD_MANAGER
    """Field manager name used for server-side apply."""

    request_timeout: float = 30.0
    """Timeout in seconds for each store call and source request."""

    recoverable_requeue_interval: float = 60.0
    """Requeue delay in seconds after a credential error."""

    max_condition_message_length: int = 1024

    manage_finalizers: bool = True
    """Add the finalizer to instances that do not carry it yet."""

    status_update_retries: int = 3
    """Attempts for status and finalizer updates on a version conflict."""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OperatorConfig":
        """Build the configuration from environment variables."""
        if environ is None:
            environ = os.environ
        pattern = environ.get(GVK_PATTERN_ENV) or DEFAULT_GVK_PATTERN
        field_manager = environ.get(FIELD_MANAGER_ENV) or DEFAULT_FIELD_MANAGER
        timeout = 30.0
        if raw_timeout := environ.get(REQUEST_TIMEOUT_ENV):
            try:
                timeout = float(raw_timeout)
            except ValueError as err:
                raise ConfigurationError(
                    f"Invalid {REQUEST_TIMEOUT_ENV} '{raw_timeout}': {err}"
                ) from err
            if timeout <= 0:
                raise ConfigurationError(
                    f"Invalid {REQUEST_TIMEOUT_ENV} '{raw_timeout}': must be positive"
                )
        return cls(
            watched_kinds=tuple(parse_gvks(pattern)),
            field_manager=field_manager,
            request_timeout=timeout,
        )
