"""Track the outcome of cycles as status conditions on the instance."""

import asyncio
from dataclasses import dataclass, field
import datetime
import logging

from .config import OperatorConfig
from .exceptions import (
    ConflictError,
    CredentialError,
    InvalidSpecError,
    ObjectNotFoundError,
    QueryOperatorException,
    SecretNotFoundError,
    SourceConnectionError,
    SourceException,
    SourceQueryError,
    TemplateException,
)
from .manifest import (
    CONDITION_PRUNED,
    CONDITION_RECONCILED,
    CONDITION_STATUS_UPDATED,
    Condition,
    ResourceKey,
    SyncSpec,
    SyncStatus,
)
from .store import Store

__all__ = [
    "CycleOutcome",
    "StatusTracker",
    "set_condition",
    "truncate_message",
    "reason_for",
]

_LOGGER = logging.getLogger(__name__)

ELLIPSIS = "..."

REASON_SUCCESS = "Success"
REASON_CONNECTED = "Connected"
REASON_PROCESSING_ERROR = "ProcessingError"
REASON_PRUNED = "Pruned"
REASON_PRUNE_DISABLED = "PruneDisabled"
REASON_PRUNE_FAILED = "PruneFailed"
REASON_STATUS_UPDATE_SUCCESS = "StatusUpdateSuccess"
REASON_STATUS_UPDATE_FAILED = "StatusUpdateFailed"


def utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def truncate_message(message: str, max_length: int = 1024) -> str:
    """Bound a message length, marking truncation with an ellipsis."""
    if len(message) <= max_length:
        return message
    if max_length <= len(ELLIPSIS):
        return message[:max_length]
    return message[: max_length - len(ELLIPSIS)] + ELLIPSIS


def reason_for(err: BaseException) -> str:
    """Return the condition reason for a cycle level error."""
    if isinstance(err, InvalidSpecError):
        return "InvalidSpec"
    if isinstance(err, SecretNotFoundError):
        return "SecretNotFound"
    if isinstance(err, CredentialError):
        return "CredentialError"
    if isinstance(err, SourceConnectionError):
        return "SourceConnectionFailed"
    if isinstance(err, SourceQueryError):
        return "QueryFailed"
    if isinstance(err, SourceException):
        return "SourceError"
    if isinstance(err, TemplateException):
        return "TemplateError"
    return REASON_PROCESSING_ERROR


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    ok: bool,
    reason: str,
    message: str,
    observed_generation: int | None = None,
    now: str | None = None,
) -> Condition:
    """Set the condition of a type, keeping at most one per type.

    The transition time only changes when the status flips.
    """
    status = "True" if ok else "False"
    for i, existing in enumerate(conditions):
        if existing.type != condition_type:
            continue
        transition_time = existing.last_transition_time
        if existing.status != status:
            transition_time = now or utc_now()
        conditions[i] = Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition_time,
            observed_generation=observed_generation,
        )
        return conditions[i]
    condition = Condition(
        type=condition_type,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=now or utc_now(),
        observed_generation=observed_generation,
    )
    conditions.append(condition)
    return condition


@dataclass
class CycleOutcome:
    """The result of one cycle for one instance."""

    keys: list[ResourceKey] = field(default_factory=list)
    """Sorted identity keys of every resource materialized this cycle."""

    reached_apply: bool = False
    """True when the cycle got past fetching and template compilation."""

    fatal_error: QueryOperatorException | None = None
    record_errors: list[str] = field(default_factory=list)
    record_count: int = 0

    connected: bool | None = None
    """Source connectivity, None when the source was never contacted."""

    prune_enabled: bool = True
    pruned: list[ResourceKey] | None = None
    """Keys deleted by pruning, None when pruning did not run."""

    prune_errors: list[str] = field(default_factory=list)

    write_back_errors: list[str] | None = None
    """Write-back failures, None when write-back did not run."""

    requeue_after: float | None = None

    @property
    def succeeded(self) -> bool:
        return self.fatal_error is None and not self.record_errors

    @property
    def managed_resources(self) -> list[str]:
        return [str(key) for key in self.keys]

    def error_message(self) -> str:
        if self.fatal_error is not None:
            return str(self.fatal_error)
        return "; ".join(self.record_errors)


class StatusTracker:
    """Translates cycle outcomes into status and persists it."""

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        self._store = store
        self._config = config

    def _truncate(self, message: str) -> str:
        return truncate_message(message, self._config.max_condition_message_length)

    def build_status(self, spec: SyncSpec, outcome: CycleOutcome) -> SyncStatus:
        """Return the new status for the instance after a cycle."""
        status = SyncStatus.from_dict(spec.status.to_dict())
        now = utc_now()
        generation = spec.generation

        def update(condition_type: str, ok: bool, reason: str, message: str) -> None:
            set_condition(
                status.conditions,
                condition_type,
                ok,
                reason,
                self._truncate(message),
                observed_generation=generation,
                now=now,
            )

        if outcome.succeeded:
            update(
                CONDITION_RECONCILED,
                True,
                REASON_SUCCESS,
                f"Successfully reconciled {len(outcome.keys)} resources",
            )
        elif outcome.fatal_error is not None:
            update(
                CONDITION_RECONCILED,
                False,
                reason_for(outcome.fatal_error),
                outcome.error_message(),
            )
        else:
            update(
                CONDITION_RECONCILED,
                False,
                REASON_PROCESSING_ERROR,
                outcome.error_message(),
            )

        if outcome.connected is True:
            update(
                spec.connectivity_condition,
                True,
                REASON_CONNECTED,
                f"Successfully fetched {outcome.record_count} records",
            )
        elif outcome.connected is False and outcome.fatal_error is not None:
            update(
                spec.connectivity_condition,
                False,
                reason_for(outcome.fatal_error),
                str(outcome.fatal_error),
            )

        if not outcome.prune_enabled and outcome.reached_apply:
            update(CONDITION_PRUNED, True, REASON_PRUNE_DISABLED, "Pruning is disabled")
        elif outcome.prune_errors:
            update(
                CONDITION_PRUNED,
                False,
                REASON_PRUNE_FAILED,
                "; ".join(outcome.prune_errors),
            )
        elif outcome.pruned is not None:
            update(
                CONDITION_PRUNED,
                True,
                REASON_PRUNED,
                f"Deleted {len(outcome.pruned)} stale resources",
            )

        if outcome.write_back_errors is not None:
            self.set_write_back(status, outcome.write_back_errors, generation, now)

        if outcome.reached_apply and outcome.fatal_error is None:
            status.managed_resources = outcome.managed_resources
        if outcome.succeeded:
            status.observed_generation = generation
            status.last_poll_time = now
        return status

    def set_write_back(
        self,
        status: SyncStatus,
        errors: list[str],
        generation: int | None,
        now: str | None = None,
    ) -> None:
        """Record the write-back result without touching Reconciled."""
        if errors:
            set_condition(
                status.conditions,
                CONDITION_STATUS_UPDATED,
                False,
                REASON_STATUS_UPDATE_FAILED,
                self._truncate("; ".join(errors)),
                observed_generation=generation,
                now=now,
            )
        else:
            set_condition(
                status.conditions,
                CONDITION_STATUS_UPDATED,
                True,
                REASON_STATUS_UPDATE_SUCCESS,
                "All status updates succeeded",
                observed_generation=generation,
                now=now,
            )

    async def write(self, spec: SyncSpec, status: SyncStatus) -> bool:
        """Persist the status, re-reading the instance on version conflicts.

        Returns False if the instance no longer exists.
        """
        resource_id = spec.resource_id
        payload = status.to_dict()
        for attempt in range(self._config.status_update_retries):
            try:
                async with asyncio.timeout(self._config.request_timeout):
                    live = await self._store.get(resource_id)
                    live["status"] = payload
                    await self._store.update_status(live)
            except ObjectNotFoundError:
                _LOGGER.debug("Instance %s deleted before status update", resource_id)
                return False
            except ConflictError:
                _LOGGER.debug(
                    "Conflict updating status of %s (attempt %d)", resource_id, attempt + 1
                )
                continue
            return True
        raise ConflictError(
            f"Failed to update status of {resource_id} after {self._config.status_update_retries} attempts"
        )
