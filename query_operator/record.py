"""A single record fetched from a data source.

A record is an ordered mapping of field names to JSON compatible values. Values
produced by database drivers (timestamps, decimals, UUIDs, raw bytes) are
normalized when the record is built so templates and the serialized
annotation see the same plain values.
"""

from collections.abc import Iterator, Mapping
import datetime
import decimal
import json
import logging
from typing import Any
import uuid

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Record",
    "normalize_value",
]


def normalize_value(value: Any) -> Any:
    """Convert a driver value into a JSON compatible value."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, decimal.Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            return value.isoformat()
        return value.astimezone(datetime.timezone.utc).isoformat().replace(
            "+00:00", "Z"
        )
    if isinstance(value, (datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [normalize_value(v) for v in value]
    return str(value)


class Record(Mapping[str, Any]):
    """An ordered, read-only mapping of field name to value."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {
            str(k): normalize_value(v) for k, v in (values or {}).items()
        }

    @classmethod
    def from_pairs(cls, pairs: list[tuple[str, Any]]) -> "Record":
        """Build a record from (column, value) pairs preserving their order."""
        return cls(dict(pairs))

    @classmethod
    def from_json(cls, text: str | None) -> "Record":
        """Recover a record from its serialized form.

        Invalid or non-object JSON yields an empty record.
        """
        if not text:
            return cls()
        try:
            value = json.loads(text)
        except ValueError as err:
            _LOGGER.warning("Ignoring unreadable original record: %s", err)
            return cls()
        if not isinstance(value, dict):
            _LOGGER.warning("Ignoring original record that is not an object")
            return cls()
        return cls(value)

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Record({self._values!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return self._values == other._values
        if isinstance(other, Mapping):
            return self._values == dict(other)
        return NotImplemented

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dictionary copy used as template context."""
        return json.loads(json.dumps(self._values))

    def to_json(self) -> str:
        """Serialize the record for the original record annotation."""
        return json.dumps(self._values, separators=(",", ":"))

    def get_str(self, key: str, default: str | None = None) -> str | None:
        value = self._values.get(key)
        if value is None:
            return default
        if isinstance(value, str):
            return value
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def get_int(self, key: str, default: int | None = None) -> int | None:
        value = self._values.get(key)
        if value is None or isinstance(value, bool):
            return default
        if isinstance(value, int):
            return value
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float | None = None) -> float | None:
        value = self._values.get(key)
        if value is None or isinstance(value, bool):
            return default
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        value = self._values.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "t", "yes", "y", "1"):
                return True
            if lowered in ("false", "f", "no", "n", "0"):
                return False
        return default

    def get_list(self, key: str) -> list[Any]:
        value = self._values.get(key)
        return list(value) if isinstance(value, list) else []

    def get_map(self, key: str) -> dict[str, Any]:
        value = self._values.get(key)
        return dict(value) if isinstance(value, dict) else {}
