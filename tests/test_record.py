"""Tests for record."""

import datetime
import decimal
import uuid

from query_operator.record import Record, normalize_value


def test_normalize_driver_values() -> None:
    """Test database driver values become JSON compatible values."""
    assert normalize_value(decimal.Decimal("42")) == 42
    assert normalize_value(decimal.Decimal("1.25")) == 1.25
    assert (
        normalize_value(
            datetime.datetime(2024, 5, 1, 12, 30, tzinfo=datetime.timezone.utc)
        )
        == "2024-05-01T12:30:00Z"
    )
    assert normalize_value(datetime.date(2024, 5, 1)) == "2024-05-01"
    assert normalize_value(datetime.timedelta(minutes=2)) == 120.0
    assert (
        normalize_value(uuid.UUID("12345678-1234-5678-1234-567812345678"))
        == "12345678-1234-5678-1234-567812345678"
    )
    assert normalize_value(b"abc") == "abc"
    assert normalize_value({"tags": ("a", "b")}) == {"tags": ["a", "b"]}


def test_record_preserves_order() -> None:
    """Test column order is preserved."""
    record = Record.from_pairs([("z", 1), ("a", 2), ("m", 3)])
    assert list(record) == ["z", "a", "m"]
    assert record.to_json() == '{"z":1,"a":2,"m":3}'


def test_typed_accessors() -> None:
    """Test the typed accessors of a record."""
    record = Record(
        {
            "name": "web",
            "replicas": "3",
            "ratio": 0.5,
            "enabled": "yes",
            "ports": [80, 443],
            "labels": {"tier": "frontend"},
            "missing": None,
        }
    )
    assert record.get_str("name") == "web"
    assert record.get_str("ports") == "[80, 443]"
    assert record.get_str("missing", "default") == "default"
    assert record.get_int("replicas") == 3
    assert record.get_int("name") is None
    assert record.get_float("ratio") == 0.5
    assert record.get_bool("enabled") is True
    assert record.get_bool("name") is None
    assert record.get_list("ports") == [80, 443]
    assert record.get_list("name") == []
    assert record.get_map("labels") == {"tier": "frontend"}
    assert record.get_map("missing") == {}


def test_from_json() -> None:
    """Test recovering a record from its serialized form."""
    record = Record({"id": 1, "name": "a"})
    assert Record.from_json(record.to_json()) == record
    assert Record.from_json("not json") == Record()
    assert Record.from_json("[1, 2]") == Record()
    assert Record.from_json(None) == {}
