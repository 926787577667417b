"""Render manifest templates against records.

Templates are Jinja2 templates evaluated with `StrictUndefined`, so accessing
a field a record does not have is an error for that record. The environment
carries a helper library modeled on the common string, encoding, date and
math helpers of template driven manifest tooling.

The rendered text is split on `---` document separators and each document is
parsed as JSON, falling back to YAML.
"""

import base64
import datetime
import hashlib
import json
import logging
import re
from typing import Any

import jinja2
from slugify import slugify
import yaml

from .exceptions import ParseError, RenderError, WholeTemplateParseError

__all__ = [
    "TemplateRenderer",
    "parse_documents",
    "make_environment",
]

_LOGGER = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = re.compile(r"^---[ \t]*$", re.MULTILINE)
DNS1123_MAX_LENGTH = 63


def _quote(value: Any) -> str:
    return json.dumps("" if value is None else str(value))


def _squote(value: Any) -> str:
    return "'" + ("" if value is None else str(value)) + "'"


def _b64enc(value: Any) -> str:
    return base64.b64encode(str(value).encode("utf-8")).decode("ascii")


def _b64dec(value: Any) -> str:
    try:
        return base64.b64decode(str(value)).decode("utf-8")
    except ValueError as err:
        raise ValueError(f"b64dec: invalid base64 value: {err}") from err


def _sha256sum(value: Any) -> str:
    return hashlib.sha256(str(value).encode("utf-8")).hexdigest()


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _to_yaml(value: Any) -> str:
    return yaml.safe_dump(value, sort_keys=False, default_flow_style=False).rstrip("\n")


def _trunc(value: Any, length: int) -> str:
    text = str(value)
    if length < 0:
        return text[length:]
    return text[:length]


def _trim_prefix(value: Any, prefix: str) -> str:
    text = str(value)
    return text[len(prefix) :] if prefix and text.startswith(prefix) else text


def _trim_suffix(value: Any, suffix: str) -> str:
    text = str(value)
    return text[: -len(suffix)] if suffix and text.endswith(suffix) else text


def _dns1123(value: Any) -> str:
    """Convert a value to a valid DNS-1123 label."""
    return slugify(
        str(value), max_length=DNS1123_MAX_LENGTH, lowercase=True, separator="-"
    )


def _required(value: Any, message: str = "required value is missing") -> Any:
    if value is None or value == "" or isinstance(value, jinja2.Undefined):
        raise ValueError(message)
    return value


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    if isinstance(value, str):
        value = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime.date):
        raise TypeError(f"date: expected a date or ISO 8601 string, got {type(value).__name__}")
    return value.strftime(fmt)


def _number(value: Any) -> int | float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    text = str(value)
    try:
        return int(text)
    except ValueError:
        return float(text)


def _add(value: Any, other: Any) -> int | float:
    return _number(value) + _number(other)


def _sub(value: Any, other: Any) -> int | float:
    return _number(value) - _number(other)


def _mul(value: Any, other: Any) -> int | float:
    return _number(value) * _number(other)


def _div(value: Any, other: Any) -> int | float:
    left, right = _number(value), _number(other)
    if isinstance(left, int) and isinstance(right, int):
        return left // right
    return left / right


def _mod(value: Any, other: Any) -> int | float:
    return _number(value) % _number(other)


FILTERS = {
    "quote": _quote,
    "squote": _squote,
    "b64enc": _b64enc,
    "b64dec": _b64dec,
    "sha256sum": _sha256sum,
    "toJson": _to_json,
    "toYaml": _to_yaml,
    "trunc": _trunc,
    "trimPrefix": _trim_prefix,
    "trimSuffix": _trim_suffix,
    "kebabcase": _dns1123,
    "dns1123": _dns1123,
    "required": _required,
    "date": _date,
    "add": _add,
    "sub": _sub,
    "mul": _mul,
    "div": _div,
    "mod": _mod,
}

GLOBALS = {
    "now": _now,
    "required": _required,
    "max": max,
    "min": min,
}


def make_environment() -> jinja2.Environment:
    """Create the template environment with the helper library installed."""
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )
    env.filters.update(FILTERS)
    env.globals.update(GLOBALS)
    return env


def _parse_document(doc: str) -> Any:
    try:
        return json.loads(doc)
    except ValueError:
        pass
    try:
        return yaml.safe_load(doc)
    except yaml.YAMLError as err:
        raise ParseError(f"Failed to parse document as JSON or YAML: {err}") from err


def parse_documents(text: str) -> list[dict[str, Any]]:
    """Split rendered text into documents and parse each one.

    Empty documents (including YAML that parses to nothing or an empty
    mapping) are discarded. A document that is not a mapping is an error.
    """
    docs: list[dict[str, Any]] = []
    for doc in DOCUMENT_SEPARATOR.split(text):
        if not doc.strip():
            continue
        obj = _parse_document(doc)
        if obj is None:
            continue
        if not isinstance(obj, dict):
            raise ParseError(
                f"Rendered document is not a mapping (got {type(obj).__name__})"
            )
        if not obj:
            continue
        docs.append(obj)
    return docs


class TemplateRenderer:
    """A template compiled once and rendered for each record."""

    def __init__(self, source: str, name: str = "template") -> None:
        """Compile the template.

        Raises:
            WholeTemplateParseError: If the template has invalid syntax.
        """
        self._name = name
        try:
            self._template = make_environment().from_string(source)
        except jinja2.TemplateSyntaxError as err:
            raise WholeTemplateParseError(
                f"Failed to parse {name}: {err.message} (line {err.lineno})"
            ) from err

    def render(self, context: dict[str, Any]) -> str:
        """Render the template to text.

        Raises:
            RenderError: If evaluating the template fails.
        """
        try:
            return self._template.render(context)
        except Exception as err:
            raise RenderError(f"Failed to render {self._name}: {err}") from err

    def render_record(
        self, record: dict[str, Any], index: int
    ) -> list[dict[str, Any]]:
        """Render the documents for a single record.

        The record is available as both `Item` and `Row` along with its
        `Index` in the fetched sequence.
        """
        text = self.render({"Item": record, "Row": record, "Index": index})
        _LOGGER.debug("Rendered record %d: %s", index, text)
        return parse_documents(text)
