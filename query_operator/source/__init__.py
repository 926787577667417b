"""Data sources that produce records for an instance.

Every source implements the `DataSource` interface: an async context manager
that acquires its connection on entry and releases it on exit, with `fetch`
returning the records and `execute` performing a write-back. The variant is
selected by `create_source` from the instance kind, so adding a source means
adding a variant here without changing callers.
"""

from .base import DataSource, SourceFactory, WriteBackPayload
from .factory import create_source
from .http import HTTPSource, extract_items
from .postgres import PostgresSource

__all__ = [
    "DataSource",
    "SourceFactory",
    "WriteBackPayload",
    "create_source",
    "HTTPSource",
    "PostgresSource",
    "extract_items",
]
