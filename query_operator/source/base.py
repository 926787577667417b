"""Interface implemented by every data source."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from types import TracebackType
from typing import Self

from query_operator.auth import CredentialBundle, DatabaseConnection
from query_operator.config import OperatorConfig
from query_operator.manifest import SyncSpec
from query_operator.record import Record


Credentials = CredentialBundle | DatabaseConnection | None


@dataclass(frozen=True)
class WriteBackPayload:
    """A rendered write-back request.

    For a database the body is the SQL statement. For an HTTP API the body
    is the request body sent to the rendered url.
    """

    body: str
    url: str | None = None
    method: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    credentials: CredentialBundle | None = None


class DataSource(ABC):
    """A source of records scoped to a single cycle."""

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def connect(self) -> None:
        """Acquire the connection or client used by the source."""

    async def close(self) -> None:
        """Release the connection or client, safe to call more than once."""

    @abstractmethod
    async def fetch(self) -> list[Record]:
        """Fetch the ordered records.

        Raises:
            SourceException: If the source cannot be reached or returns bad data.
        """

    @abstractmethod
    async def execute(self, payload: WriteBackPayload) -> None:
        """Perform a write-back side effect against the source.

        Raises:
            SourceException: If the write-back fails.
        """


SourceFactory = Callable[[SyncSpec, Credentials, OperatorConfig], DataSource]
