"""Select the data source variant for an instance."""

from query_operator.auth import CredentialBundle, DatabaseConnection
from query_operator.config import OperatorConfig
from query_operator.exceptions import CredentialResolutionError, SourceConnectionError
from query_operator.manifest import DatabaseQueryResource, HTTPQueryResource, SyncSpec

from .base import Credentials, DataSource
from .http import HTTPSource
from .postgres import POSTGRES_TYPES, PostgresSource


def create_source(
    spec: SyncSpec, credentials: Credentials, config: OperatorConfig
) -> DataSource:
    """Return the data source for the instance kind and configuration."""
    if isinstance(spec, HTTPQueryResource):
        if credentials is not None and not isinstance(credentials, CredentialBundle):
            raise CredentialResolutionError("HTTP source requires a credential bundle")
        return HTTPSource(spec.http, credentials, config)
    if isinstance(spec, DatabaseQueryResource):
        db_type = (spec.database.type or "").lower()
        if db_type not in POSTGRES_TYPES:
            raise SourceConnectionError(f"Unsupported database type: {spec.database.type}")
        if not isinstance(credentials, DatabaseConnection):
            raise CredentialResolutionError("Database source requires connection details")
        return PostgresSource(credentials, spec.query, config)
    raise SourceConnectionError(f"No data source for kind {spec.kind}")
