"""Resolve credential references into credential bundles.

Credentials are read from Secrets in the cluster store. A bundle is created
for a single cycle and never persisted. Resolution never performs network
calls against the data source: for oauth2 the token exchange happens later
when the request is made, and only once all required values are present.
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
import logging
from typing import Any

from .config import OperatorConfig
from .exceptions import (
    CredentialResolutionError,
    ObjectNotFoundError,
    SecretNotFoundError,
    UnsupportedAuthTypeError,
)
from .manifest import SECRET_GVK, AuthenticationRef, ConnectionSecretRef, ResourceKey
from .store import Store

__all__ = [
    "AuthResolver",
    "CredentialBundle",
    "DatabaseConnection",
    "AUTH_BASIC",
    "AUTH_BEARER",
    "AUTH_APIKEY",
    "AUTH_OAUTH2",
]

_LOGGER = logging.getLogger(__name__)

AUTH_BASIC = "basic"
AUTH_BEARER = "bearer"
AUTH_APIKEY = "apikey"
AUTH_OAUTH2 = "oauth2"

DEFAULT_APIKEY_HEADER = "X-API-Key"
DEFAULT_SSL_MODE = "prefer"


@dataclass(frozen=True)
class CredentialBundle:
    """A type tag plus the resolved secret values with defaults applied."""

    type: str
    values: dict[str, str] = field(default_factory=dict)

    def get(self, key: str) -> str:
        return self.values.get(key, "")

    @property
    def scopes(self) -> list[str]:
        """The oauth2 scopes, split on whitespace."""
        return self.get("scopes").split()


@dataclass(frozen=True)
class DatabaseConnection:
    """Connection parameters for a database resolved from a Secret."""

    host: str
    port: int
    username: str
    password: str
    dbname: str
    sslmode: str = DEFAULT_SSL_MODE

    def __repr__(self) -> str:
        return (
            f"DatabaseConnection(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, dbname={self.dbname!r}, sslmode={self.sslmode!r})"
        )


def decode_secret(secret: dict[str, Any]) -> dict[str, str]:
    """Return the decoded values of a Secret.

    Values in `data` are base64 encoded, values in `stringData` are plain and
    take precedence.
    """
    values: dict[str, str] = {}
    for key, value in (secret.get("data") or {}).items():
        if value is None:
            values[key] = ""
            continue
        try:
            values[key] = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as err:
            raise CredentialResolutionError(
                f"Secret value '{key}' is not valid base64 encoded text: {err}"
            ) from err
    for key, value in (secret.get("stringData") or {}).items():
        values[key] = "" if value is None else str(value)
    return values


class AuthResolver:
    """Turns credential references into credential bundles."""

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        self._store = store
        self._config = config

    async def read_secret(self, name: str, namespace: str) -> dict[str, str]:
        """Fetch and decode the named Secret."""
        resource_id = ResourceKey.for_gvk(SECRET_GVK, namespace, name)
        try:
            async with asyncio.timeout(self._config.request_timeout):
                secret = await self._store.get(resource_id)
        except ObjectNotFoundError as err:
            raise SecretNotFoundError(name, namespace) from err
        return decode_secret(secret)

    async def resolve(
        self, ref: AuthenticationRef, namespace: str
    ) -> CredentialBundle:
        """Resolve an authentication reference for the instance namespace."""
        secret_namespace = ref.namespace or namespace
        values = await self.read_secret(ref.name, secret_namespace)

        def value(key: str | None, default_key: str) -> str:
            return values.get(key or default_key, "")

        result: dict[str, str] = {}
        if ref.type == AUTH_BASIC:
            result["username"] = value(ref.username_key, "username")
            result["password"] = value(ref.password_key, "password")
            if not result["username"] and not result["password"]:
                _LOGGER.warning(
                    "Basic auth configured but no credentials found in secret %s/%s",
                    secret_namespace,
                    ref.name,
                )
        elif ref.type == AUTH_BEARER:
            result["token"] = value(ref.token_key, "token")
            if not result["token"]:
                _LOGGER.warning(
                    "Bearer auth configured but no token found in secret %s/%s",
                    secret_namespace,
                    ref.name,
                )
        elif ref.type == AUTH_APIKEY:
            result["apikey"] = value(ref.apikey_key, "apikey")
            result["header"] = ref.apikey_header or DEFAULT_APIKEY_HEADER
            if not result["apikey"]:
                _LOGGER.warning(
                    "API key auth configured but no API key found in secret %s/%s",
                    secret_namespace,
                    ref.name,
                )
        elif ref.type == AUTH_OAUTH2:
            result["clientId"] = value(ref.client_id_key, "clientId")
            result["clientSecret"] = value(ref.client_secret_key, "clientSecret")
            result["tokenUrl"] = ref.token_url or ""
            result["scopes"] = ref.scopes or ""
            missing = [
                key for key in ("clientId", "clientSecret", "tokenUrl") if not result[key]
            ]
            if missing:
                raise CredentialResolutionError(
                    "OAuth2 authentication requires clientId, clientSecret in secret "
                    f"and tokenUrl in spec (missing: {', '.join(missing)})"
                )
        else:
            raise UnsupportedAuthTypeError(ref.type)

        _LOGGER.debug(
            "Resolved %s credentials from secret %s/%s",
            ref.type,
            secret_namespace,
            ref.name,
        )
        return CredentialBundle(type=ref.type, values=result)

    async def resolve_database_connection(
        self, ref: ConnectionSecretRef, namespace: str
    ) -> DatabaseConnection:
        """Resolve database connection details from the referenced Secret."""
        secret_namespace = ref.namespace or namespace
        values = await self.read_secret(ref.name, secret_namespace)

        def required(key: str | None, default_key: str) -> str:
            name = key or default_key
            if name not in values:
                raise CredentialResolutionError(
                    f"Key '{name}' not found in secret {secret_namespace}/{ref.name}"
                )
            return values[name]

        port_value = required(ref.port_key, "port")
        try:
            port = int(port_value)
        except ValueError as err:
            raise CredentialResolutionError(
                f"Invalid port '{port_value}' in secret {secret_namespace}/{ref.name}"
            ) from err

        if ref.ssl_mode_key:
            sslmode = required(ref.ssl_mode_key, "sslmode")
        else:
            sslmode = values.get("sslmode") or DEFAULT_SSL_MODE

        return DatabaseConnection(
            host=required(ref.host_key, "host"),
            port=port,
            username=required(ref.user_key, "username"),
            password=required(ref.password_key, "password"),
            dbname=required(ref.db_name_key, "dbname"),
            sslmode=sslmode,
        )
