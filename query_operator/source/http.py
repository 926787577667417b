"""Data source fetching items from an HTTP API."""

import json
import logging
import re
from typing import Any

import httpx

from query_operator.auth import (
    AUTH_APIKEY,
    AUTH_BASIC,
    AUTH_BEARER,
    AUTH_OAUTH2,
    CredentialBundle,
)
from query_operator.config import OperatorConfig
from query_operator.exceptions import (
    SourceConnectionError,
    SourceQueryError,
    UnsupportedAuthTypeError,
)
from query_operator.manifest import HTTPSpec
from query_operator.record import Record

from .base import DataSource, WriteBackPayload

__all__ = [
    "HTTPSource",
    "extract_items",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_METHOD = "GET"
DEFAULT_WRITE_BACK_METHOD = "PATCH"
ROOT_PATHS = ("", "$")
_PATH_SEGMENT = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


def _path_segments(path: str) -> list[str | int]:
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]
    segments: list[str | int] = []
    for match in _PATH_SEGMENT.finditer(text):
        if match.group(1) is not None:
            segments.append(int(match.group(1)))
        elif match.group(2).isdigit():
            segments.append(int(match.group(2)))
        else:
            segments.append(match.group(2))
    return segments


def _as_items(value: Any, path: str) -> list[Record]:
    if isinstance(value, dict):
        return [Record(value)]
    if isinstance(value, list):
        items = []
        for i, item in enumerate(value):
            if not isinstance(item, dict):
                _LOGGER.warning(
                    "Skipping item %d at '%s' that is not an object", i, path or "$"
                )
                continue
            items.append(Record(item))
        return items
    raise SourceQueryError(
        f"Response path '{path or '$'}' does not point to an object or array"
    )


def extract_items(body: str, response_path: str | None) -> list[Record]:
    """Extract the items from a JSON response body.

    The root path (empty or `$`) yields every object of a root array, or the
    root object as a single item. Other paths are dotted field names with
    optional array indexes, like `$.data`, `data.items` or `results[0].rows`.
    """
    path = (response_path or "").strip()
    if path in ROOT_PATHS and not body.strip():
        return []
    try:
        payload = json.loads(body)
    except ValueError as err:
        raise SourceQueryError(f"Response is not valid JSON: {err}") from err
    if path in ROOT_PATHS:
        if not isinstance(payload, (dict, list)):
            raise SourceQueryError("Response is not a valid JSON object or array")
        return _as_items(payload, path)

    value: Any = payload
    for segment in _path_segments(path):
        if isinstance(segment, int) and isinstance(value, list) and segment < len(value):
            value = value[segment]
        elif isinstance(segment, str) and isinstance(value, dict) and segment in value:
            value = value[segment]
        else:
            raise SourceQueryError(f"Response path '{path}' not found in response")
    return _as_items(value, path)


class HTTPSource(DataSource):
    """Fetches items with a single HTTP request."""

    def __init__(
        self,
        spec: HTTPSpec,
        credentials: CredentialBundle | None,
        config: OperatorConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._spec = spec
        self._credentials = credentials
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._tokens: dict[tuple[str, str], str] = {}

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._config.request_timeout, transport=self._transport
            )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise SourceConnectionError("HTTP source used outside of its context")
        return self._client

    async def _oauth2_token(self, credentials: CredentialBundle) -> str:
        """Exchange client credentials for an access token."""
        token_url = credentials.get("tokenUrl")
        client_id = credentials.get("clientId")
        client_secret = credentials.get("clientSecret")
        if not client_id or not client_secret or not token_url:
            raise SourceConnectionError(
                "OAuth2 requires clientId, clientSecret, and tokenUrl"
            )
        cache_key = (token_url, client_id)
        if (token := self._tokens.get(cache_key)) is not None:
            return token
        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scopes := credentials.scopes:
            data["scope"] = " ".join(scopes)
        try:
            response = await self.client.post(token_url, data=data)
            response.raise_for_status()
            token = response.json()["access_token"]
        except httpx.HTTPError as err:
            raise SourceConnectionError(
                f"Failed to retrieve OAuth2 token: {err}"
            ) from err
        except (ValueError, KeyError, TypeError) as err:
            raise SourceConnectionError(
                f"Failed to retrieve OAuth2 token: invalid token response: {err}"
            ) from err
        self._tokens[cache_key] = token
        return token

    async def _authenticate(
        self, headers: dict[str, str], credentials: CredentialBundle | None
    ) -> httpx.Auth | None:
        if credentials is None:
            return None
        if credentials.type == AUTH_BASIC:
            username = credentials.get("username")
            password = credentials.get("password")
            if username or password:
                return httpx.BasicAuth(username, password)
        elif credentials.type == AUTH_BEARER:
            if token := credentials.get("token"):
                headers["Authorization"] = f"Bearer {token}"
        elif credentials.type == AUTH_APIKEY:
            if apikey := credentials.get("apikey"):
                headers[credentials.get("header") or "X-API-Key"] = apikey
        elif credentials.type == AUTH_OAUTH2:
            token = await self._oauth2_token(credentials)
            headers["Authorization"] = f"Bearer {token}"
        else:
            raise UnsupportedAuthTypeError(credentials.type)
        return None

    async def _request(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None,
        body: str | None,
        credentials: CredentialBundle | None,
    ) -> httpx.Response:
        request_headers = dict(headers or {})
        if body and not any(k.lower() == "content-type" for k in request_headers):
            request_headers["Content-Type"] = "application/json"
        auth = await self._authenticate(request_headers, credentials)
        _LOGGER.debug("HTTP %s %s", method, url)
        try:
            response = await self.client.request(
                method,
                url,
                headers=request_headers,
                content=body.encode("utf-8") if body else None,
                auth=auth if auth is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as err:
            raise SourceConnectionError(f"HTTP request to {url} failed: {err}") from err
        if not response.is_success:
            raise SourceQueryError(
                f"HTTP request failed with status {response.status_code}: {response.text}"
            )
        return response

    async def fetch(self) -> list[Record]:
        """Perform the request and extract the items of the response."""
        spec = self._spec
        response = await self._request(
            (spec.method or DEFAULT_METHOD).upper(),
            spec.url,
            spec.headers,
            spec.body,
            self._credentials,
        )
        items = extract_items(response.text, spec.response_path)
        _LOGGER.debug("Fetched %d items from %s", len(items), spec.url)
        return items

    async def execute(self, payload: WriteBackPayload) -> None:
        """Send a rendered status update request."""
        if not payload.url:
            raise SourceQueryError("Status update request has no url")
        await self._request(
            (payload.method or DEFAULT_WRITE_BACK_METHOD).upper(),
            payload.url,
            payload.headers,
            payload.body,
            payload.credentials,
        )
