"""Exceptions related to query-operator."""

__all__ = [
    "QueryOperatorException",
    "ConfigurationError",
    "InputException",
    "InvalidSpecError",
    "StoreException",
    "ObjectNotFoundError",
    "AlreadyExistsError",
    "ConflictError",
    "ApplyNotSupportedError",
    "CredentialError",
    "SecretNotFoundError",
    "CredentialResolutionError",
    "UnsupportedAuthTypeError",
    "SourceException",
    "SourceConnectionError",
    "SourceQueryError",
    "TemplateException",
    "WholeTemplateParseError",
    "RenderError",
    "ParseError",
    "OwnershipError",
    "ApplyError",
    "PruneError",
    "WriteBackError",
]


class QueryOperatorException(Exception):
    """Generic base exception used for this library."""


class ConfigurationError(QueryOperatorException):
    """Raised when the operator configuration is invalid."""


class InputException(QueryOperatorException):
    """Raised when the input objects or values are not formatted as expected."""


class InvalidSpecError(InputException):
    """Raised when an instance spec cannot be used until it is edited."""


class StoreException(QueryOperatorException):
    """Raised when a cluster store operation fails."""


class ObjectNotFoundError(StoreException):
    """Raised when an object is not found in the store."""


class AlreadyExistsError(StoreException):
    """Raised when creating an object that already exists."""


class ConflictError(StoreException):
    """Raised when an update carries a stale resourceVersion."""


class ApplyNotSupportedError(StoreException):
    """Raised when the store does not support server-side apply."""


class CredentialError(QueryOperatorException):
    """Raised when credentials for a data source cannot be resolved.

    These errors are considered recoverable: the referenced secret may be
    created or fixed shortly, so the instance is retried at a shorter interval.
    """


class SecretNotFoundError(CredentialError):
    """Raised when a referenced secret does not exist."""

    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(f"Secret '{name}' not found in namespace '{namespace}'")
        self.name = name
        self.namespace = namespace


class CredentialResolutionError(CredentialError):
    """Raised when a secret exists but does not hold the required values."""


class UnsupportedAuthTypeError(CredentialError):
    """Raised for an authentication type that is not supported."""

    def __init__(self, auth_type: str) -> None:
        super().__init__(f"Unsupported authentication type: {auth_type}")
        self.auth_type = auth_type


class SourceException(QueryOperatorException):
    """Raised when fetching from or writing to an external source fails."""


class SourceConnectionError(SourceException):
    """Raised when the external source cannot be reached."""


class SourceQueryError(SourceException):
    """Raised when the external source rejects a query or returns bad data."""


class TemplateException(QueryOperatorException):
    """Raised when rendering a template fails."""


class WholeTemplateParseError(TemplateException):
    """Raised when a template has invalid syntax."""


class RenderError(TemplateException):
    """Raised when a template fails to render for a single record."""


class ParseError(TemplateException):
    """Raised when rendered output is not a valid resource document."""


class OwnershipError(QueryOperatorException):
    """Raised when an owner reference cannot be set on a resource."""


class ApplyError(QueryOperatorException):
    """Raised when a resource cannot be created or updated."""


class PruneError(QueryOperatorException):
    """Raised when stale resources could not be deleted."""


class WriteBackError(QueryOperatorException):
    """Raised when reporting resource state back to the source fails."""
