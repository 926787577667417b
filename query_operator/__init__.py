"""
query-operator keeps resources in a cluster store in sync with the records
returned by an external data source.

Each instance (a `DatabaseQueryResource` or an `HTTPQueryResource`) names a
data source and a template. Every cycle the records are fetched, rendered
into resource manifests, stamped with ownership, applied to the store, and
resources that are no longer produced are pruned.
"""

__all__ = [
    "manifest",
    "exceptions",
    "config",
    "store",
    "controller",
    "scheduler",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
