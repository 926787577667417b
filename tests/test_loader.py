"""Tests for loading manifests from disk."""

import pathlib

import pytest

from query_operator.exceptions import QueryOperatorException
from query_operator.loader import LoadOptions, ResourceLoader, load_store
from query_operator.manifest import ResourceKey
from query_operator.store import InMemoryStore

MANIFESTS = """\
---
apiVersion: v1
kind: Secret
metadata:
  name: db
  namespace: default
stringData:
  host: localhost
---
# A document with no identity is skipped
kind: ConfigMap
---
- not
- a mapping
"""


async def test_load_directory(tmp_path: pathlib.Path, store: InMemoryStore) -> None:
    """Test loading manifests recursively from a directory."""
    (tmp_path / "secrets.yaml").write_text(MANIFESTS)
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "config.json").write_text(
        '{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "cfg", "namespace": "default"}}'
    )
    (nested / "README.md").write_text("not a manifest")

    keys = await load_store(store, LoadOptions(path=tmp_path))
    assert sorted(keys) == [
        ResourceKey("", "v1", "ConfigMap", "default", "cfg"),
        ResourceKey("", "v1", "Secret", "default", "db"),
    ]
    secret = await store.get(ResourceKey("", "v1", "Secret", "default", "db"))
    assert secret["metadata"]["uid"]


async def test_load_not_recursive(tmp_path: pathlib.Path) -> None:
    """Test subdirectories are skipped when not recursive."""
    (tmp_path / "secrets.yaml").write_text(MANIFESTS)
    nested = tmp_path / "nested"
    nested.mkdir()
    (nested / "more.yaml").write_text(MANIFESTS.replace("name: db", "name: other"))

    loader = ResourceLoader()
    docs = [doc async for doc in loader.load(LoadOptions(path=tmp_path, recursive=False))]
    assert [doc["metadata"]["name"] for doc in docs] == ["db"]


async def test_load_invalid_yaml(tmp_path: pathlib.Path) -> None:
    """Test a file that is not valid YAML."""
    path = tmp_path / "broken.yaml"
    path.write_text("key: [unclosed\n")
    with pytest.raises(QueryOperatorException, match="Invalid YAML"):
        [doc async for doc in ResourceLoader().load(LoadOptions(path=path))]


async def test_load_missing_path(tmp_path: pathlib.Path) -> None:
    """Test a path that does not exist."""
    with pytest.raises(QueryOperatorException, match="does not exist"):
        [doc async for doc in ResourceLoader().load(LoadOptions(path=tmp_path / "missing"))]
