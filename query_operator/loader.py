"""Resource loader for seeding a store from manifests on disk.

This module provides the ResourceLoader class which reads Kubernetes style
YAML or JSON manifests (instances, Secrets and any pre-existing resources)
from the filesystem so they can be added to an in-memory store. It is used by
the command line tool for offline runs and is not involved in the control
loop itself.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncGenerator

import aiofiles
from aiofiles.ospath import isdir
import yaml

from .exceptions import InputException, QueryOperatorException
from .manifest import ResourceKey
from .store import InMemoryStore

__all__ = ["ResourceLoader", "LoadOptions", "load_store"]

_LOGGER = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class LoadOptions:
    """Options for loading manifests.

    Attributes:
        path: Filesystem path to load resources from. Can be a file or directory.
        recursive: If True and path is a directory, load resources from all
                  subdirectories as well.
    """

    path: Path
    recursive: bool = True

    def __post_init__(self) -> None:
        """Resolve the path after initialization."""
        self.path = Path(self.path).expanduser().resolve()


class ResourceLoader:
    """Loads unstructured objects from the filesystem."""

    def __init__(self) -> None:
        """Initialize the resource loader."""
        self._processed_files: set[Path] = set()

    async def load(self, options: LoadOptions) -> AsyncGenerator[dict[str, Any], None]:
        """Load objects from the given options.

        Raises:
            QueryOperatorException: If the path is missing or a file is not valid YAML.
        """
        _LOGGER.info("Loading resources from %s", options.path)

        if not options.path.exists():
            raise QueryOperatorException(f"Path does not exist: {options.path}")

        if await isdir(options.path):
            async for obj in self._load_directory(options.path, options):
                yield obj
        elif options.path.is_file():
            async for obj in self._load_file(options.path):
                yield obj
        else:
            raise QueryOperatorException(
                f"Path is not a file or directory: {options.path}"
            )

        _LOGGER.info("Finished loading resources")

    async def _load_directory(
        self, path: Path, options: LoadOptions
    ) -> AsyncGenerator[dict[str, Any], None]:
        _LOGGER.debug("Loading directory: %s", path)
        for entry in sorted(path.iterdir()):
            if entry.is_file() and entry.suffix.lower() in MANIFEST_SUFFIXES:
                async for obj in self._load_file(entry):
                    yield obj
            elif options.recursive and entry.is_dir():
                async for obj in self._load_directory(entry, options):
                    yield obj

    async def _load_file(self, path: Path) -> AsyncGenerator[dict[str, Any], None]:
        if path in self._processed_files:
            _LOGGER.debug("Skipping already processed file: %s", path)
            return

        _LOGGER.debug("Processing file: %s", path)
        self._processed_files.add(path)

        try:
            async with aiofiles.open(path, encoding="utf-8") as manifest_file:
                content = await manifest_file.read()
        except OSError as e:
            raise QueryOperatorException(f"Failed to read file {path}: {e}") from e

        try:
            docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise QueryOperatorException(f"Invalid YAML in file {path}: {e}") from e

        for doc in docs:
            if not doc:
                continue
            if not isinstance(doc, dict):
                _LOGGER.info("Skipping document in %s that is not a mapping", path)
                continue
            try:
                ResourceKey.from_object(doc)
            except InputException as e:
                _LOGGER.info("Skipping document in %s: %s", path, e)
                continue
            yield doc


async def load_store(store: InMemoryStore, options: LoadOptions) -> list[ResourceKey]:
    """Add every object found under the path to the store."""
    loaded = []
    async for obj in ResourceLoader().load(options):
        loaded.append(ResourceKey.from_object(store.add_object(obj)))
    return loaded
