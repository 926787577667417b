"""Query-operator build action.

Loads instances, Secrets and any existing resources from disk into an
in-memory store and runs a single cycle for every instance.
"""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
import sys
from typing import cast

from query_operator.controller import SyncController

from . import common
from .format import PrintFormatter, get_formatter

_LOGGER = logging.getLogger(__name__)

STATUS_KEYS = ["kind", "namespace", "name", "ready", "reason", "resources", "message"]


class BuildAction:
    """Query-operator build action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "build",
                help="Run one synchronization cycle for every instance in a directory",
                description="""Load the manifests under a path into an in-memory
                    store, run a single cycle for every DatabaseQueryResource and
                    HTTPQueryResource found and print the managed resources. The
                    status of each instance is printed to stderr.""",
            ),
        )
        common.add_common_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        gvk_pattern: str | None,
        output: str,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = common.make_config(gvk_pattern)
        store, instances = await common.load(path)
        controller = SyncController(store, config)
        for resource_id in instances:
            await controller.reconcile(resource_id)

        with open(output_file, "w") as file:
            get_formatter(output).print(await common.managed_resources(store), file=file)
        PrintFormatter(STATUS_KEYS).print(
            [common.status_row(await store.get(key)) for key in instances],
            file=sys.stderr,
        )
