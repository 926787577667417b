"""Query-operator run action.

Runs the scheduler against an in-memory store until every instance has
completed a number of cycles. Instances are polled on their own interval and
re-triggered by changes to their managed resources.
"""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import asyncio
import logging
import pathlib
import sys
from typing import cast

from query_operator.controller import SyncController
from query_operator.scheduler import Scheduler

from . import common
from .build import STATUS_KEYS
from .format import PrintFormatter, get_formatter

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Query-operator run action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Run the control loop for the instances in a directory",
                description="""Load the manifests under a path into an in-memory
                    store and run the scheduler until every instance completed
                    the requested number of cycles.""",
            ),
        )
        common.add_common_flags(args)
        args.add_argument(
            "--cycles",
            type=int,
            default=1,
            help="Number of cycles to complete for every instance",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: pathlib.Path,
        gvk_pattern: str | None,
        output: str,
        output_file: str,
        cycles: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        config = common.make_config(gvk_pattern)
        store, instances = await common.load(path)
        scheduler = Scheduler(store, SyncController(store, config), config)
        await scheduler.start()
        try:
            await asyncio.gather(
                *(scheduler.wait_for_cycles(key, cycles) for key in instances)
            )
        finally:
            await scheduler.stop()

        with open(output_file, "w") as file:
            get_formatter(output).print(await common.managed_resources(store), file=file)
        PrintFormatter(STATUS_KEYS).print(
            [common.status_row(await store.get(key)) for key in instances],
            file=sys.stderr,
        )
