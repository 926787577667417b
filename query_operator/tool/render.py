"""Query-operator render action.

Renders a template against a list of records without a cluster or a data
source, which is useful for developing templates.
"""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
import sys
from typing import Any, cast

import aiofiles
import yaml

from query_operator.exceptions import InputException, TemplateException
from query_operator.record import Record
from query_operator.template import TemplateRenderer

from .format import get_formatter

_LOGGER = logging.getLogger(__name__)


async def read_records(path: pathlib.Path) -> list[Record]:
    """Read a YAML or JSON list of records from a file."""
    try:
        async with aiofiles.open(path, encoding="utf-8") as records_file:
            content = await records_file.read()
    except OSError as err:
        raise InputException(f"Failed to read records from {path}: {err}") from err
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as err:
        raise InputException(f"Invalid records file {path}: {err}") from err
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(row, dict) for row in data):
        raise InputException(f"Records file {path} must hold a list of mappings")
    return [Record(row) for row in data]


class RenderAction:
    """Query-operator render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render a resource template against a list of records",
                description="""Render the template for every record in a YAML or
                    JSON list and print the resulting resources. Records that
                    fail to render are reported and skipped.""",
            ),
        )
        args.add_argument(
            "--template",
            type=pathlib.Path,
            required=True,
            help="File holding the resource template",
        )
        args.add_argument(
            "--records",
            type=pathlib.Path,
            required=True,
            help="YAML or JSON file holding a list of records",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml", "json"],
            default="yaml",
            help="Output format of the rendered resources",
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the rendered resources",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        template: pathlib.Path,
        records: pathlib.Path,
        output: str,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        try:
            async with aiofiles.open(template, encoding="utf-8") as template_file:
                source = await template_file.read()
        except OSError as err:
            raise InputException(f"Failed to read template {template}: {err}") from err

        renderer = TemplateRenderer(source, name=template.name)
        docs: list[dict[str, Any]] = []
        failed = 0
        for index, record in enumerate(await read_records(records)):
            try:
                docs.extend(renderer.render_record(record.to_dict(), index))
            except TemplateException as err:
                failed += 1
                print(f"record {index}: {err}", file=sys.stderr)
        _LOGGER.info("Rendered %d documents, %d records failed", len(docs), failed)
        with open(output_file, "w") as file:
            get_formatter(output).print(docs, file=file)
