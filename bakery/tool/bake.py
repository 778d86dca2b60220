"""Bakery bake action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import json
import logging
import pathlib
from typing import cast

from bakery.config import load_config
from bakery.exceptions import InvalidRequestException
from bakery.fetch import HttpArtifactFetcher
from bakery.jobs import create_executor
from bakery.manager import create_manager

_LOGGER = logging.getLogger(__name__)


class BakeAction:
    """Bakery bake action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "bake",
                help="Bake a single request and print the rendered manifest",
                description="""Renders the JSON bake request with the named
                    template renderer, exactly as the API would, and prints
                    the rendered output.""",
            ),
        )
        args.add_argument(
            "renderer",
            type=str,
            help="Template renderer, e.g. helm3, helmfile, kustomize, jinja or cf",
        )
        args.add_argument(
            "request", type=pathlib.Path, help="Path to the JSON bake request"
        )
        args.add_argument(
            "--config", type=pathlib.Path, help="Path to the bakery configuration file"
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.add_argument(
            "--artifact",
            type=bool,
            action=BooleanOptionalAction,
            help="Output the artifact JSON instead of the decoded manifest",
        )
        args.add_argument(
            "--execution-id", type=str, help="Correlation id attached to the bake"
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        renderer: str,
        request: pathlib.Path,
        config: pathlib.Path | None,
        output_file: str,
        artifact: bool | None,
        execution_id: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        try:
            body = json.loads(request.read_text())
        except (OSError, json.JSONDecodeError) as err:
            raise InvalidRequestException(
                f"Unable to read bake request {request}: {err}"
            ) from err

        bakery_config = load_config(config)
        executor = create_executor(bakery_config)
        fetcher = HttpArtifactFetcher(bakery_config.fetch)
        try:
            await executor.start()
            manager = create_manager(bakery_config, executor, fetcher)
            result = await manager.bake(renderer, body, execution_id)
        finally:
            await executor.close()
            await fetcher.close()

        with open(output_file, "w") as file:
            if artifact:
                print(json.dumps(result.to_dict(), indent=2), file=file)
            else:
                print(result.decoded_content(), file=file, end="")
