"""Bakery serve action."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import cast

import uvicorn

from bakery.config import load_config
from bakery.fetch import HttpArtifactFetcher
from bakery.jobs import create_executor
from bakery.manager import create_manager
from bakery.web import create_app

_LOGGER = logging.getLogger(__name__)


class ServeAction:
    """Bakery serve action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "serve",
                help="Serve the bakery HTTP API",
                description="""Starts the job executor and serves bake requests
                    over HTTP until interrupted.""",
            ),
        )
        args.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
        args.add_argument("--port", type=int, default=8087, help="Bind port")
        args.add_argument(
            "--config", type=pathlib.Path, help="Path to the bakery configuration file"
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        host: str,
        port: int,
        config: pathlib.Path | None,
        log_level: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        bakery_config = load_config(config)
        executor = create_executor(bakery_config)
        fetcher = HttpArtifactFetcher(bakery_config.fetch)
        # Shared resources of the backend must exist before the first bake
        await executor.start()

        async def shutdown() -> None:
            _LOGGER.info("Shutting down, %d jobs running", executor.running_job_count())
            await executor.close()
            await fetcher.close()

        app = create_app(
            create_manager(bakery_config, executor, fetcher), on_shutdown=shutdown
        )
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host,
                port=port,
                log_level=(log_level or "INFO").lower(),
            )
        )
        await server.serve()
