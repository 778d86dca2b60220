"""Command line tool for baking manifests and serving the bakery API."""

import argparse
import asyncio
import logging
import sys
import traceback

from bakery.exceptions import BakeryException
from . import bake, serve

_LOGGER = logging.getLogger(__name__)


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for rendering deployable manifests.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    bake.BakeAction.register(subparsers)
    serve.ServeAction.register(subparsers)
    return parser


def main() -> None:
    """Bakery command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args()

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except BakeryException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("bakery error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
