"""Command line tool for reconciling helm releases to a desired state."""

import argparse
import asyncio
import logging
import sys
import traceback

from release_reconciler.context import TraceFilter
from release_reconciler.exceptions import ReconcilerException
from . import history, reconcile

_LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(release)s] %(name)s: %(message)s"


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for reconciling helm releases.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    reconcile.ReconcileAction.register(subparsers)
    reconcile.DiffAction.register(subparsers)
    history.HistoryAction.register(subparsers)
    history.RollbackAction.register(subparsers)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Release-reconciler command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level, format=LOG_FORMAT)
        for handler in logging.getLogger().handlers:
            handler.addFilter(TraceFilter())

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except ReconcilerException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("release-reconciler error: ", err, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
