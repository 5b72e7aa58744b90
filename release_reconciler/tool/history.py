"""Release-reconciler history and rollback actions."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
from typing import cast

from release_reconciler.exceptions import ReconcilerException
from release_reconciler.manifest import DEFAULT_NAMESPACE

from . import common
from .format import HISTORY_COLUMNS, print_reports, print_table, revision_row

_LOGGER = logging.getLogger(__name__)


def _add_release_flags(args: ArgumentParser) -> None:
    args.add_argument("name", help="Name of the release")
    args.add_argument(
        "--namespace",
        "-n",
        default=DEFAULT_NAMESPACE,
        help="Namespace of the release",
    )


class HistoryAction:
    """Print the retained revisions of a release."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "history",
                help="Print the revision history of a release",
                description="Print the retained revisions of a release, oldest first",
            ),
        )
        _add_release_flags(args)
        common.add_backend_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        namespace: str,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        reconciler = common.build_reconciler(**kwargs)
        revisions = await reconciler.history(name, namespace)
        if not revisions:
            print(f"Release {namespace}/{name} not found")
            return
        print_table(HISTORY_COLUMNS, [revision_row(revision) for revision in revisions])


class RollbackAction:
    """Roll a release back to an earlier revision."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "rollback",
                help="Roll a release back to an earlier revision",
                description=(
                    "Deploy the values and chart of an earlier revision as a new "
                    "revision, defaulting to the previously deployed one"
                ),
            ),
        )
        _add_release_flags(args)
        args.add_argument(
            "--revision",
            type=int,
            default=None,
            help="Revision to roll back to",
        )
        common.add_backend_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        name: str,
        namespace: str,
        revision: int | None,
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        reconciler = common.build_reconciler(**kwargs)
        report = await reconciler.rollback(name, namespace, revision)
        print_reports([report])
        if report.exit_code:
            raise ReconcilerException(f"Rollback of {namespace}/{name} failed")
