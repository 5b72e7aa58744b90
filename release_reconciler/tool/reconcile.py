"""Release-reconciler reconcile and diff actions."""

from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import logging
import pathlib
from typing import Any, cast

from release_reconciler.exceptions import ReconcilerException
from release_reconciler.manifest import DEFAULT_NAMESPACE

from . import common
from .format import PLAN_COLUMNS, plan_row, print_reports, print_table

_LOGGER = logging.getLogger(__name__)


def _add_path_flags(args: ArgumentParser) -> None:
    args.add_argument(
        "path",
        help="YAML files containing one release definition per document",
        type=pathlib.Path,
        nargs="+",
    )


class ReconcileAction:
    """Reconcile releases against the cluster."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Reconcile releases to their desired state",
                description=(
                    "Install or upgrade each release that differs from its "
                    "definition and print a report per release"
                ),
            ),
        )
        _add_path_flags(args)
        common.add_backend_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: list[pathlib.Path],
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        docs = await common.load_documents(path)
        reconciler = common.build_reconciler(**kwargs)
        reports = await reconciler.reconcile_many(docs)
        print_reports(reports)
        failed = [report for report in reports if report.exit_code]
        if failed:
            raise ReconcilerException(
                f"{len(failed)} of {len(reports)} releases failed to reconcile"
            )


class DiffAction:
    """Show the action needed for each release."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Show releases that differ from their definition",
                description="Print the planned action and changed values keys",
            ),
        )
        _add_path_flags(args)
        common.add_backend_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path: list[pathlib.Path],
        **kwargs,
    ) -> None:
        """Async Action implementation."""
        docs = await common.load_documents(path)
        reconciler = common.build_reconciler(**kwargs)
        rows: list[list[Any]] = []
        for doc in docs:
            diff = await reconciler.plan(doc)
            namespace = doc.get("namespace") or DEFAULT_NAMESPACE
            rows.append(plan_row(doc["name"], namespace, diff))
        print_table(PLAN_COLUMNS, rows)
