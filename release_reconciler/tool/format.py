"""Library for formatting command output."""

from collections.abc import Iterable
import sys
from typing import Any, TextIO

import yaml

from release_reconciler.manifest import DiffResult, ReconcileReport, ReleaseRevision

PADDING = 4

PLAN_COLUMNS = ["NAME", "NAMESPACE", "ACTION", "CHART", "KEYS"]
HISTORY_COLUMNS = ["REVISION", "UPDATED", "STATUS", "CHART", "DESCRIPTION"]


def format_table(headers: list[str], rows: list[list[Any]]) -> list[str]:
    """Align rows into columns under the headers, unset cells are blank."""
    data = [headers] + [
        ["" if cell is None else str(cell) for cell in row] for row in rows
    ]
    widths = [
        max(len(row[i]) for row in data) + PADDING for i in range(len(headers))
    ]
    return [
        "".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip()
        for row in data
    ]


def plan_row(name: str, namespace: str, diff: DiffResult) -> list[Any]:
    """Row for the planned action of a release."""
    return [
        name,
        namespace,
        diff.action,
        "changed" if diff.chart_changed else None,
        ",".join(sorted(diff.changed_keys)),
    ]


def revision_row(revision: ReleaseRevision) -> list[Any]:
    """Row for a retained revision of a release."""
    return [
        revision.revision,
        revision.timestamp.isoformat(timespec="seconds"),
        revision.status,
        revision.spec.chart_label,
        revision.description,
    ]


def print_table(
    headers: list[str], rows: list[list[Any]], file: TextIO = sys.stdout
) -> None:
    """Print rows in aligned columns."""
    for line in format_table(headers, rows):
        print(line, file=file)


def print_reports(
    reports: Iterable[ReconcileReport], file: TextIO = sys.stdout
) -> None:
    """Print each report as a yaml document."""
    docs = [report.to_dict() for report in reports]
    print(yaml.dump_all(docs, sort_keys=False, explicit_start=True), end="", file=file)
