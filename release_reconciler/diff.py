"""Module for computing drift between desired and observed release state."""

import logging

from .manifest import Action, DiffResult, ReleaseRevision, ReleaseSpec

__all__ = [
    "compute",
]

_LOGGER = logging.getLogger(__name__)


def changed_keys(desired: dict[str, str], observed: dict[str, str]) -> frozenset[str]:
    """Return keys present in only one mapping or with different values."""
    keys = set(desired) ^ set(observed)
    keys.update(
        key for key in set(desired) & set(observed) if desired[key] != observed[key]
    )
    return frozenset(keys)


def compute(desired: ReleaseSpec, observed: ReleaseRevision | None) -> DiffResult:
    """Decide the action needed to move the observed release to the desired spec.

    Only the chart identity and values are compared. Policy such as `atomic`
    or `max_history` applies to the next apply and is not drift by itself.
    """
    if observed is None:
        return DiffResult(
            action=Action.INSTALL,
            changed_keys=frozenset(desired.values),
            chart_changed=True,
        )
    keys = changed_keys(desired.values, observed.spec.values)
    chart_changed = desired.chart_identity != observed.spec.chart_identity
    if not keys and not chart_changed:
        return DiffResult(action=Action.NOOP)
    _LOGGER.debug(
        "Release %s drifted from revision %d: keys=%s chart_changed=%s",
        desired.release_id,
        observed.revision,
        sorted(keys),
        chart_changed,
    )
    return DiffResult(
        action=Action.UPGRADE, changed_keys=keys, chart_changed=chart_changed
    )
