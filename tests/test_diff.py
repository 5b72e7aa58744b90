"""Tests for the diff engine."""

import dataclasses
import datetime

import pytest

from release_reconciler.diff import changed_keys, compute
from release_reconciler.manifest import (
    Action,
    ReleaseRevision,
    ReleaseSpec,
    RevisionStatus,
)

SPEC = ReleaseSpec(
    name="prometheus-adapter",
    namespace="prometheus",
    chart_ref="prometheus-community/prometheus-adapter",
    version="4.1.1",
    values={
        "metricsRelistInterval": "30s",
        "resources.limits.memory": "256Mi",
        "rules.default": "false",
    },
)


def deployed(spec: ReleaseSpec) -> ReleaseRevision:
    return ReleaseRevision(
        revision=1,
        spec=spec,
        status=RevisionStatus.DEPLOYED,
        timestamp=datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
    )


def test_install() -> None:
    """Test a release that is not installed."""
    result = compute(SPEC, None)
    assert result.action == Action.INSTALL
    assert result.changed_keys == frozenset(SPEC.values)
    assert result.chart_changed


def test_noop() -> None:
    """Test a release that matches its deployed revision."""
    result = compute(SPEC, deployed(SPEC))
    assert result.action == Action.NOOP
    assert result.changed_keys == frozenset()
    assert not result.chart_changed


@pytest.mark.parametrize("key", list(SPEC.values))
def test_single_key_change(key: str) -> None:
    """Test a change to one key reports exactly that key."""
    desired = dataclasses.replace(SPEC, values={**SPEC.values, key: "changed"})
    result = compute(desired, deployed(SPEC))
    assert result.action == Action.UPGRADE
    assert result.changed_keys == frozenset([key])
    assert not result.chart_changed


def test_added_and_removed_keys() -> None:
    """Test keys present on only one side are changed."""
    desired = dataclasses.replace(
        SPEC,
        values={
            "metricsRelistInterval": "30s",
            "replicas": "2",
            "rules.default": "false",
        },
    )
    result = compute(desired, deployed(SPEC))
    assert result.action == Action.UPGRADE
    assert result.changed_keys == frozenset(["replicas", "resources.limits.memory"])


def test_chart_version_change() -> None:
    """Test a new chart version with the same values."""
    desired = dataclasses.replace(SPEC, version="4.2.0")
    result = compute(desired, deployed(SPEC))
    assert result.action == Action.UPGRADE
    assert result.changed_keys == frozenset()
    assert result.chart_changed


def test_policy_change_is_not_drift() -> None:
    """Test fields that only affect how the next apply runs."""
    desired = dataclasses.replace(SPEC, atomic=True, max_history=3, timeout=60)
    assert compute(desired, deployed(SPEC)).action == Action.NOOP


def test_values_order_is_not_drift() -> None:
    """Test the same values in a different order."""
    values = dict(reversed(list(SPEC.values.items())))
    desired = dataclasses.replace(SPEC, values=values)
    assert compute(desired, deployed(SPEC)).action == Action.NOOP


def test_changed_keys() -> None:
    """Test the symmetric difference of two value mappings."""
    assert changed_keys({"a": "1", "b": "2"}, {"b": "3", "c": "4"}) == frozenset(
        ["a", "b", "c"]
    )
    assert changed_keys({}, {}) == frozenset()
