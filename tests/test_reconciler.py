"""Tests for the reconciler."""

import asyncio
import logging
from typing import Any

import pytest

from release_reconciler.backend import InMemoryBackend
from release_reconciler.config import ReconcilerConfig, RetryConfig
from release_reconciler.manifest import (
    Action,
    ReleaseId,
    ReleaseRevision,
    RevisionStatus,
)
from release_reconciler.reconciler import Reconciler

PROMETHEUS_ADAPTER = {
    "name": "prometheus-adapter",
    "namespace": "prometheus",
    "chartRef": "prometheus-community/prometheus-adapter",
    "values": {"metricsRelistInterval": "30s"},
}
PROMETHEUS_ADAPTER_ID = ReleaseId(namespace="prometheus", name="prometheus-adapter")

PODINFO = {
    "name": "podinfo",
    "namespace": "podinfo",
    "chartRef": "podinfo/podinfo",
    "values": {"replicaCount": 1},
}


def no_backoff(max_attempts: int = 3) -> ReconcilerConfig:
    return ReconcilerConfig(
        retry=RetryConfig(max_attempts=max_attempts, initial_backoff=0, max_backoff=0)
    )


def with_values(raw_config: dict[str, Any], **values: Any) -> dict[str, Any]:
    return {**raw_config, "values": {**raw_config["values"], **values}}


@pytest.fixture(name="reconciler")
def mock_reconciler(backend: InMemoryBackend) -> Reconciler:
    """Fixture for a Reconciler without retry delays."""
    return Reconciler(backend, no_backoff())


async def test_install_then_noop(
    backend: InMemoryBackend, reconciler: Reconciler
) -> None:
    """Test the first reconcile installs and the second is a noop."""
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert report.ok
    assert report.action == Action.INSTALL
    assert report.revision == 1
    assert report.status == RevisionStatus.DEPLOYED
    assert report.changed_keys == ["metricsRelistInterval"]
    assert report.exit_code == 0
    state = await backend.get_state("prometheus-adapter", "prometheus")

    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert report.ok
    assert report.action == Action.NOOP
    assert report.revision == 1
    assert report.status == RevisionStatus.DEPLOYED
    assert report.changed_keys == []

    assert backend.apply_count == 1
    assert await backend.get_state("prometheus-adapter", "prometheus") == state
    revisions = await reconciler.history("prometheus-adapter", "prometheus")
    assert [r.revision for r in revisions] == [1]


async def test_upgrade(reconciler: Reconciler) -> None:
    """Test a changed value upgrades to a new revision."""
    await reconciler.reconcile(PROMETHEUS_ADAPTER)
    report = await reconciler.reconcile(
        with_values(PROMETHEUS_ADAPTER, metricsRelistInterval="1m")
    )
    assert report.action == Action.UPGRADE
    assert report.revision == 2
    assert report.changed_keys == ["metricsRelistInterval"]

    revisions = await reconciler.history("prometheus-adapter", "prometheus")
    assert [(r.revision, r.status) for r in revisions] == [
        (1, RevisionStatus.SUPERSEDED),
        (2, RevisionStatus.DEPLOYED),
    ]


async def test_plan(reconciler: Reconciler) -> None:
    """Test planning does not apply anything."""
    result = await reconciler.plan(PROMETHEUS_ADAPTER)
    assert result.action == Action.INSTALL
    assert await reconciler.history("prometheus-adapter", "prometheus") == []

    await reconciler.reconcile(PROMETHEUS_ADAPTER)
    result = await reconciler.plan(with_values(PROMETHEUS_ADAPTER, replicas=2))
    assert result.action == Action.UPGRADE
    assert result.changed_keys == frozenset(["replicas"])


async def test_invalid_definition(reconciler: Reconciler) -> None:
    """Test an invalid definition produces a failed report."""
    report = await reconciler.reconcile(
        {"name": "Bad_Name", "namespace": "prometheus", "chartRef": "a/b"}
    )
    assert not report.ok
    assert report.name == "Bad_Name"
    assert report.namespace == "prometheus"
    assert report.action is None
    assert "Invalid release name" in (report.error or "")
    assert report.exit_code == 1


async def test_retry_unreachable(
    backend: InMemoryBackend, reconciler: Reconciler
) -> None:
    """Test transient unreachable errors are retried."""
    backend.inject_unreachable(2)
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert report.ok
    assert report.action == Action.INSTALL
    assert report.revision == 1


async def test_retries_exhausted(
    backend: InMemoryBackend, reconciler: Reconciler
) -> None:
    """Test a cluster that stays unreachable fails the reconcile."""
    backend.inject_unreachable(3)
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert not report.ok
    assert report.action is None
    assert "unreachable" in (report.error or "")
    assert report.exit_code == 1
    assert backend.apply_count == 0


async def test_apply_failure_not_retried(
    backend: InMemoryBackend, reconciler: Reconciler
) -> None:
    """Test a failed apply is reported, not retried."""
    backend.inject_apply_failure("prometheus-adapter", "prometheus")
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert not report.ok
    assert report.action == Action.INSTALL
    assert report.revision == 1
    assert report.status == RevisionStatus.FAILED
    assert "injected failure" in (report.error or "")
    assert backend.apply_count == 1

    # The next reconcile tries again with a new revision
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert report.ok
    assert report.action == Action.INSTALL
    assert report.revision == 2


async def test_fatal_inconsistency(
    backend: InMemoryBackend, reconciler: Reconciler
) -> None:
    """Test a failed atomic rollback is reported."""
    atomic = {**PROMETHEUS_ADAPTER, "atomic": True}
    await reconciler.reconcile(atomic)
    backend.inject_apply_failure("prometheus-adapter", "prometheus", after=1)
    backend.inject_restore_failure("prometheus-adapter", "prometheus")
    report = await reconciler.reconcile(with_values(atomic, replicas=3))
    assert not report.ok
    assert report.status == RevisionStatus.FAILED
    assert "rollback left residue" in (report.error or "")


async def test_fetch_timeout() -> None:
    """Test the overall timeout bounds reading the cluster."""

    class SlowBackend(InMemoryBackend):
        async def list_revisions(
            self, name: str, namespace: str
        ) -> list[ReleaseRevision]:
            await asyncio.sleep(5)
            return []

    reconciler = Reconciler(SlowBackend(), ReconcilerConfig(timeout=0.01))
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert not report.ok
    assert "Timed out" in (report.error or "")


async def test_same_release_serialized() -> None:
    """Test concurrent reconciles of one release never apply at the same time."""
    backend = InMemoryBackend(apply_delay=0.01)
    reconciler = Reconciler(backend, no_backoff())
    reports = await asyncio.gather(
        reconciler.reconcile(PROMETHEUS_ADAPTER),
        reconciler.reconcile(with_values(PROMETHEUS_ADAPTER, replicas=2)),
        reconciler.reconcile(with_values(PROMETHEUS_ADAPTER, replicas=2)),
    )
    assert backend.max_concurrent_applies[PROMETHEUS_ADAPTER_ID] == 1
    assert [(r.action, r.revision) for r in reports] == [
        (Action.INSTALL, 1),
        (Action.UPGRADE, 2),
        (Action.NOOP, 2),
    ]
    assert not reconciler._locks


async def test_different_releases_parallel() -> None:
    """Test reconciles of different releases run concurrently."""
    backend = InMemoryBackend(apply_delay=0.01)
    reconciler = Reconciler(backend, no_backoff())
    reports = await reconciler.reconcile_many([PROMETHEUS_ADAPTER, PODINFO])
    assert [(r.name, r.action, r.revision) for r in reports] == [
        ("prometheus-adapter", Action.INSTALL, 1),
        ("podinfo", Action.INSTALL, 1),
    ]
    assert backend.peak_applies == 2

    prometheus = await backend.get_state("prometheus-adapter", "prometheus")
    podinfo = await backend.get_state("podinfo", "podinfo")
    assert all(key.split("/")[1] == "prometheus" for key in prometheus.resources)
    assert all(key.split("/")[1] == "podinfo" for key in podinfo.resources)


async def test_reconcile_many_with_failure(reconciler: Reconciler) -> None:
    """Test one invalid definition does not affect the others."""
    reports = await reconciler.reconcile_many([{"name": "podinfo"}, PODINFO])
    assert [r.ok for r in reports] == [False, True]
    assert reports[0].namespace == "default"


async def test_apply_completes_when_cancelled() -> None:
    """Test a cancelled reconcile finishes its apply before cancelling."""
    backend = InMemoryBackend(apply_delay=0.01)
    reconciler = Reconciler(backend, no_backoff())
    task = asyncio.create_task(reconciler.reconcile(PROMETHEUS_ADAPTER))
    while backend.apply_count == 0:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    revisions = await backend.list_revisions("prometheus-adapter", "prometheus")
    assert [(r.revision, r.status) for r in revisions] == [(1, RevisionStatus.DEPLOYED)]
    state = await backend.get_state("prometheus-adapter", "prometheus")
    assert state.revision == 1


async def test_apply_failure_when_cancelled(caplog: pytest.LogCaptureFixture) -> None:
    """Test an apply that fails after cancellation is recorded and logged."""
    backend = InMemoryBackend(apply_delay=0.01)
    backend.inject_apply_failure("prometheus-adapter", "prometheus", after=1)
    reconciler = Reconciler(backend, no_backoff())
    task = asyncio.create_task(reconciler.reconcile(PROMETHEUS_ADAPTER))
    while backend.apply_count == 0:
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    revisions = await backend.list_revisions("prometheus-adapter", "prometheus")
    assert [(r.revision, r.status) for r in revisions] == [(1, RevisionStatus.FAILED)]
    errors = [
        record.getMessage()
        for record in caplog.records
        if record.name == "release_reconciler.reconciler"
        and record.levelno == logging.ERROR
    ]
    assert len(errors) == 1
    assert "after the caller was cancelled" in errors[0]
    assert "injected failure" in errors[0]
    assert not reconciler._locks


async def test_rollback(reconciler: Reconciler) -> None:
    """Test rolling back to the previous revision."""
    await reconciler.reconcile(PROMETHEUS_ADAPTER)
    await reconciler.reconcile(
        with_values(PROMETHEUS_ADAPTER, metricsRelistInterval="1m")
    )

    report = await reconciler.rollback("prometheus-adapter", "prometheus")
    assert report.ok
    assert report.action == Action.ROLLBACK
    assert report.revision == 3
    assert report.status == RevisionStatus.DEPLOYED

    # Reconciling the old definition is now a noop
    report = await reconciler.reconcile(PROMETHEUS_ADAPTER)
    assert report.action == Action.NOOP


async def test_rollback_not_installed(reconciler: Reconciler) -> None:
    """Test rolling back a release that is not installed."""
    report = await reconciler.rollback("prometheus-adapter", "prometheus")
    assert not report.ok
    assert "no deployed revision" in (report.error or "")
