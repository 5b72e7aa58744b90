"""Tests for the in memory backend."""

import datetime

import pytest

from release_reconciler.backend import InMemoryBackend
from release_reconciler.backend.in_memory import render_objects, resource_key
from release_reconciler.exceptions import (
    ClusterUnreachableError,
    ResourceApplyException,
)
from release_reconciler.manifest import (
    Action,
    ApplyPayload,
    ReleaseRevision,
    ReleaseSpec,
    ReleaseState,
    RevisionStatus,
)

SPEC = ReleaseSpec(
    name="podinfo",
    namespace="podinfo",
    chart_ref="podinfo/podinfo",
    version="6.5.0",
    values={"replicaCount": "2"},
)
CONFIGMAP_KEY = "ConfigMap/podinfo/podinfo-values"
DEPLOYMENT_KEY = "Deployment/podinfo/podinfo"


def payload(revision: int, **values: str) -> ApplyPayload:
    return ApplyPayload(
        spec=SPEC,
        action=Action.UPGRADE,
        revision=revision,
        values={"replicaCount": 2, **values},
        applied_at="2024-01-01T00:00:00+00:00",
        description="test",
    )


def test_render_objects() -> None:
    """Test the rendered objects reflect the payload."""
    objects = render_objects(payload(3))
    assert [resource_key(obj) for obj in objects] == [CONFIGMAP_KEY, DEPLOYMENT_KEY]
    assert objects[0]["data"] == {"replicaCount": "2"}
    assert objects[1]["spec"] == {"chart": "podinfo/podinfo@6.5.0", "revision": 3}


async def test_revision_records(backend: InMemoryBackend) -> None:
    """Test saving, replacing and deleting revision records."""
    timestamp = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    for number in (2, 1):
        await backend.save_revision(
            ReleaseRevision(
                revision=number,
                spec=SPEC,
                status=RevisionStatus.PENDING,
                timestamp=timestamp,
            )
        )
    await backend.save_revision(
        ReleaseRevision(
            revision=2, spec=SPEC, status=RevisionStatus.DEPLOYED, timestamp=timestamp
        )
    )
    revisions = await backend.list_revisions("podinfo", "podinfo")
    assert [(r.revision, r.status) for r in revisions] == [
        (1, RevisionStatus.PENDING),
        (2, RevisionStatus.DEPLOYED),
    ]

    await backend.delete_revision("podinfo", "podinfo", 1)
    await backend.delete_revision("podinfo", "podinfo", 7)
    revisions = await backend.list_revisions("podinfo", "podinfo")
    assert [r.revision for r in revisions] == [2]
    assert await backend.list_revisions("podinfo", "other") == []


async def test_apply(backend: InMemoryBackend) -> None:
    """Test applying writes the objects and moves the served revision."""
    assert await backend.get_state("podinfo", "podinfo") == ReleaseState()
    await backend.apply(payload(1))
    state = await backend.get_state("podinfo", "podinfo")
    assert state.revision == 1
    assert sorted(state.resources) == [CONFIGMAP_KEY, DEPLOYMENT_KEY]
    assert backend.apply_count == 1
    assert backend.peak_applies == 1

    # The returned state is a copy
    state.resources.clear()
    assert len((await backend.get_state("podinfo", "podinfo")).resources) == 2


async def test_apply_removes_stale_objects() -> None:
    """Test objects no longer rendered are deleted."""
    rendered = [render_objects]

    backend = InMemoryBackend(renderer=lambda p: rendered[0](p))
    await backend.apply(payload(1))
    rendered[0] = lambda p: render_objects(p)[1:]
    await backend.apply(payload(2))
    state = await backend.get_state("podinfo", "podinfo")
    assert list(state.resources) == [DEPLOYMENT_KEY]


async def test_apply_failure_is_partial(backend: InMemoryBackend) -> None:
    """Test an injected failure leaves earlier objects applied."""
    await backend.apply(payload(1))
    backend.inject_apply_failure(
        "podinfo", "podinfo", after=1, message="quota exceeded"
    )
    with pytest.raises(
        ResourceApplyException, match="Deployment/podinfo/podinfo: quota exceeded"
    ):
        await backend.apply(payload(2, extra="x"))

    state = await backend.get_state("podinfo", "podinfo")
    assert state.revision == 1
    assert state.resources[CONFIGMAP_KEY]["data"]["extra"] == "x"
    assert state.resources[DEPLOYMENT_KEY]["spec"]["revision"] == 1

    # Faults only apply once
    await backend.apply(payload(2, extra="x"))
    assert (await backend.get_state("podinfo", "podinfo")).revision == 2


async def test_restore(backend: InMemoryBackend) -> None:
    """Test restoring a previously read state."""
    await backend.apply(payload(1))
    saved = await backend.get_state("podinfo", "podinfo")
    await backend.apply(payload(2, extra="x"))
    await backend.restore("podinfo", "podinfo", saved)
    assert await backend.get_state("podinfo", "podinfo") == saved

    await backend.restore("podinfo", "podinfo", ReleaseState())
    assert await backend.get_state("podinfo", "podinfo") == ReleaseState()


async def test_restore_failure(backend: InMemoryBackend) -> None:
    """Test an injected restore failure leaves the state untouched."""
    await backend.apply(payload(1))
    backend.inject_restore_failure("podinfo", "podinfo")
    await backend.restore("podinfo", "podinfo", ReleaseState())
    assert (await backend.get_state("podinfo", "podinfo")).revision == 1


async def test_unreachable(backend: InMemoryBackend) -> None:
    """Test injected connectivity failures."""
    backend.inject_unreachable(2)
    with pytest.raises(ClusterUnreachableError):
        await backend.list_revisions("podinfo", "podinfo")
    with pytest.raises(ClusterUnreachableError):
        await backend.get_state("podinfo", "podinfo")
    assert await backend.list_revisions("podinfo", "podinfo") == []
