"""Module for an in memory release backend.

The in memory backend simulates a cluster: revisions are kept as records and
each apply writes the rendered resources one at a time, so a failure part way
through leaves a partially applied release behind just as a real cluster would.
Failures can be injected for testing.
"""

import asyncio
import copy
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
import logging
from typing import Any, DefaultDict

from release_reconciler.exceptions import (
    ClusterUnreachableError,
    ResourceApplyException,
)
from release_reconciler.manifest import (
    ApplyPayload,
    ReleaseId,
    ReleaseRevision,
    ReleaseState,
)
from release_reconciler.values import flatten_values

from .backend import Backend

_LOGGER = logging.getLogger(__name__)

Renderer = Callable[[ApplyPayload], list[dict[str, Any]]]


def resource_key(obj: dict[str, Any]) -> str:
    """Return the `Kind/namespace/name` key of a kubernetes object."""
    metadata = obj.get("metadata", {})
    return f"{obj['kind']}/{metadata.get('namespace', '')}/{metadata['name']}"


def render_objects(payload: ApplyPayload) -> list[dict[str, Any]]:
    """Render a minimal set of objects that reflect the payload."""
    spec = payload.spec
    metadata = {
        "name": spec.name,
        "namespace": spec.namespace,
        "labels": {"app.kubernetes.io/instance": spec.name},
        "annotations": {"meta.helm.sh/release-name": spec.name},
    }
    return [
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {**metadata, "name": f"{spec.name}-values"},
            "data": flatten_values(payload.values),
        },
        {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": metadata,
            "spec": {"chart": spec.chart_label, "revision": payload.revision},
        },
    ]


@dataclass
class _Fault:
    after: int
    message: str


class InMemoryBackend(Backend):
    """In-memory implementation of the Backend interface."""

    def __init__(
        self, renderer: Renderer | None = None, apply_delay: float = 0
    ) -> None:
        """Initialize the InMemoryBackend.

        Args:
            renderer: Produces the objects to apply for a payload.
            apply_delay: Seconds to sleep between writing objects.
        """
        self._renderer = renderer or render_objects
        self._apply_delay = apply_delay
        self._revisions: DefaultDict[ReleaseId, dict[int, ReleaseRevision]] = (
            defaultdict(dict)
        )
        self._live: dict[ReleaseId, ReleaseState] = {}
        self._unreachable = 0
        self._apply_faults: dict[ReleaseId, _Fault] = {}
        self._restore_faults: set[ReleaseId] = set()
        self._active: DefaultDict[ReleaseId, int] = defaultdict(int)
        self.max_concurrent_applies: DefaultDict[ReleaseId, int] = defaultdict(int)
        self.peak_applies = 0
        self.apply_count = 0

    def inject_unreachable(self, count: int) -> None:
        """Fail the next `count` backend calls as unreachable."""
        self._unreachable = count

    def inject_apply_failure(
        self,
        name: str,
        namespace: str,
        after: int = 0,
        message: str = "injected failure",
    ) -> None:
        """Fail the next apply of a release after writing `after` objects."""
        self._apply_faults[ReleaseId(namespace, name)] = _Fault(after, message)

    def inject_restore_failure(self, name: str, namespace: str) -> None:
        """Make the next restore of a release leave its resources untouched."""
        self._restore_faults.add(ReleaseId(namespace, name))

    def _check_reachable(self) -> None:
        if self._unreachable > 0:
            self._unreachable -= 1
            raise ClusterUnreachableError("Cluster unreachable: connection refused")

    async def list_revisions(self, name: str, namespace: str) -> list[ReleaseRevision]:
        """Return every retained revision of a release ordered by revision number."""
        self._check_reachable()
        await asyncio.sleep(0)
        revisions = self._revisions.get(ReleaseId(namespace, name), {})
        return [revisions[number] for number in sorted(revisions)]

    async def save_revision(self, revision: ReleaseRevision) -> None:
        """Create or replace the record for a revision."""
        self._check_reachable()
        _LOGGER.debug("Saving %s", revision)
        self._revisions[revision.release_id][revision.revision] = revision

    async def delete_revision(self, name: str, namespace: str, revision: int) -> None:
        """Delete the record for a revision."""
        self._check_reachable()
        _LOGGER.debug("Deleting %s/%s revision %d", namespace, name, revision)
        self._revisions[ReleaseId(namespace, name)].pop(revision, None)

    async def get_state(self, name: str, namespace: str) -> ReleaseState:
        """Return a copy of the live state of a release."""
        self._check_reachable()
        await asyncio.sleep(0)
        if (state := self._live.get(ReleaseId(namespace, name))) is None:
            return ReleaseState()
        return copy.deepcopy(state)

    async def apply(self, payload: ApplyPayload) -> None:
        """Write each rendered object, then drop objects no longer rendered."""
        release_id = payload.spec.release_id
        self._check_reachable()
        self.apply_count += 1
        self._active[release_id] += 1
        self.max_concurrent_applies[release_id] = max(
            self.max_concurrent_applies[release_id], self._active[release_id]
        )
        self.peak_applies = max(self.peak_applies, sum(self._active.values()))
        try:
            live = self._live.setdefault(release_id, ReleaseState())
            fault = self._apply_faults.pop(release_id, None)
            rendered: set[str] = set()
            for count, obj in enumerate(self._renderer(payload)):
                if fault and count >= fault.after:
                    raise ResourceApplyException(
                        f"Failed to apply {resource_key(obj)}: {fault.message}"
                    )
                key = resource_key(obj)
                _LOGGER.debug("Applying %s", key)
                live.resources[key] = copy.deepcopy(obj)
                rendered.add(key)
                await asyncio.sleep(self._apply_delay)
            if fault:
                raise ResourceApplyException(fault.message)
            for key in list(live.resources):
                if key not in rendered:
                    _LOGGER.debug("Deleting %s", key)
                    del live.resources[key]
            live.revision = payload.revision
        finally:
            self._active[release_id] -= 1

    async def restore(self, name: str, namespace: str, state: ReleaseState) -> None:
        """Replace the live state of a release."""
        release_id = ReleaseId(namespace, name)
        self._check_reachable()
        if release_id in self._restore_faults:
            self._restore_faults.discard(release_id)
            _LOGGER.debug("Skipping restore of %s", release_id)
            return
        if state.revision is None and not state.resources:
            self._live.pop(release_id, None)
            return
        self._live[release_id] = copy.deepcopy(state)
