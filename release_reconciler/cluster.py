"""Reads the observed state of a release from the cluster."""

import logging

from .backend import Backend
from .context import trace_context
from .manifest import ReleaseId, ReleaseRevision, RevisionStatus

__all__ = [
    "ClusterStateReader",
]

_LOGGER = logging.getLogger(__name__)


class ClusterStateReader:
    """Reads release revisions through a backend.

    Reads are not locked and may race with writers outside this process.
    """

    def __init__(self, backend: Backend) -> None:
        """Initialize ClusterStateReader."""
        self._backend = backend

    async def history(self, name: str, namespace: str) -> list[ReleaseRevision]:
        """Return all retained revisions of a release, oldest first."""
        revisions = await self._backend.list_revisions(name, namespace)
        return sorted(revisions, key=lambda r: r.revision)

    async def fetch(self, name: str, namespace: str) -> ReleaseRevision | None:
        """Return the most recently deployed revision, or None if not installed.

        Raises:
            ClusterUnreachableError: If the cluster could not be read.
        """
        with trace_context("fetch", ReleaseId(namespace=namespace, name=name)):
            revisions = await self.history(name, namespace)
        deployed = [r for r in revisions if r.status == RevisionStatus.DEPLOYED]
        if not deployed:
            _LOGGER.debug(
                "Release %s/%s has no deployed revision (%d revisions)",
                namespace,
                name,
                len(revisions),
            )
            return None
        if len(deployed) > 1:
            _LOGGER.warning(
                "Release %s/%s has %d deployed revisions, using the latest",
                namespace,
                name,
                len(deployed),
            )
        return deployed[-1]
