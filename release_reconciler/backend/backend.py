"""Backend interface for reading and writing release state in a cluster."""

from abc import ABC, abstractmethod

from release_reconciler.manifest import ApplyPayload, ReleaseRevision, ReleaseState


class Backend(ABC):
    """Abstract base class for a cluster release backend.

    All methods are keyed by release name and namespace. Any method may raise
    ClusterUnreachableError when the cluster cannot be reached.
    """

    @abstractmethod
    async def list_revisions(self, name: str, namespace: str) -> list[ReleaseRevision]:
        """Return every retained revision of a release ordered by revision number.

        An unknown release has no revisions and returns an empty list.
        """

    @abstractmethod
    async def save_revision(self, revision: ReleaseRevision) -> None:
        """Create or replace the record for a revision."""

    @abstractmethod
    async def delete_revision(self, name: str, namespace: str, revision: int) -> None:
        """Delete the record for a revision."""

    @abstractmethod
    async def get_state(self, name: str, namespace: str) -> ReleaseState:
        """Return the live state of a release."""

    @abstractmethod
    async def apply(self, payload: ApplyPayload) -> None:
        """Install or upgrade the release resources for a revision.

        Raises:
            ResourceApplyException: If any resource failed to apply. Resources
                applied before the failure are left in place.
        """

    @abstractmethod
    async def restore(self, name: str, namespace: str, state: ReleaseState) -> None:
        """Return the live release resources to a previously read state.

        Restoring a state with no revision removes the release resources.
        """
