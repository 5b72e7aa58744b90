"""Release Applier implementation.

The applier turns a desired `ReleaseSpec` into a new revision of a release:

    pending -> deployed   the backend applied every resource
    pending -> failed     any resource failed to apply

For an atomic release a failed attempt is compensated before the revision is
marked failed: the live state read before the attempt is restored and read
back, and any difference is reported as a FatalInconsistencyError. The
deployed revision never moves to an attempt that did not fully succeed.

After a successful apply the previously deployed revision is superseded and
history is pruned to `max_history`, oldest first, never evicting the
deployed revision.
"""

from collections.abc import Callable
import dataclasses
import datetime
import logging
from typing import NoReturn

from .backend import Backend
from .context import trace_context
from .exceptions import (
    ApplyError,
    FatalInconsistencyError,
    ReconcilerException,
    ValidationError,
)
from .manifest import (
    VOLATILE_VALUES_KEY,
    Action,
    ApplyPayload,
    ReleaseRevision,
    ReleaseSpec,
    ReleaseState,
    RevisionStatus,
)
from .values import expand_values

__all__ = [
    "ReleaseApplier",
]

_LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _deployed(revisions: list[ReleaseRevision]) -> ReleaseRevision | None:
    deployed = [r for r in revisions if r.status == RevisionStatus.DEPLOYED]
    return max(deployed, key=lambda r: r.revision) if deployed else None


def build_payload(revision: ReleaseRevision, action: Action) -> ApplyPayload:
    """Build the backend payload for a revision.

    Some backends skip an apply when nothing in the payload changed, so every
    payload carries the attempt timestamp as a values key.
    """
    applied_at = revision.timestamp.isoformat()
    values = expand_values(revision.spec.values)
    values[VOLATILE_VALUES_KEY] = applied_at
    return ApplyPayload(
        spec=revision.spec,
        action=action,
        revision=revision.revision,
        values=values,
        applied_at=applied_at,
        description=revision.description or str(action),
    )


def select_pruned(
    revisions: list[ReleaseRevision], max_history: int
) -> list[ReleaseRevision]:
    """Return the revisions to evict to keep at most `max_history` revisions."""
    if max_history <= 0 or len(revisions) <= max_history:
        return []
    candidates = sorted(
        (r for r in revisions if r.status != RevisionStatus.DEPLOYED),
        key=lambda r: r.revision,
    )
    return candidates[: len(revisions) - max_history]


class ReleaseApplier:
    """Applies release revisions through a backend."""

    def __init__(
        self,
        backend: Backend,
        clock: Callable[[], datetime.datetime] | None = None,
    ) -> None:
        """Initialize the applier.

        Args:
            backend: The backend used to read and write the release.
            clock: Returns the current time, used for revision timestamps.
        """
        self._backend = backend
        self._clock = clock or _utcnow

    async def apply(self, spec: ReleaseSpec, action: Action) -> ReleaseRevision:
        """Install or upgrade a release to the spec, returning the deployed revision.

        Raises:
            ApplyError: If the backend failed to apply the revision.
            FatalInconsistencyError: If an atomic rollback left changes behind.
        """
        if action not in (Action.INSTALL, Action.UPGRADE):
            raise ValueError(f"Unable to apply action {action}")
        description = spec.description or f"{action.capitalize()} {spec.chart_label}"
        return await self._attempt(spec, action, description, RevisionStatus.SUPERSEDED)

    async def rollback(
        self, name: str, namespace: str, revision: int | None = None
    ) -> ReleaseRevision:
        """Re-apply the spec of an earlier revision as a new revision.

        The revision rolled away from is marked rolled-back. Without an explicit
        revision the most recent superseded revision is used.
        """
        release = f"{namespace}/{name}"
        revisions = await self._backend.list_revisions(name, namespace)
        if (current := _deployed(revisions)) is None:
            raise ValidationError(f"Release {release} has no deployed revision")
        if revision is None:
            previous = [
                r
                for r in revisions
                if r.revision < current.revision
                and r.status in (RevisionStatus.SUPERSEDED, RevisionStatus.ROLLED_BACK)
            ]
            if not previous:
                raise ValidationError(
                    f"Release {release} has no previous revision to roll back to"
                )
            target = previous[-1]
        else:
            found = [r for r in revisions if r.revision == revision]
            if not found:
                raise ValidationError(f"Release {release} has no revision {revision}")
            target = found[0]
        if target.revision == current.revision:
            raise ValidationError(
                f"Release {release} revision {target.revision} is already deployed"
            )
        if target.status in (RevisionStatus.PENDING, RevisionStatus.FAILED):
            raise ValidationError(
                f"Release {release} revision {target.revision} is {target.status}"
            )
        _LOGGER.info(
            "Rolling back %s/%s from revision %d to %d",
            namespace,
            name,
            current.revision,
            target.revision,
        )
        return await self._attempt(
            target.spec,
            Action.ROLLBACK,
            f"Rollback to {target.revision}",
            RevisionStatus.ROLLED_BACK,
        )

    async def _attempt(
        self,
        spec: ReleaseSpec,
        action: Action,
        description: str,
        replaced_status: RevisionStatus,
    ) -> ReleaseRevision:
        release = spec.release_id
        with trace_context(str(action), release):
            revisions = await self._backend.list_revisions(spec.name, spec.namespace)
            previous = _deployed(revisions)
            pre_state: ReleaseState | None = None
            if spec.atomic:
                pre_state = await self._backend.get_state(spec.name, spec.namespace)

            revision = ReleaseRevision(
                revision=max((r.revision for r in revisions), default=0) + 1,
                spec=spec,
                status=RevisionStatus.PENDING,
                timestamp=self._clock(),
                description=description,
            )
            await self._backend.save_revision(revision)
            _LOGGER.info("Applying %s (%s %s)", revision, action, spec.chart_label)

            try:
                await self._backend.apply(build_payload(revision, action))
                await self._verify_served(revision)
            except ReconcilerException as err:
                await self._fail(revision, pre_state, err)

            if previous is not None:
                await self._backend.save_revision(
                    dataclasses.replace(previous, status=replaced_status)
                )
            deployed = dataclasses.replace(revision, status=RevisionStatus.DEPLOYED)
            await self._backend.save_revision(deployed)
            _LOGGER.info("Deployed %s", deployed)

            await self._prune(spec)
        return deployed

    async def _verify_served(self, revision: ReleaseRevision) -> None:
        """Check the backend reports the new revision as the one being served."""
        spec = revision.spec
        state = await self._backend.get_state(spec.name, spec.namespace)
        if state.revision != revision.revision:
            raise ApplyError(
                str(spec.release_id),
                revision.revision,
                f"backend reports revision {state.revision} deployed after apply",
                rolled_back=False,
            )

    async def _fail(
        self,
        revision: ReleaseRevision,
        pre_state: ReleaseState | None,
        err: ReconcilerException,
    ) -> NoReturn:
        """Compensate a failed attempt if atomic, record it failed and raise."""
        spec = revision.spec
        release = str(spec.release_id)
        message = err.message if isinstance(err, ApplyError) else str(err)
        if pre_state is not None:
            _LOGGER.warning("Apply of %s failed, rolling back: %s", revision, message)
            try:
                await self._backend.restore(spec.name, spec.namespace, pre_state)
                post_state = await self._backend.get_state(spec.name, spec.namespace)
            except ReconcilerException as restore_err:
                raise FatalInconsistencyError(
                    release, [f"restore failed: {restore_err}"]
                ) from err
            residue = pre_state.residue(post_state)
            if post_state.revision == revision.revision:
                residue.append(f"revision {revision.revision} still served")
            if residue:
                _LOGGER.error("Rollback of %s left residue: %s", revision, residue)
                raise FatalInconsistencyError(release, residue) from err

        failed = dataclasses.replace(revision, status=RevisionStatus.FAILED)
        await self._backend.save_revision(failed)
        _LOGGER.error("Revision %s failed: %s", failed, message)
        raise ApplyError(
            release, revision.revision, message, rolled_back=pre_state is not None
        ) from err

    async def _prune(self, spec: ReleaseSpec) -> None:
        revisions = await self._backend.list_revisions(spec.name, spec.namespace)
        for revision in select_pruned(revisions, spec.max_history):
            _LOGGER.debug("Pruning %s", revision)
            await self._backend.delete_revision(
                spec.name, spec.namespace, revision.revision
            )
