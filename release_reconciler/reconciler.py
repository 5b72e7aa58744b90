"""Reconciler for release-reconciler.

This module drives a release from its raw definition to a deployed revision:

1. Build the desired `ReleaseSpec`.
2. Fetch the deployed revision, retrying while the cluster is unreachable.
3. Compute the drift between the two.
4. Apply a new revision, unless nothing changed.

Reconciliations of the same release are serialized with a lock held from the
fetch until the apply finishes. Different releases reconcile in parallel.
Every outcome, including failures, is returned as a `ReconcileReport`.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
import logging
from typing import Any, DefaultDict, TypeVar

from .applier import ReleaseApplier
from .backend import Backend
from .cluster import ClusterStateReader
from .config import ReconcilerConfig, RetryConfig
from .context import trace_context
from .descriptor import build_release_spec
from .diff import compute
from .exceptions import (
    ApplyError,
    ClusterUnreachableError,
    ReconcilerException,
    ValidationError,
)
from .manifest import (
    DEFAULT_NAMESPACE,
    Action,
    DiffResult,
    ReconcileReport,
    ReleaseId,
    ReleaseRevision,
    ReleaseSpec,
    RevisionStatus,
)

__all__ = [
    "Reconciler",
]

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


async def with_retries(
    fn: Callable[[], Awaitable[_T]], retry: RetryConfig, label: str
) -> _T:
    """Call `fn`, retrying with exponential backoff while the cluster is unreachable."""
    attempt = 0
    while True:
        try:
            return await fn()
        except ClusterUnreachableError as err:
            attempt += 1
            if attempt >= retry.max_attempts:
                _LOGGER.error("%s failed after %d attempts: %s", label, attempt, err)
                raise
            delay = retry.delay(attempt - 1)
            _LOGGER.warning(
                "%s failed (attempt %d/%d), retrying in %0.1fs: %s",
                label,
                attempt,
                retry.max_attempts,
                delay,
                err,
            )
            await asyncio.sleep(delay)


async def run_to_completion(aw: Awaitable[_T], label: str) -> _T:
    """Await a coroutine that must finish even if the caller is cancelled.

    Cancellation is re-raised once the work is done. An error from the work
    can no longer reach the caller at that point, so it is logged instead.
    """
    task = asyncio.ensure_future(aw)
    cancelled = False
    while not task.done():
        try:
            await asyncio.wait((task,))
        except asyncio.CancelledError:
            cancelled = True
    if cancelled:
        if not task.cancelled() and (err := task.exception()) is not None:
            _LOGGER.error("%s failed after the caller was cancelled: %s", label, err)
        raise asyncio.CancelledError()
    return task.result()


def _raw_identity(raw_config: Any) -> tuple[str, str]:
    """Best effort name and namespace for reporting an invalid definition."""
    if not isinstance(raw_config, Mapping):
        return "", DEFAULT_NAMESPACE
    name = raw_config.get("name")
    namespace = raw_config.get("namespace") or DEFAULT_NAMESPACE
    return str(name or ""), str(namespace)


class Reconciler:
    """Drives releases towards their desired state."""

    def __init__(
        self,
        backend: Backend,
        config: ReconcilerConfig | None = None,
        applier: ReleaseApplier | None = None,
    ) -> None:
        """Initialize the Reconciler."""
        self._config = config or ReconcilerConfig()
        self._reader = ClusterStateReader(backend)
        self._applier = applier or ReleaseApplier(backend)
        self._locks: dict[ReleaseId, asyncio.Lock] = {}
        self._lock_users: DefaultDict[ReleaseId, int] = defaultdict(int)

    @asynccontextmanager
    async def _lock(self, release_id: ReleaseId) -> AsyncIterator[None]:
        """Hold the lock of a release, dropping it when nothing else waits on it."""
        lock = self._locks.setdefault(release_id, asyncio.Lock())
        self._lock_users[release_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[release_id] -= 1
            if not self._lock_users[release_id]:
                del self._lock_users[release_id]
                del self._locks[release_id]

    async def _fetch(self, spec: ReleaseSpec) -> ReleaseRevision | None:
        """Fetch the deployed revision, bounded by the overall timeout."""

        async def fetch() -> ReleaseRevision | None:
            return await self._reader.fetch(spec.name, spec.namespace)

        async with asyncio.timeout(self._config.timeout):
            return await with_retries(
                fetch, self._config.retry, f"Fetch {spec.release_id}"
            )

    async def plan(self, raw_config: Mapping[str, Any]) -> DiffResult:
        """Compute the action needed for a release without applying it.

        Raises:
            ValidationError: If the definition is invalid.
            ClusterUnreachableError: If the cluster could not be read.
        """
        spec = build_release_spec(raw_config)
        observed = await self._fetch(spec)
        return compute(spec, observed)

    async def history(self, name: str, namespace: str) -> list[ReleaseRevision]:
        """Return the retained revisions of a release."""

        async def read() -> list[ReleaseRevision]:
            return await self._reader.history(name, namespace)

        return await with_retries(
            read, self._config.retry, f"History {namespace}/{name}"
        )

    async def reconcile(self, raw_config: Mapping[str, Any]) -> ReconcileReport:
        """Reconcile a single release definition."""
        try:
            spec = build_release_spec(raw_config)
        except ValidationError as err:
            name, namespace = _raw_identity(raw_config)
            _LOGGER.error("Invalid release definition %s/%s: %s", namespace, name, err)
            return ReconcileReport(name=name, namespace=namespace, error=str(err))

        with trace_context("reconcile", spec.release_id):
            async with self._lock(spec.release_id):
                report = await self._reconcile_locked(spec)
        if report.ok:
            _LOGGER.info(
                "Reconciled %s: %s revision %s",
                spec.release_id,
                report.action,
                report.revision,
            )
        return report

    async def reconcile_many(
        self, raw_configs: Iterable[Mapping[str, Any]]
    ) -> list[ReconcileReport]:
        """Reconcile several release definitions concurrently, in input order."""
        return list(
            await asyncio.gather(*(self.reconcile(config) for config in raw_configs))
        )

    async def _reconcile_locked(self, spec: ReleaseSpec) -> ReconcileReport:
        report = ReconcileReport(name=spec.name, namespace=spec.namespace)
        try:
            observed = await self._fetch(spec)
        except TimeoutError:
            report.error = (
                f"Timed out after {self._config.timeout}s reading release state"
            )
            _LOGGER.error("Release %s: %s", spec.release_id, report.error)
            return report
        except ReconcilerException as err:
            report.error = str(err)
            return report

        diff = compute(spec, observed)
        report.action = diff.action
        report.changed_keys = sorted(diff.changed_keys)
        if diff.action == Action.NOOP:
            assert observed is not None
            report.revision = observed.revision
            report.status = observed.status
            return report

        _LOGGER.info(
            "Release %s needs %s (%d changed keys)",
            spec.release_id,
            diff.action,
            len(diff.changed_keys),
        )
        try:
            revision = await run_to_completion(
                self._applier.apply(spec, diff.action), f"Apply {spec.release_id}"
            )
        except ApplyError as err:
            report.revision = err.revision
            report.status = RevisionStatus.FAILED
            report.error = str(err)
            return report
        except ReconcilerException as err:
            report.status = RevisionStatus.FAILED
            report.error = str(err)
            _LOGGER.error("Release %s: %s", spec.release_id, err)
            return report
        report.revision = revision.revision
        report.status = revision.status
        return report

    async def rollback(
        self, name: str, namespace: str, revision: int | None = None
    ) -> ReconcileReport:
        """Roll a release back to an earlier revision."""
        report = ReconcileReport(name=name, namespace=namespace, action=Action.ROLLBACK)
        release_id = ReleaseId(namespace=namespace, name=name)
        with trace_context("rollback", release_id):
            async with self._lock(release_id):
                try:
                    deployed = await run_to_completion(
                        self._applier.rollback(name, namespace, revision),
                        f"Rollback {release_id}",
                    )
                except ApplyError as err:
                    report.revision = err.revision
                    report.status = RevisionStatus.FAILED
                    report.error = str(err)
                    return report
                except ReconcilerException as err:
                    report.error = str(err)
                    _LOGGER.error("Rollback of %s failed: %s", release_id, err)
                    return report
        report.revision = deployed.revision
        report.status = deployed.status
        return report
