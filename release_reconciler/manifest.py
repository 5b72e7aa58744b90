"""Representation of releases and their revisions.

A `ReleaseSpec` is the desired state of a release for a single reconciliation
pass. A release owns an ordered list of `ReleaseRevision` records, one per
apply attempt, and at most one of them is `deployed` at a time.
"""

from dataclasses import dataclass, field
import datetime
from enum import StrEnum
import logging
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

__all__ = [
    "ReleaseId",
    "ReleaseSpec",
    "ReleaseRevision",
    "RevisionStatus",
    "Action",
    "DiffResult",
    "ReleaseState",
    "ApplyPayload",
    "ReconcileReport",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_NAMESPACE = "default"
DEFAULT_MAX_HISTORY = 10
DEFAULT_TIMEOUT = 300

# Values key that changes on every apply so a backend never skips a re-apply
VOLATILE_VALUES_KEY = "reconcilerAppliedAt"


class RevisionStatus(StrEnum):
    """Status of a single revision of a release."""

    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    ROLLED_BACK = "rolled-back"


class Action(StrEnum):
    """Action taken to move a release towards its desired state."""

    NOOP = "noop"
    INSTALL = "install"
    UPGRADE = "upgrade"
    ROLLBACK = "rollback"


class BaseManifest(DataClassDictMixin):
    """Base class for all serializable objects."""

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class ReleaseId:
    """Identifier for a release, unique within the cluster."""

    namespace: str
    name: str

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    def __str__(self) -> str:
        return self.namespaced_name


@dataclass(frozen=True, kw_only=True)
class ReleaseSpec(BaseManifest):
    """Desired state of a helm release."""

    name: str
    """The name of the release, unique within the namespace."""

    namespace: str
    """The namespace the release is installed into."""

    chart_ref: str
    """The chart reference e.g. `prometheus-community/prometheus-adapter`."""

    values: dict[str, str] = field(default_factory=dict)
    """Ordered mapping of dotted values keys to scalar strings."""

    atomic: bool = False
    """Revert every change made by a failed apply attempt."""

    max_history: int = DEFAULT_MAX_HISTORY
    """Maximum number of revisions to retain, zero for unlimited."""

    version: str | None = None
    """The chart version constraint."""

    repository: str | None = None
    """The chart repository URL, when the chart ref is not repo qualified."""

    timeout: int = DEFAULT_TIMEOUT
    """Seconds to wait for a single backend operation."""

    wait: bool = True
    """Wait for the release resources to become ready."""

    create_namespace: bool = False
    """Create the namespace if it does not exist."""

    namespace_labels: dict[str, str] = field(default_factory=dict)
    """Labels to apply to the namespace when it is created."""

    description: str | None = None
    """A human readable description recorded with each revision."""

    @property
    def release_id(self) -> ReleaseId:
        return ReleaseId(namespace=self.namespace, name=self.name)

    @property
    def chart_identity(self) -> tuple[str, str | None, str | None]:
        """The fields that identify which chart is deployed."""
        return (self.chart_ref, self.version, self.repository)

    @property
    def chart_label(self) -> str:
        if self.version:
            return f"{self.chart_ref}@{self.version}"
        return self.chart_ref


@dataclass(frozen=True, kw_only=True)
class ReleaseRevision(BaseManifest):
    """A single apply attempt of a release."""

    revision: int
    """Monotonically increasing revision number, starting at 1."""

    spec: ReleaseSpec
    """Snapshot of the desired state applied by this revision."""

    status: RevisionStatus
    """The current status of the revision."""

    timestamp: datetime.datetime
    """When the revision was created."""

    description: str | None = None
    """Human readable summary of the revision."""

    @property
    def release_id(self) -> ReleaseId:
        return self.spec.release_id

    def __str__(self) -> str:
        return f"{self.release_id} revision {self.revision} ({self.status})"


@dataclass(frozen=True)
class DiffResult:
    """The outcome of comparing desired and observed state."""

    action: Action
    """The action needed, one of noop, install or upgrade."""

    changed_keys: frozenset[str] = frozenset()
    """Values keys added, removed or changed."""

    chart_changed: bool = False
    """True when the chart reference, version or repository changed."""


@dataclass(kw_only=True)
class ReleaseState(BaseManifest):
    """Live state of a release as seen by a backend.

    Two states compare equal only when every live resource is identical.
    """

    revision: int | None = None
    """Revision the backend currently serves, None if not installed."""

    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    """Live resources keyed by `Kind/namespace/name`."""

    def residue(self, other: "ReleaseState") -> list[str]:
        """Return resource keys that differ between the two states."""
        keys = sorted(set(self.resources) | set(other.resources))
        return [
            key for key in keys if self.resources.get(key) != other.resources.get(key)
        ]


@dataclass(frozen=True, kw_only=True)
class ApplyPayload:
    """Everything a backend needs to install or upgrade a revision."""

    spec: ReleaseSpec
    """The desired state being applied."""

    action: Action
    """The action that produced this payload."""

    revision: int
    """The revision number being created."""

    values: dict[str, Any]
    """Nested values, including the volatile applied-at marker."""

    applied_at: str
    """Timestamp of this attempt, also present in `values`."""

    description: str
    """Description recorded with the revision."""


@dataclass(kw_only=True)
class ReconcileReport(BaseManifest):
    """Result of a single reconciliation, suitable for logging or exit codes."""

    name: str
    """The release name, or the raw name when validation failed."""

    namespace: str
    """The release namespace."""

    action: Action | None = None
    """The action taken, unset if reconciliation failed before diffing."""

    revision: int | None = None
    """The resulting revision number."""

    status: RevisionStatus | None = None
    """The resulting revision status."""

    changed_keys: list[str] = field(default_factory=list)
    """Values keys that were changed by this reconciliation."""

    error: str | None = None
    """Error detail when reconciliation failed."""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        """Process exit code, 0 for noop or deployed and 1 for failures."""
        if self.ok and self.status in (None, RevisionStatus.DEPLOYED):
            return 0
        return 1
