"""Exceptions related to release-reconciler."""

__all__ = [
    "ReconcilerException",
    "ValidationError",
    "ClusterUnreachableError",
    "ApplyError",
    "FatalInconsistencyError",
    "CommandException",
    "HelmException",
    "ResourceApplyException",
]


class ReconcilerException(Exception):
    """Generic base exception used for this library."""


class ValidationError(ReconcilerException):
    """Raised when a release definition is not formatted as expected."""


class ClusterUnreachableError(ReconcilerException):
    """Raised when the cluster could not be reached to read or write state.

    This is considered transient and may be retried.
    """


class ApplyError(ReconcilerException):
    """Raised when applying a release revision has failed."""

    def __init__(
        self, release: str, revision: int, message: str | None, rolled_back: bool
    ) -> None:
        reason = message or "Unknown error"
        detail = f"Release {release} revision {revision} failed: {reason}"
        if rolled_back:
            detail += " (changes rolled back)"
        super().__init__(detail)
        self.release = release
        self.revision = revision
        self.message = message
        self.rolled_back = rolled_back


class FatalInconsistencyError(ReconcilerException):
    """Raised when an atomic rollback left resources behind."""

    def __init__(self, release: str, residue: list[str]) -> None:
        leftover = ", ".join(residue) or "revision pointer moved"
        super().__init__(f"Release {release} rollback left residue: {leftover}")
        self.release = release
        self.residue = residue


class CommandException(ReconcilerException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class ResourceApplyException(ReconcilerException):
    """Raised by a backend when a release resource could not be applied."""
