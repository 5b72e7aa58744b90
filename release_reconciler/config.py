"""Configuration objects for release-reconciler."""

from dataclasses import dataclass, field


@dataclass
class RetryConfig:
    """Exponential backoff used when the cluster is unreachable."""

    max_attempts: int = 5
    initial_backoff: float = 0.5
    max_backoff: float = 8.0
    multiplier: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given zero based failed attempt."""
        return min(self.initial_backoff * (self.multiplier**attempt), self.max_backoff)


@dataclass
class ReconcilerConfig:
    """Configuration for the Reconciler."""

    retry: RetryConfig = field(default_factory=RetryConfig)

    timeout: float | None = None
    """Overall seconds allowed before an apply starts, None for no limit."""


@dataclass
class HelmBackendConfig:
    """Configuration for the helm backend."""

    helm_bin: str = "helm"
    kubectl_bin: str = "kubectl"
    kubeconfig: str | None = None
    kube_context: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    """Extra environment for every subprocess, e.g. cloud credentials."""

    read_timeout: float = 60.0
    """Seconds allowed for read only commands."""
