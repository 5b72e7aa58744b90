"""
The backend module provides access to the release state held in a cluster.

- Revisions are keyed by release name and namespace.
- Live state is returned as a `ReleaseState` that can be compared deeply to
  verify a rollback.

This abstract interface allows for various implementations (in-memory, helm).
"""

from .backend import Backend
from .in_memory import InMemoryBackend
from .helm import HelmBackend

__all__ = [
    "Backend",
    "InMemoryBackend",
    "HelmBackend",
]
