"""Flags and helpers shared by the release-reconciler actions."""

from argparse import ArgumentParser, BooleanOptionalAction
from collections.abc import Iterable
import logging
import pathlib
from typing import Any

import aiofiles
import yaml

from release_reconciler.backend import Backend, HelmBackend, InMemoryBackend
from release_reconciler.config import HelmBackendConfig, ReconcilerConfig, RetryConfig
from release_reconciler.exceptions import ValidationError
from release_reconciler.reconciler import Reconciler

_LOGGER = logging.getLogger(__name__)


def add_backend_flags(args: ArgumentParser) -> None:
    """Add flags that select and configure the backend."""
    args.add_argument(
        "--dry-run",
        default=False,
        action=BooleanOptionalAction,
        help="Reconcile against an empty in-memory cluster instead of helm",
    )
    args.add_argument(
        "--helm-bin",
        default="helm",
        help="Path to the helm binary",
    )
    args.add_argument(
        "--kubectl-bin",
        default="kubectl",
        help="Path to the kubectl binary",
    )
    args.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to the kubeconfig file",
    )
    args.add_argument(
        "--kube-context",
        default=None,
        help="Name of the kubeconfig context to use",
    )
    args.add_argument(
        "--retries",
        type=int,
        default=RetryConfig.max_attempts,
        help="Attempts made while the cluster is unreachable",
    )
    args.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds allowed to read release state before giving up",
    )


def build_backend(
    dry_run: bool = False,
    helm_bin: str = "helm",
    kubectl_bin: str = "kubectl",
    kubeconfig: str | None = None,
    kube_context: str | None = None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> Backend:
    """Create the backend selected by the command line flags."""
    if dry_run:
        _LOGGER.info("Using in-memory backend")
        return InMemoryBackend()
    return HelmBackend(
        HelmBackendConfig(
            helm_bin=helm_bin,
            kubectl_bin=kubectl_bin,
            kubeconfig=kubeconfig,
            kube_context=kube_context,
        )
    )


def build_reconciler(
    retries: int = RetryConfig.max_attempts,
    timeout: float | None = None,
    **kwargs: Any,
) -> Reconciler:
    """Create a Reconciler from the command line flags."""
    config = ReconcilerConfig(retry=RetryConfig(max_attempts=retries), timeout=timeout)
    return Reconciler(build_backend(**kwargs), config)


async def load_documents(paths: Iterable[pathlib.Path]) -> list[dict[str, Any]]:
    """Read every release document from the YAML files."""
    docs: list[dict[str, Any]] = []
    for path in paths:
        async with aiofiles.open(path) as stream:
            content = await stream.read()
        try:
            file_docs = list(yaml.safe_load_all(content))
        except yaml.YAMLError as err:
            raise ValidationError(f"Unable to parse {path}: {err}") from err
        for doc in file_docs:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise ValidationError(f"Document in {path} is not a mapping: {doc!r}")
            docs.append(doc)
    _LOGGER.debug("Loaded %d release documents", len(docs))
    return docs
