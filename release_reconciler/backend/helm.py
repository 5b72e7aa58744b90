"""Release backend that drives the `helm` command line tool.

Helm keeps its own revision records (release secrets in the namespace) and
prunes them with `--history-max`, so saving and deleting revision records are
left to helm. The desired chart reference and policy flags are recorded in the
helm revision description so they can be read back with the history:

```
Upgrade prometheus-adapter [release-reconciler {"chart_ref": "...", ...}]
```

Release resources are never rolled back by helm itself (`--atomic` is not
used). A failed apply is compensated by `restore`, which rolls back to the
previously served revision or uninstalls a release that had none.
"""

import asyncio
import datetime
import json
import logging
from pathlib import Path
import re
import tempfile
from typing import Any

import aiofiles
import yaml

from release_reconciler import command
from release_reconciler.config import HelmBackendConfig
from release_reconciler.exceptions import (
    ClusterUnreachableError,
    CommandException,
    HelmException,
    ResourceApplyException,
)
from release_reconciler.manifest import (
    VOLATILE_VALUES_KEY,
    ApplyPayload,
    ReleaseRevision,
    ReleaseSpec,
    ReleaseState,
    RevisionStatus,
)
from release_reconciler.values import flatten_values

from .backend import Backend

__all__ = [
    "HelmBackend",
]

_LOGGER = logging.getLogger(__name__)

# Seconds allowed for helm to exit beyond its own --timeout
_TIMEOUT_MARGIN = 30.0

_DESCRIPTION_MARKER = "release-reconciler"
_DESCRIPTION_RE = re.compile(r"\[" + _DESCRIPTION_MARKER + r" (\{.*\})\]\s*$")
_RECORDED_FIELDS = {"version", "repository", "atomic", "max_history", "timeout", "wait"}

_NOT_FOUND = ("release: not found", "has no deployed releases")
_UNREACHABLE = (
    "kubernetes cluster unreachable",
    "connection refused",
    "i/o timeout",
    "no such host",
    "tls handshake timeout",
    "unauthorized",
    "timed out after",
)

_STATUS_MAP = {
    "deployed": RevisionStatus.DEPLOYED,
    "superseded": RevisionStatus.SUPERSEDED,
    "failed": RevisionStatus.FAILED,
    "pending-install": RevisionStatus.PENDING,
    "pending-upgrade": RevisionStatus.PENDING,
    "pending-rollback": RevisionStatus.PENDING,
    "uninstalled": RevisionStatus.SUPERSEDED,
    "uninstalling": RevisionStatus.PENDING,
}


def _is_not_found(err: CommandException) -> bool:
    message = str(err).lower()
    return any(text in message for text in _NOT_FOUND)


def _is_unreachable(err: CommandException) -> bool:
    message = str(err).lower()
    return any(text in message for text in _UNREACHABLE)


def encode_description(spec: ReleaseSpec, text: str) -> str:
    """Append the chart reference and policy flags to a revision description."""
    recorded = {
        "chart_ref": spec.chart_ref,
        "version": spec.version,
        "repository": spec.repository,
        "atomic": spec.atomic,
        "max_history": spec.max_history,
        "timeout": spec.timeout,
        "wait": spec.wait,
    }
    recorded = {k: v for k, v in recorded.items() if v is not None}
    return f"{text} [{_DESCRIPTION_MARKER} {json.dumps(recorded, sort_keys=True)}]"


def decode_description(description: str) -> tuple[str, dict[str, Any]]:
    """Split a revision description into its text and recorded fields."""
    if not (match := _DESCRIPTION_RE.search(description)):
        return description, {}
    try:
        recorded = json.loads(match.group(1))
    except json.JSONDecodeError:
        _LOGGER.warning("Ignoring malformed revision description: %s", description)
        return description, {}
    return description[: match.start()].rstrip(), recorded


def _parse_timestamp(value: str) -> datetime.datetime:
    """Parse a helm timestamp, which may carry nanoseconds."""
    value = re.sub(r"(\.\d{6})\d+", r"\1", value.strip())
    value = value.replace(" ", "T", 1)
    try:
        timestamp = datetime.datetime.fromisoformat(value)
    except ValueError:
        _LOGGER.debug("Unable to parse helm timestamp %s", value)
        return datetime.datetime.fromtimestamp(0, datetime.timezone.utc)
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)
    return timestamp


def _resource_key(obj: dict[str, Any], namespace: str) -> str:
    metadata = obj.get("metadata") or {}
    obj_namespace = metadata.get("namespace", namespace)
    return f"{obj.get('kind')}/{obj_namespace}/{metadata.get('name')}"


class HelmBackend(Backend):
    """Backend that manages releases with the helm and kubectl binaries."""

    def __init__(self, config: HelmBackendConfig | None = None) -> None:
        """Initialize HelmBackend."""
        self._config = config or HelmBackendConfig()
        self._flags: list[str] = []
        if self._config.kubeconfig:
            self._flags.extend(["--kubeconfig", self._config.kubeconfig])
        if self._config.kube_context:
            self._flags.extend(["--kube-context", self._config.kube_context])

    def _kubectl_flags(self) -> list[str]:
        flags = []
        if self._config.kubeconfig:
            flags.extend(["--kubeconfig", self._config.kubeconfig])
        if self._config.kube_context:
            flags.extend(["--context", self._config.kube_context])
        return flags

    def _command(
        self, args: list[str], timeout: float | None = None
    ) -> command.Command:
        return command.Command(
            [self._config.helm_bin] + args + self._flags,
            exc=HelmException,
            env=self._config.env,
            timeout=timeout or self._config.read_timeout,
        )

    async def _run(self, args: list[str], timeout: float | None = None) -> str:
        """Run a helm command, mapping connectivity failures."""
        try:
            return await command.run(self._command(args, timeout))
        except CommandException as err:
            if _is_unreachable(err):
                raise ClusterUnreachableError(str(err)) from err
            raise

    async def _history(self, name: str, namespace: str) -> list[dict[str, Any]]:
        try:
            out = await self._run(
                ["history", name, "--namespace", namespace, "--output", "json"]
            )
        except CommandException as err:
            if _is_not_found(err):
                return []
            raise
        return json.loads(out) if out.strip() else []

    async def _values(self, name: str, namespace: str, revision: int) -> dict[str, str]:
        out = await self._run(
            [
                "get",
                "values",
                name,
                "--namespace",
                namespace,
                "--revision",
                str(revision),
                "--output",
                "json",
            ]
        )
        values = json.loads(out) if out.strip() else None
        values = {k: v for k, v in (values or {}).items() if k != VOLATILE_VALUES_KEY}
        return flatten_values(values)

    async def _revision(
        self, name: str, namespace: str, entry: dict[str, Any]
    ) -> ReleaseRevision:
        number = int(entry["revision"])
        text, recorded = decode_description(entry.get("description", ""))
        spec = ReleaseSpec(
            name=name,
            namespace=namespace,
            chart_ref=recorded.get("chart_ref") or entry.get("chart", ""),
            values=await self._values(name, namespace, number),
            **{k: v for k, v in recorded.items() if k in _RECORDED_FIELDS},
        )
        return ReleaseRevision(
            revision=number,
            spec=spec,
            status=_STATUS_MAP.get(entry.get("status", ""), RevisionStatus.FAILED),
            timestamp=_parse_timestamp(entry.get("updated", "")),
            description=text or None,
        )

    async def list_revisions(self, name: str, namespace: str) -> list[ReleaseRevision]:
        """Return the helm history of a release with the values of each revision."""
        entries = await self._history(name, namespace)
        revisions = await asyncio.gather(
            *(self._revision(name, namespace, entry) for entry in entries)
        )
        return sorted(revisions, key=lambda r: r.revision)

    async def save_revision(self, revision: ReleaseRevision) -> None:
        """Helm records revisions as part of each install, upgrade and rollback."""
        _LOGGER.debug("Revision records are kept by helm: %s", revision)

    async def delete_revision(self, name: str, namespace: str, revision: int) -> None:
        """Helm prunes revision records itself using --history-max."""
        _LOGGER.debug(
            "Revision records are pruned by helm: %s/%s revision %d",
            namespace,
            name,
            revision,
        )

    async def get_state(self, name: str, namespace: str) -> ReleaseState:
        """Return the deployed revision and manifest of a release."""
        entries = await self._history(name, namespace)
        deployed = [
            int(entry["revision"])
            for entry in entries
            if entry.get("status") == "deployed"
        ]
        if not deployed:
            return ReleaseState()
        revision = max(deployed)
        out = await self._run(
            [
                "get",
                "manifest",
                name,
                "--namespace",
                namespace,
                "--revision",
                str(revision),
            ]
        )
        resources = {
            _resource_key(doc, namespace): doc
            for doc in yaml.safe_load_all(out)
            if isinstance(doc, dict)
        }
        return ReleaseState(revision=revision, resources=resources)

    async def _ensure_namespace(self, spec: ReleaseSpec) -> None:
        """Create the release namespace with labels, as an idempotent apply."""
        flags = self._kubectl_flags()
        kubectl = self._config.kubectl_bin
        env = self._config.env
        create = command.Command(
            [kubectl, "create", "namespace", spec.namespace, "--dry-run=client"]
            + ["--output", "yaml"]
            + flags,
            env=env,
        )
        apply = command.Command(
            [kubectl, "apply", "--filename", "-"] + flags,
            env=env,
        )
        await command.run_piped([create, apply])
        if spec.namespace_labels:
            labels = [f"{k}={v}" for k, v in spec.namespace_labels.items()]
            await command.run(
                command.Command(
                    [kubectl, "label", "namespace", spec.namespace, "--overwrite"]
                    + labels
                    + flags,
                    env=env,
                )
            )

    async def apply(self, payload: ApplyPayload) -> None:
        """Run `helm upgrade --install` for the payload."""
        spec = payload.spec
        try:
            if spec.create_namespace and spec.namespace_labels:
                await self._ensure_namespace(spec)
            with tempfile.TemporaryDirectory(prefix="release-reconciler-") as tmp_dir:
                values_path = Path(tmp_dir) / f"{spec.name}-values.yaml"
                async with aiofiles.open(values_path, mode="w") as values_file:
                    await values_file.write(yaml.dump(payload.values, sort_keys=False))
                args = [
                    "upgrade",
                    spec.name,
                    spec.chart_ref,
                    "--install",
                    "--namespace",
                    spec.namespace,
                    "--values",
                    str(values_path),
                    "--history-max",
                    str(spec.max_history),
                    "--timeout",
                    f"{spec.timeout}s",
                    "--description",
                    encode_description(spec, payload.description),
                ]
                if spec.version:
                    args.extend(["--version", spec.version])
                if spec.repository:
                    args.extend(["--repo", spec.repository])
                if spec.wait:
                    args.append("--wait")
                if spec.create_namespace:
                    args.append("--create-namespace")
                await self._run(args, timeout=spec.timeout + _TIMEOUT_MARGIN)
        except ClusterUnreachableError:
            raise
        except CommandException as err:
            raise ResourceApplyException(str(err)) from err
        except OSError as err:
            raise ResourceApplyException(
                f"Unable to write values for {spec.release_id}: {err}"
            ) from err

    async def restore(self, name: str, namespace: str, state: ReleaseState) -> None:
        """Roll back to the revision served before, or uninstall the release."""
        if state.revision is None:
            _LOGGER.info("Uninstalling %s/%s", namespace, name)
            try:
                await self._run(["uninstall", name, "--namespace", namespace, "--wait"])
            except CommandException as err:
                if not _is_not_found(err):
                    raise
            return
        _LOGGER.info(
            "Rolling back %s/%s to revision %d", namespace, name, state.revision
        )
        await self._run(
            ["rollback", name, str(state.revision), "--namespace", namespace, "--wait"]
        )
