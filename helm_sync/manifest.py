"""Representation of releases, their desired state and their observed state.

A `ReleaseSpec` is what an operator declares: the chart, where it comes
from, the value overrides and the install options. A `ReleaseState` is what
is tracked after a release has been applied, and is serialized by the caller
between runs. A `Release` is the packaging engine's own record of a release
as returned by helm.
"""

from dataclasses import dataclass, field, replace
import enum
import hashlib
import logging
import os
from pathlib import Path
import re
from typing import Any, cast

import aiofiles
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .config import DEFAULT_MAX_HISTORY, DEFAULT_NAMESPACE, DEFAULT_TIMEOUT
from .exceptions import InputException, InternalError

__all__ = [
    "read_state",
    "write_state",
    "SetValue",
    "ExecConfig",
    "ClusterConnection",
    "ReleaseSpec",
    "ReleaseStatus",
    "Release",
    "ReleaseState",
    "ChartDependency",
    "ChartMetadata",
    "Chart",
    "is_oci_reference",
]

_LOGGER = logging.getLogger(__name__)

OCI_SCHEME = "oci://"
DIGEST_SEPARATOR = "@sha256:"
REDACTED = "(sensitive value)"

_FRACTIONAL_SECONDS = re.compile(r"(T\d{2}:\d{2}:\d{2})\.\d+")


def is_oci_reference(chart: str, repository: str | None) -> bool:
    """Return true if the chart or its repository is an OCI registry."""
    return chart.startswith(OCI_SCHEME) or (repository or "").startswith(OCI_SCHEME)


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all serializable objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized object."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True


@dataclass
class SetValue(BaseManifest):
    """A single `name=value` override."""

    name: str
    """Dotted path of the value, `\\.` escapes a literal dot."""

    value: str
    """Raw string value."""


@dataclass
class ExecConfig(BaseManifest):
    """A credential plugin used to obtain a token for the cluster."""

    api_version: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class ClusterConnection(BaseManifest):
    """How to reach the cluster a release is deployed to.

    Exactly one of an inline `host`, a `kubeconfig_file` or raw
    `kubeconfig` content is expected.
    """

    host: str | None = None
    cluster_ca_certificate: str | None = None
    """Base64 encoded CA bundle for the API server."""

    insecure: bool | None = None
    token: str | None = None
    client_certificate: str | None = None
    """Base64 encoded client certificate."""

    client_key: str | None = None
    """Base64 encoded client key."""

    proxy_url: str | None = None
    exec: ExecConfig | None = None

    kubeconfig_file: str | None = None
    """Path to a kubeconfig file."""

    kubeconfig: str | None = None
    """Raw kubeconfig content."""

    context: str | None = None
    """Context to select from a kubeconfig."""

    def fingerprint(self) -> str:
        """Return a stable hash of every field that affects the connection."""
        digest = hashlib.sha256()
        for value in (
            self.host,
            self.cluster_ca_certificate,
            self.kubeconfig_file,
            self.kubeconfig,
            self.context,
            self.token,
            self.client_certificate,
            self.client_key,
            self.insecure,
            self.proxy_url,
        ):
            digest.update(repr(value).encode("utf-8"))
            digest.update(b"\0")
        if self.exec:
            digest.update(self.exec.api_version.encode("utf-8"))
            digest.update(self.exec.command.encode("utf-8"))
            for arg in self.exec.args:
                digest.update(arg.encode("utf-8"))
            for key in sorted(self.exec.env):
                digest.update(key.encode("utf-8"))
                digest.update(self.exec.env[key].encode("utf-8"))
        return digest.hexdigest()


@dataclass
class ReleaseSpec(BaseManifest):
    """The desired state of a helm release."""

    name: str
    """Release name, immutable once the release exists."""

    chart: str
    """A local chart path, or the chart name within `repository`."""

    namespace: str = DEFAULT_NAMESPACE
    """Target namespace, immutable once the release exists."""

    repository: str | None = None
    """Repository URL, either `https://...` or `oci://...`."""

    version: str | None = None
    """Chart version. May carry an `@sha256:` digest suffix."""

    values: str | None = None
    """Raw YAML values document."""

    set: list[SetValue] = field(default_factory=list)
    set_sensitive: list[SetValue] = field(default_factory=list)
    set_list: list[SetValue] = field(default_factory=list)

    repository_username: str | None = None
    repository_password: str | None = None
    repository_cert_file: str | None = None
    repository_key_file: str | None = None
    repository_ca_file: str | None = None
    pass_credentials: bool = False
    registry_config_path: str | None = None

    create_namespace: bool = False
    skip_crds: bool = False
    disable_hooks: bool = False
    wait: bool = True
    wait_for_jobs: bool = False
    atomic: bool = False
    """Roll back (or uninstall, on first install) when the release fails."""

    dependency_update: bool = False
    reuse_values: bool = False
    force_destroy: bool = False
    timeout: str = DEFAULT_TIMEOUT
    max_history: int = DEFAULT_MAX_HISTORY
    description: str | None = None

    cluster: ClusterConnection | None = None

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def is_oci(self) -> bool:
        """Return true if the chart comes from an OCI registry."""
        return is_oci_reference(self.chart, self.repository)

    def redacted(self) -> "ReleaseSpec":
        """Return a copy with credentials and sensitive values hidden."""
        return replace(
            self,
            set_sensitive=[
                SetValue(name=item.name, value=REDACTED) for item in self.set_sensitive
            ],
            repository_password=REDACTED if self.repository_password else None,
        )


class ReleaseStatus(str, enum.Enum):
    """Status of a release as reported by the packaging engine."""

    DEPLOYED = "deployed"
    FAILED = "failed"
    SUPERSEDED = "superseded"
    UNINSTALLING = "uninstalling"
    UNINSTALLED = "uninstalled"
    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> "ReleaseStatus":
        try:
            return cls(value)
        except ValueError:
            _LOGGER.debug("Unrecognized release status %s", value)
            return cls.UNKNOWN

    def __str__(self) -> str:
        return self.value


def _rfc3339(value: str | None) -> str | None:
    """Drop the fractional seconds helm includes in its timestamps."""
    if not value:
        return None
    return _FRACTIONAL_SECONDS.sub(r"\1", value)


@dataclass
class Release:
    """A release record returned by the packaging engine."""

    name: str
    namespace: str
    revision: int
    status: ReleaseStatus
    chart_name: str | None = None
    chart_version: str | None = None
    app_version: str | None = None
    chart_description: str | None = None
    first_deployed: str | None = None
    last_deployed: str | None = None
    description: str | None = None
    notes: str | None = None
    manifest: str = ""

    @classmethod
    def parse_doc(cls, doc: Any) -> "Release":
        """Parse the json document printed by `helm ... -o json`."""
        if not isinstance(doc, dict):
            raise InternalError(f"Expected a release object from helm, got {type(doc)}")
        if not (name := doc.get("name")):
            raise InternalError(f"Release from helm is missing a name: {doc}")
        info = doc.get("info") or {}
        metadata = (doc.get("chart") or {}).get("metadata") or {}
        return cls(
            name=name,
            namespace=doc.get("namespace", ""),
            revision=int(doc.get("version", 0)),
            status=ReleaseStatus.parse(info.get("status")),
            chart_name=metadata.get("name"),
            chart_version=metadata.get("version"),
            app_version=metadata.get("appVersion"),
            chart_description=metadata.get("description"),
            first_deployed=_rfc3339(info.get("first_deployed")),
            last_deployed=_rfc3339(info.get("last_deployed")),
            description=info.get("description"),
            notes=info.get("notes"),
            manifest=doc.get("manifest", ""),
        )

    @property
    def metadata(self) -> dict[str, str]:
        """Metadata about the release, omitting anything not reported."""
        values = {
            "chart_name": self.chart_name,
            "chart_version": self.chart_version,
            "app_version": self.app_version,
            "description": self.chart_description,
            "first_deployed": self.first_deployed,
            "last_deployed": self.last_deployed,
            "notes": self.notes,
        }
        return {k: v for k, v in values.items() if v}


@dataclass
class ReleaseState(BaseManifest):
    """A tracked release: the definition last applied plus what helm reported."""

    id: str
    """Opaque identifier of this tracked instance."""

    spec: ReleaseSpec

    revision: int | None = None
    status: ReleaseStatus | None = None
    manifest: str | None = None
    """Rendered manifest. Sensitive: may contain rendered secret values."""

    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def namespace(self) -> str:
        return self.spec.namespace

    def refresh(self, release: Release) -> "ReleaseState":
        """Return a copy with computed fields taken from the live release."""
        return replace(
            self,
            revision=release.revision,
            status=release.status,
            manifest=release.manifest,
            metadata=release.metadata,
        )

    def redacted(self) -> "ReleaseState":
        """Return a copy safe to print."""
        return replace(
            self,
            spec=self.spec.redacted(),
            manifest=REDACTED if self.manifest else None,
        )


@dataclass
class ChartDependency(BaseManifest):
    """A dependency declared in Chart.yaml."""

    name: str
    version: str | None = None
    repository: str | None = None

    @classmethod
    def parse_doc(cls, doc: Any) -> "ChartDependency":
        """Parse an entry of the Chart.yaml dependencies list."""
        if not isinstance(doc, dict) or not doc.get("name"):
            raise InputException(f"Invalid Chart.yaml dependency missing name: {doc}")
        return cls(
            name=str(doc["name"]),
            version=str(doc["version"]) if doc.get("version") is not None else None,
            repository=doc.get("repository"),
        )


@dataclass
class ChartMetadata(BaseManifest):
    """Contents of a Chart.yaml file."""

    name: str
    version: str
    api_version: str | None = None
    app_version: str | None = None
    description: str | None = None
    dependencies: list[ChartDependency] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, doc: Any) -> "ChartMetadata":
        """Parse a Chart.yaml document."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid Chart.yaml, expected a mapping: {doc}")
        if not (name := doc.get("name")):
            raise InputException(f"Invalid Chart.yaml missing name: {doc}")
        if not (version := doc.get("version")):
            raise InputException(f"Invalid Chart.yaml missing version: {doc}")
        return cls(
            name=name,
            version=str(version),
            api_version=doc.get("apiVersion"),
            app_version=(
                str(doc["appVersion"]) if doc.get("appVersion") is not None else None
            ),
            description=doc.get("description"),
            dependencies=[
                ChartDependency.parse_doc(dep) for dep in doc.get("dependencies") or []
            ],
        )


@dataclass
class Chart:
    """A chart loaded and ready to hand to the packaging engine."""

    metadata: ChartMetadata
    path: Path
    """Chart directory or `.tgz` archive."""

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def version(self) -> str:
        return self.metadata.version


async def read_state(state_path: Path) -> ReleaseState:
    """Return the contents of a serialized state file from disk."""
    async with aiofiles.open(str(state_path)) as state_file:
        content = await state_file.read()
        if not content:
            raise InputException(f"State file {state_path} is empty")
        return cast(ReleaseState, ReleaseState.parse_yaml(content))


async def write_state(state_path: Path, state: ReleaseState) -> None:
    """Write the specified state to disk, readable only by its owner.

    The state holds sensitive values, credentials and the rendered manifest.
    """
    content = state.yaml()
    fd = os.open(state_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    os.close(fd)
    async with aiofiles.open(str(state_path), mode="w") as state_file:
        await state_file.write(content)
