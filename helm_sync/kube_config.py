"""Adapts a cluster connection to the clients used during a release operation.

The `helm` binary only understands kubeconfig files, while diagnostics talk
to the API server through the kubernetes python client. A `RESTClientGetter`
is created per operation and hands out both views of the same connection.

```python
getter = RESTClientGetter("default", ClusterConnection(kubeconfig_file="~/.kube/config"))
core = client.CoreV1Api(client.ApiClient(getter.to_rest_config()))
kubeconfig_path = await getter.write_kubeconfig(work_dir)
```
"""

from dataclasses import dataclass
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from kubernetes import client
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError

from .config import DEFAULT_NAMESPACE
from .connection import (
    ConnectionFactory,
    build_kubeconfig,
    create_rest_config,
    default_kubeconfig_path,
)
from .exceptions import InputException
from .manifest import ClusterConnection

__all__ = [
    "RESTClientGetter",
    "RESTMapper",
    "ResourceMapping",
    "SimpleClientConfig",
]

_LOGGER = logging.getLogger(__name__)

KUBECONFIG_FILENAME = "kubeconfig.yaml"


class SimpleClientConfig:
    """A fixed client configuration for a single namespace."""

    def __init__(
        self,
        raw: dict[str, Any],
        rest_config: client.Configuration,
        namespace: str | None,
    ) -> None:
        """Initialize SimpleClientConfig."""
        self._raw = raw
        self._rest_config = rest_config
        self._namespace = namespace

    def raw_config(self) -> dict[str, Any]:
        """Return the kubeconfig document."""
        return self._raw

    def client_config(self) -> client.Configuration:
        """Return the kubernetes client configuration."""
        return self._rest_config

    def namespace(self) -> str:
        """Return the namespace, falling back to `default`."""
        return self._namespace or DEFAULT_NAMESPACE


@dataclass(frozen=True)
class ResourceMapping:
    """The API resource serving an apiVersion and kind."""

    group: str
    version: str
    resource: str
    namespaced: bool


class RESTMapper:
    """Maps `apiVersion`/`kind` pairs to API resources using discovery."""

    def __init__(self, discovery: DynamicClient) -> None:
        """Initialize RESTMapper."""
        self._discovery = discovery

    def resource_for(self, api_version: str, kind: str) -> ResourceMapping:
        """Return the resource for the kind, raising if the server has none."""
        try:
            resource = self._discovery.resources.get(api_version=api_version, kind=kind)
        except ResourceNotFoundError as err:
            raise InputException(
                f"No resource for kind {kind} in {api_version} found on the server"
            ) from err
        return ResourceMapping(
            group=resource.group,
            version=resource.api_version,
            resource=resource.name,
            namespaced=resource.namespaced,
        )


class RESTClientGetter:
    """Provides cluster clients for one operation from a connection."""

    def __init__(
        self,
        namespace: str,
        connection: ClusterConnection | None,
        connection_factory: ConnectionFactory = create_rest_config,
    ) -> None:
        """Initialize RESTClientGetter.

        A missing connection means the default kubeconfig file is used.
        """
        self._namespace = namespace
        self._connection = connection
        self._connection_factory = connection_factory
        self._raw: dict[str, Any] | None = None
        self._discovery: DynamicClient | None = None

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def connection(self) -> ClusterConnection:
        if self._connection is None:
            self._connection = ClusterConnection(
                kubeconfig_file=str(default_kubeconfig_path())
            )
        return self._connection

    def raw_kubeconfig(self) -> dict[str, Any]:
        """Return the kubeconfig document for the connection."""
        if self._raw is None:
            self._raw = build_kubeconfig(self.connection)
        return self._raw

    def to_rest_config(self) -> client.Configuration:
        """Return a kubernetes client configuration."""
        return self._connection_factory(self.connection)

    def to_discovery_client(self) -> DynamicClient:
        """Return a discovery capable client, created once per getter."""
        if self._discovery is None:
            _LOGGER.debug("Creating discovery client for %s", self._namespace)
            self._discovery = DynamicClient(client.ApiClient(self.to_rest_config()))
        return self._discovery

    def to_rest_mapper(self) -> RESTMapper:
        """Return a mapper from kinds to API resources."""
        return RESTMapper(self.to_discovery_client())

    def to_raw_kube_config_loader(self) -> SimpleClientConfig:
        """Return the kubeconfig along with the namespace for the operation."""
        return SimpleClientConfig(
            self.raw_kubeconfig(), self.to_rest_config(), self._namespace
        )

    async def write_kubeconfig(self, directory: Path) -> Path:
        """Write the kubeconfig for the helm binary, readable only by the owner."""
        path = directory / KUBECONFIG_FILENAME
        content = yaml.dump(self.raw_kubeconfig(), sort_keys=False)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.close(fd)
        async with aiofiles.open(path, mode="w") as kubeconfig_file:
            await kubeconfig_file.write(content)
        return path
