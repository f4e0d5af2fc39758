"""Construction of cluster client configuration from connection settings.

A `ClusterConnection` is turned into a kubeconfig document, which is the
single form understood by both the kubernetes python client and the helm
binary. Inline connections are synthesized into a one-context kubeconfig.
"""

from collections.abc import Callable
import logging
import os
from pathlib import Path
import threading
from typing import Any

import yaml
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .exceptions import ConnectionConfigError, HelmSyncException
from .manifest import ClusterConnection

__all__ = [
    "build_kubeconfig",
    "create_rest_config",
    "is_auth_error",
    "default_kubeconfig_path",
    "ConnectionFactory",
    "CachedConnectionFactory",
]

_LOGGER = logging.getLogger(__name__)

_CLUSTER_NAME = "cluster"
_USER_NAME = "user"
_CONTEXT_NAME = "context"

# Message fragments for authentication failures reported as plain text by
# helm or by the kubernetes client.
_AUTH_ERROR_MARKERS = (
    "Unauthorized",
    "provide credentials",
    "invalid bearer token",
    "token has expired",
    "token expired",
)

ConnectionFactory = Callable[[ClusterConnection], client.Configuration]


def default_kubeconfig_path() -> Path:
    """Return the kubeconfig path from $KUBECONFIG or the home directory."""
    if kubeconfig := os.environ.get("KUBECONFIG"):
        return Path(kubeconfig.split(os.pathsep)[0])
    if not (home := os.environ.get("HOME")):
        raise ConnectionConfigError(
            "KUBECONFIG environment variable is not set and HOME directory could "
            "not be determined. Set KUBECONFIG, e.g. export KUBECONFIG=~/.kube/config"
        )
    return Path(home) / ".kube" / "config"


def _inline_kubeconfig(conn: ClusterConnection) -> dict[str, Any]:
    cluster: dict[str, Any] = {"server": conn.host}
    if conn.cluster_ca_certificate:
        cluster["certificate-authority-data"] = conn.cluster_ca_certificate
    if conn.insecure:
        cluster["insecure-skip-tls-verify"] = True
    if not conn.cluster_ca_certificate and not conn.insecure:
        raise ConnectionConfigError(
            "cluster_ca_certificate is required for secure connections (or set insecure=true)"
        )
    if conn.proxy_url:
        cluster["proxy-url"] = conn.proxy_url

    user: dict[str, Any] = {}
    if conn.token:
        user["token"] = conn.token
    if conn.client_certificate and conn.client_key:
        user["client-certificate-data"] = conn.client_certificate
        user["client-key-data"] = conn.client_key
    if conn.exec:
        user["exec"] = {
            "apiVersion": conn.exec.api_version,
            "command": conn.exec.command,
            "args": list(conn.exec.args),
            "env": [{"name": k, "value": v} for k, v in conn.exec.env.items()],
            "interactiveMode": "Never",
        }
    if not user:
        raise ConnectionConfigError(
            "no authentication method specified: provide token, client certificates, "
            "or exec configuration"
        )

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": _CLUSTER_NAME, "cluster": cluster}],
        "users": [{"name": _USER_NAME, "user": user}],
        "contexts": [
            {
                "name": _CONTEXT_NAME,
                "context": {"cluster": _CLUSTER_NAME, "user": _USER_NAME},
            }
        ],
        "current-context": _CONTEXT_NAME,
    }


def _select_context(doc: Any, context: str | None, source: str) -> dict[str, Any]:
    if not isinstance(doc, dict):
        raise ConnectionConfigError(f"failed to parse kubeconfig from {source}")
    if context:
        names = [ctx.get("name") for ctx in doc.get("contexts") or []]
        if context not in names:
            raise ConnectionConfigError(
                f"context {context!r} not found in kubeconfig from {source}"
            )
        doc = {**doc, "current-context": context}
    return doc


def build_kubeconfig(conn: ClusterConnection) -> dict[str, Any]:
    """Return a kubeconfig document for the connection."""
    if conn.host:
        return _inline_kubeconfig(conn)
    if conn.kubeconfig_file:
        path = Path(conn.kubeconfig_file).expanduser()
        try:
            content = path.read_text()
        except OSError as err:
            raise ConnectionConfigError(
                f"failed to read kubeconfig file {path}: {err}"
            ) from err
        try:
            doc = yaml.load(content, Loader=yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise ConnectionConfigError(f"failed to parse kubeconfig: {err}") from err
        return _select_context(doc, conn.context, str(path))
    if conn.kubeconfig:
        try:
            doc = yaml.load(conn.kubeconfig, Loader=yaml.SafeLoader)
        except yaml.YAMLError as err:
            raise ConnectionConfigError(f"failed to parse kubeconfig: {err}") from err
        return _select_context(doc, conn.context, "raw kubeconfig")
    raise ConnectionConfigError("no connection configuration provided")


def create_rest_config(conn: ClusterConnection) -> client.Configuration:
    """Return a kubernetes client configuration for the connection."""
    kubeconfig = build_kubeconfig(conn)
    configuration = client.Configuration()
    try:
        config.load_kube_config_from_dict(
            kubeconfig,
            context=kubeconfig.get("current-context"),
            client_configuration=configuration,
        )
    except ConfigException as err:
        raise ConnectionConfigError(f"failed to load kubeconfig: {err}") from err
    return configuration


def is_auth_error(err: BaseException) -> bool:
    """Return true if the error means the cluster rejected our credentials."""
    if isinstance(err, ApiException):
        return err.status == 401
    if isinstance(err, (HelmSyncException, ConfigException)):
        message = str(err)
        return any(marker in message for marker in _AUTH_ERROR_MARKERS)
    return False


class CachedConnectionFactory:
    """Creates client configurations, reusing them for identical connections.

    Entries are keyed by `ClusterConnection.fingerprint()` so any change to
    the host, credentials, exec plugin or proxy yields a new entry.
    """

    def __init__(
        self, factory: ConnectionFactory = create_rest_config
    ) -> None:
        """Initialize CachedConnectionFactory."""
        self._factory = factory
        self._cache: dict[str, client.Configuration] = {}
        self._lock = threading.Lock()

    def __call__(self, conn: ClusterConnection) -> client.Configuration:
        """Return a cached configuration or create a new one."""
        key = conn.fingerprint()
        if (cached := self._cache.get(key)) is not None:
            return cached
        with self._lock:
            # Another thread may have populated the entry while we waited
            if (cached := self._cache.get(key)) is not None:
                return cached
            _LOGGER.debug("Creating client configuration for %s", key[:12])
            configuration = self._factory(conn)
            self._cache[key] = configuration
            return configuration

    def clear(self) -> None:
        """Remove all cached configurations."""
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
