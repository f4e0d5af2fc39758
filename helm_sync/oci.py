"""Library for pulling helm charts from OCI registries.

Charts are stored in a registry as a manifest with a single chart content
layer holding the `.tgz` archive. Only that layer is downloaded.
"""

import asyncio
import base64
from dataclasses import dataclass
import json
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from oras.client import OrasClient

from .exceptions import ChartLoadError
from .manifest import DIGEST_SEPARATOR, OCI_SCHEME

__all__ = [
    "Auth",
    "RegistryClient",
    "get_auth_from_docker_config",
    "chart_reference",
]

_LOGGER = logging.getLogger(__name__)

CHART_LAYER_MEDIA_TYPE = "application/vnd.cncf.helm.chart.content.v1.tar+gzip"


@dataclass
class Auth:
    """Authentication credentials."""

    username: str
    password: str


def _registry_host(ref: str) -> str:
    """Return the registry host of a reference with or without a scheme."""
    if not ref.startswith(OCI_SCHEME):
        ref = f"{OCI_SCHEME}{ref}"
    return urlparse(ref).netloc


def get_auth_from_docker_config(registry_url: str, content: str) -> Auth | None:
    """Return the username and password for a registry from a docker config.json.

    This will parse the `auths` section and find the matching entry for the
    host of the registry url.
    """
    try:
        if not (docker_config := json.loads(content)):
            return None
    except json.JSONDecodeError as err:
        raise ChartLoadError(f"Registry config contains invalid json: {err}") from err

    if not (auths := docker_config.get("auths")):
        _LOGGER.debug("No auths found in registry config")
        return None

    server_name = _registry_host(registry_url)
    server_auth = auths.get(server_name) or auths.get(f"https://{server_name}")
    if not server_auth:
        _LOGGER.debug("No auth found for server %s in registry config", server_name)
        return None

    if username := server_auth.get("username"):
        return Auth(username=username, password=server_auth.get("password", ""))

    if not (auth_str := server_auth.get("auth")):
        _LOGGER.debug("No auth string found for server %s in registry config", server_name)
        return None

    decoded_auth = base64.b64decode(auth_str).decode("utf-8")
    username, password = decoded_auth.split(":", 1)
    return Auth(username=username, password=password)


def chart_reference(repository: str | None, chart: str, version: str) -> str:
    """Return the registry reference for a chart version without the scheme.

    A version with a digest suffix pins the reference to that digest.
    """
    if chart.startswith(OCI_SCHEME):
        base = chart[len(OCI_SCHEME) :]
    elif repository:
        base = f"{repository[len(OCI_SCHEME):].rstrip('/')}/{chart}"
    else:
        raise ChartLoadError(f"No registry found for chart {chart}")
    if DIGEST_SEPARATOR in version:
        _, digest = version.split(DIGEST_SEPARATOR, 1)
        return f"{base}{DIGEST_SEPARATOR}{digest}"
    return f"{base}:{version}"


def _find_chart_layer(manifest: dict[str, Any], ref: str) -> dict[str, Any]:
    for layer in manifest.get("layers") or []:
        if layer.get("mediaType") == CHART_LAYER_MEDIA_TYPE:
            return layer
    raise ChartLoadError(f"Manifest for {ref} does not contain a helm chart layer")


class RegistryClient:
    """Pulls chart archives from OCI registries.

    Explicit credentials take precedence over a docker config.json file.
    """

    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        registry_config_path: str | None = None,
    ) -> None:
        """Initialize RegistryClient."""
        self._username = username
        self._password = password
        self._registry_config_path = registry_config_path
        self._client = OrasClient()
        self._logged_in: set[str] = set()

    def _auth(self, host: str) -> Auth | None:
        if self._username and self._password:
            return Auth(username=self._username, password=self._password)
        if self._registry_config_path:
            path = Path(self._registry_config_path).expanduser()
            try:
                content = path.read_text()
            except OSError as err:
                raise ChartLoadError(
                    f"Unable to read registry config {path}: {err}"
                ) from err
            return get_auth_from_docker_config(host, content)
        return None

    def _login(self, host: str) -> None:
        if host in self._logged_in:
            return
        if auth := self._auth(host):
            _LOGGER.info("Using authentication for OCI registry %s", host)
            self._client.login(
                hostname=host, username=auth.username, password=auth.password
            )
        self._logged_in.add(host)

    def _pull(self, ref: str, outfile: Path) -> Path:
        self._login(_registry_host(ref))
        manifest = self._client.get_manifest(ref)
        layer = _find_chart_layer(manifest, ref)
        _LOGGER.debug("Downloading chart layer %s of %s", layer.get("digest"), ref)
        self._client.download_blob(ref, layer["digest"], str(outfile))
        return outfile

    async def pull(self, ref: str, dest_dir: Path) -> Path:
        """Download the chart archive of a reference into a directory."""
        name = ref.rsplit("/", 1)[-1].replace(":", "-").replace("@", "-")
        outfile = dest_dir / f"{name}.tgz"
        _LOGGER.info("Pulling chart %s", ref)
        try:
            return await asyncio.to_thread(self._pull, ref, outfile)
        except ChartLoadError:
            raise
        except Exception as err:
            raise ChartLoadError(f"Failed to pull chart {ref}: {err}") from err
