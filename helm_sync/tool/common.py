"""Flags and helpers shared by the helm-sync actions."""

from argparse import ArgumentParser
import logging
import pathlib
from typing import Any, cast

import aiofiles
from aiofiles.ospath import exists

from helm_sync.config import HelmConfig
from helm_sync.exceptions import InputException
from helm_sync.lifecycle import ReleaseLifecycle
from helm_sync.manifest import ReleaseSpec, ReleaseState, read_state

from .format import print_table

_LOGGER = logging.getLogger(__name__)

STATUS_COLUMNS = ["namespace", "name", "revision", "status", "chart", "version"]


def add_release_flag(args: ArgumentParser) -> None:
    """Add the flag for the release definition file."""
    args.add_argument(
        "release_file",
        type=pathlib.Path,
        help="YAML file containing the release definition",
    )


def add_state_flag(args: ArgumentParser, required: bool = False) -> None:
    """Add the flag for the file holding the tracked release state."""
    args.add_argument(
        "--state-file",
        type=pathlib.Path,
        required=required,
        help="YAML file where the release state is stored between runs",
    )


def add_helm_flags(args: ArgumentParser) -> None:
    """Add flags that control how the helm binary is invoked."""
    args.add_argument(
        "--helm-bin",
        type=str,
        default="helm",
        help="Path or name of the helm executable",
    )
    args.add_argument(
        "--storage-driver",
        type=str,
        default="secret",
        help="Helm release storage backend",
    )
    args.add_argument(
        "--work-dir",
        type=pathlib.Path,
        default=None,
        help="Parent directory for temporary files created during an operation",
    )


def build_lifecycle(
    helm_bin: str = "helm",
    storage_driver: str = "secret",
    work_dir: pathlib.Path | None = None,
    **kwargs: Any,
) -> ReleaseLifecycle:
    """Return the lifecycle configured from the command line flags."""
    return ReleaseLifecycle(
        work_dir=work_dir,
        helm_config=HelmConfig(helm_bin=helm_bin, storage_driver=storage_driver),
    )


async def read_spec(release_file: pathlib.Path) -> ReleaseSpec:
    """Return the release definition from a YAML file."""
    if not await exists(release_file):
        raise InputException(f"Release file {release_file} does not exist")
    async with aiofiles.open(str(release_file)) as spec_file:
        content = await spec_file.read()
    if not content:
        raise InputException(f"Release file {release_file} is empty")
    return cast(ReleaseSpec, ReleaseSpec.parse_yaml(content))


async def read_optional_state(state_file: pathlib.Path | None) -> ReleaseState | None:
    """Return the stored state if the state file exists."""
    if state_file is None or not await exists(state_file):
        return None
    return await read_state(state_file)


def status_row(state: ReleaseState) -> dict[str, Any]:
    """Return the summary of a release state for display."""
    return {
        "namespace": state.namespace,
        "name": state.name,
        "revision": state.revision,
        "status": state.status,
        "chart": state.metadata.get("chart_name", state.spec.chart),
        "version": state.metadata.get("chart_version", state.spec.version or ""),
    }


def print_status(state: ReleaseState) -> None:
    """Print a one line summary of a release state."""
    print_table(STATUS_COLUMNS, [status_row(state)])
