"""Library for driving the `helm` binary to manage releases on a cluster.

Each operation runs `helm` with an explicit `--kubeconfig` written for the
operation and parses the release printed with `-o json`:

```python
from helm_sync.helm import HelmCli, InstallOptions

helm = await HelmCli.from_getter(getter, work_dir)
release = await helm.install(
    "podinfo", "podinfo", chart, {"replicaCount": 2}, InstallOptions()
)
print(f"Installed {release.name} revision {release.revision}")
```

Waiting is always passed explicitly: `--wait=watcher` waits for resources
to become ready, `--wait=hookOnly` only waits for hooks. Installs and
upgrades always use server side apply with forced conflicts.
"""

from dataclasses import dataclass
import datetime
import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import aiofiles
import yaml

from . import command
from .config import HelmConfig
from .duration import format_duration
from .exceptions import HelmException, InternalError, ReleaseNotFoundError
from .kube_config import RESTClientGetter
from .manifest import Chart, Release

__all__ = [
    "HelmCli",
    "ReleaseEngine",
    "InstallOptions",
    "UpgradeOptions",
    "UninstallOptions",
    "WAIT_WATCHER",
    "WAIT_HOOK_ONLY",
]

_LOGGER = logging.getLogger(__name__)

WAIT_WATCHER = "watcher"
WAIT_HOOK_ONLY = "hookOnly"

_NOT_FOUND = "release: not found"
_DEFAULT_TIMEOUT = datetime.timedelta(seconds=300)


def _wait_strategy(wait: bool) -> str:
    return WAIT_WATCHER if wait else WAIT_HOOK_ONLY


@dataclass
class ApplyOptions:
    """Options shared by install and upgrade."""

    timeout: datetime.timedelta = _DEFAULT_TIMEOUT
    """How long helm waits for the release before giving up."""

    wait: bool = True
    """Wait for resources to be ready, otherwise only for hooks."""

    wait_for_jobs: bool = False
    rollback_on_failure: bool = False
    skip_crds: bool = False
    disable_hooks: bool = False
    description: str | None = None

    server_side: bool = True
    force_conflicts: bool = True

    @property
    def wait_strategy(self) -> str:
        return _wait_strategy(self.wait)

    @property
    def args(self) -> list[str]:
        """Helm CLI arguments built from the options."""
        args = [
            f"--wait={self.wait_strategy}",
            "--timeout",
            format_duration(self.timeout),
            f"--server-side={str(self.server_side).lower()}",
        ]
        if self.force_conflicts:
            args.append("--force-conflicts")
        if self.wait_for_jobs:
            args.append("--wait-for-jobs")
        if self.rollback_on_failure:
            args.append("--rollback-on-failure")
        if self.skip_crds:
            args.append("--skip-crds")
        if self.disable_hooks:
            args.append("--no-hooks")
        if self.description:
            args.extend(["--description", self.description])
        return args


@dataclass
class InstallOptions(ApplyOptions):
    """Options for `helm install`."""

    create_namespace: bool = False

    @property
    def args(self) -> list[str]:
        args = super().args
        if self.create_namespace:
            args.append("--create-namespace")
        return args


@dataclass
class UpgradeOptions(ApplyOptions):
    """Options for `helm upgrade`."""

    cleanup_on_fail: bool = False
    """Delete new resources created by a failed upgrade."""

    max_history: int = 10
    reuse_values: bool = False

    @property
    def args(self) -> list[str]:
        args = super().args
        args.extend(["--history-max", str(self.max_history)])
        if self.cleanup_on_fail:
            args.append("--cleanup-on-fail")
        if self.reuse_values:
            args.append("--reuse-values")
        return args


@dataclass
class UninstallOptions:
    """Options for `helm uninstall`."""

    timeout: datetime.timedelta = _DEFAULT_TIMEOUT
    disable_hooks: bool = False
    wait: bool = False

    @property
    def args(self) -> list[str]:
        args = [
            f"--wait={_wait_strategy(self.wait)}",
            "--timeout",
            format_duration(self.timeout),
        ]
        if self.disable_hooks:
            args.append("--no-hooks")
        return args


class ReleaseEngine(Protocol):
    """The release primitives used by the lifecycle."""

    async def get(self, name: str, namespace: str) -> Release:
        """Return the latest release, raising ReleaseNotFoundError if missing."""

    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: InstallOptions,
    ) -> Release:
        """Install a new release."""

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: UpgradeOptions,
    ) -> Release:
        """Upgrade an existing release."""

    async def uninstall(
        self, name: str, namespace: str, options: UninstallOptions
    ) -> None:
        """Uninstall a release."""

    async def dependency_update(self, chart_dir: Path) -> None:
        """Download the dependencies declared by a chart into its charts/ directory."""


class HelmCli:
    """Manages releases by invoking the helm binary."""

    def __init__(
        self,
        kubeconfig: Path,
        work_dir: Path,
        config: HelmConfig | None = None,
    ) -> None:
        """Initialize HelmCli."""
        self._kubeconfig = kubeconfig
        self._work_dir = work_dir
        self._config = config or HelmConfig()

    @classmethod
    async def from_getter(
        cls,
        getter: RESTClientGetter,
        work_dir: Path,
        config: HelmConfig | None = None,
    ) -> "HelmCli":
        """Create an instance that talks to the cluster of the getter."""
        kubeconfig = await getter.write_kubeconfig(work_dir)
        return cls(kubeconfig, work_dir, config)

    def _command(
        self, args: list[str], timeout: datetime.timedelta | None = None
    ) -> command.Command:
        cmd = [self._config.helm_bin, *args, "--kubeconfig", str(self._kubeconfig)]
        cmd.extend(self._config.base_args)
        cmd_obj = command.Command(cmd, exc=HelmException, env=self._config.command_env)
        if timeout is not None:
            cmd_obj.timeout = timeout.total_seconds() + self._config.command_grace_period
        return cmd_obj

    async def _run(
        self, args: list[str], timeout: datetime.timedelta | None = None
    ) -> str:
        try:
            return await command.run(self._command(args, timeout))
        except HelmException as err:
            if _NOT_FOUND in err.stderr:
                not_found = ReleaseNotFoundError(str(err))
                not_found.stderr = err.stderr
                raise not_found from err
            raise

    async def _run_release(
        self, args: list[str], timeout: datetime.timedelta | None = None
    ) -> Release:
        out = await self._run([*args, "-o", "json"], timeout)
        try:
            doc = json.loads(out)
        except json.JSONDecodeError as err:
            raise InternalError(f"Unable to parse helm output as json: {err}") from err
        return Release.parse_doc(doc)

    async def _write_values(self, name: str, values: dict[str, Any]) -> Path:
        values_path = self._work_dir / f"{name}-values.yaml"
        fd = os.open(values_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.close(fd)
        async with aiofiles.open(values_path, mode="w") as values_file:
            await values_file.write(yaml.dump(values, sort_keys=False))
        return values_path

    async def get(self, name: str, namespace: str) -> Release:
        """Return the latest release, raising ReleaseNotFoundError if missing."""
        return await self._run_release(["status", name, "--namespace", namespace])

    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: InstallOptions,
    ) -> Release:
        """Install a new release."""
        values_path = await self._write_values(name, values)
        args = [
            "install",
            name,
            str(chart.path),
            "--namespace",
            namespace,
            "--values",
            str(values_path),
        ]
        args.extend(options.args)
        _LOGGER.info("Installing %s/%s chart %s", namespace, name, chart.name)
        return await self._run_release(args, options.timeout)

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: UpgradeOptions,
    ) -> Release:
        """Upgrade an existing release."""
        values_path = await self._write_values(name, values)
        args = [
            "upgrade",
            name,
            str(chart.path),
            "--namespace",
            namespace,
            "--values",
            str(values_path),
        ]
        args.extend(options.args)
        _LOGGER.info("Upgrading %s/%s chart %s", namespace, name, chart.name)
        return await self._run_release(args, options.timeout)

    async def uninstall(
        self, name: str, namespace: str, options: UninstallOptions
    ) -> None:
        """Uninstall a release."""
        args = ["uninstall", name, "--namespace", namespace]
        args.extend(options.args)
        _LOGGER.info("Uninstalling %s/%s", namespace, name)
        await self._run(args, options.timeout)

    async def dependency_update(self, chart_dir: Path) -> None:
        """Download the dependencies declared by a chart into its charts/ directory."""
        await self._run(["dependency", "update", str(chart_dir)])
