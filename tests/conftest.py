"""Shared fixtures for helm-sync tests."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from helm_sync.exceptions import HelmException, ReleaseNotFoundError
from helm_sync.helm import InstallOptions, UninstallOptions, UpgradeOptions
from helm_sync.kube_config import RESTClientGetter
from helm_sync.manifest import Chart, ClusterConnection, Release, ReleaseStatus

CHART_YAML = """\
apiVersion: v2
name: podinfo
version: 6.5.0
appVersion: 6.5.0
description: Podinfo Helm chart for Kubernetes
"""

CLUSTER = ClusterConnection(
    host="https://127.0.0.1:6443",
    insecure=True,
    token="test-token",
)


def write_chart(path: Path, chart_yaml: str = CHART_YAML) -> Path:
    """Write a minimal chart directory."""
    path.mkdir(parents=True, exist_ok=True)
    (path / "Chart.yaml").write_text(chart_yaml)
    (path / "values.yaml").write_text("replicaCount: 1\n")
    templates = path / "templates"
    templates.mkdir(exist_ok=True)
    (templates / "configmap.yaml").write_text(
        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: {{ .Release.Name }}\n"
    )
    return path


@pytest.fixture(name="chart_dir")
def chart_dir_fixture(tmp_path: Path) -> Path:
    """Create a local chart for testing."""
    return write_chart(tmp_path / "charts" / "podinfo")


@dataclass
class EngineCall:
    """A call made to the fake engine."""

    method: str
    name: str
    namespace: str
    options: Any = None
    values: dict[str, Any] | None = None
    chart: Chart | None = None


@dataclass
class FakeEngine:
    """An in memory stand in for the helm binary."""

    releases: dict[tuple[str, str], Release] = field(default_factory=dict)
    calls: list[EngineCall] = field(default_factory=list)
    get_error: HelmException | None = None
    install_error: HelmException | None = None
    upgrade_error: HelmException | None = None
    uninstall_error: HelmException | None = None
    dependency_updates: list[Path] = field(default_factory=list)

    def add_release(
        self,
        name: str,
        namespace: str,
        revision: int = 1,
        status: ReleaseStatus = ReleaseStatus.DEPLOYED,
        chart_name: str = "podinfo",
        chart_version: str = "6.5.0",
    ) -> Release:
        release = Release(
            name=name,
            namespace=namespace,
            revision=revision,
            status=status,
            chart_name=chart_name,
            chart_version=chart_version,
            app_version=chart_version,
            first_deployed="2026-01-01T00:00:00Z",
            last_deployed="2026-01-01T00:00:00Z",
            manifest="---\nkind: ConfigMap\n",
        )
        self.releases[(namespace, name)] = release
        return release

    def called(self, method: str) -> list[EngineCall]:
        return [call for call in self.calls if call.method == method]

    async def get(self, name: str, namespace: str) -> Release:
        self.calls.append(EngineCall("get", name, namespace))
        if self.get_error:
            raise self.get_error
        if (release := self.releases.get((namespace, name))) is None:
            raise ReleaseNotFoundError("Error: release: not found")
        return release

    async def install(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: InstallOptions,
    ) -> Release:
        self.calls.append(
            EngineCall("install", name, namespace, options, values, chart)
        )
        if self.install_error:
            raise self.install_error
        return self.add_release(
            name, namespace, chart_name=chart.name, chart_version=chart.version
        )

    async def upgrade(
        self,
        name: str,
        namespace: str,
        chart: Chart,
        values: dict[str, Any],
        options: UpgradeOptions,
    ) -> Release:
        self.calls.append(
            EngineCall("upgrade", name, namespace, options, values, chart)
        )
        if self.upgrade_error:
            raise self.upgrade_error
        if (current := self.releases.get((namespace, name))) is None:
            raise HelmException(f'Error: UPGRADE FAILED: "{name}" has no deployed releases')
        return self.add_release(
            name,
            namespace,
            revision=current.revision + 1,
            chart_name=chart.name,
            chart_version=chart.version,
        )

    async def uninstall(
        self, name: str, namespace: str, options: UninstallOptions
    ) -> None:
        self.calls.append(EngineCall("uninstall", name, namespace, options))
        if self.uninstall_error:
            raise self.uninstall_error
        if self.releases.pop((namespace, name), None) is None:
            raise ReleaseNotFoundError(
                f"Error: uninstall: Release not loaded: {name}: release: not found"
            )

    async def dependency_update(self, chart_dir: Path) -> None:
        self.dependency_updates.append(chart_dir)


@pytest.fixture(name="engine")
def engine_fixture() -> FakeEngine:
    """Create a fake engine for testing."""
    return FakeEngine()


@pytest.fixture(name="engine_factory")
def engine_factory_fixture(
    engine: FakeEngine,
) -> Callable[[RESTClientGetter, Path], Awaitable[FakeEngine]]:
    """Create an engine factory that always returns the fake engine."""

    async def factory(getter: RESTClientGetter, work_dir: Path) -> FakeEngine:
        return engine

    return factory
