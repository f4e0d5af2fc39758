"""Tests for converging releases with a cluster."""

from pathlib import Path
from typing import Any

import pytest

from helm_sync import diagnostics
from helm_sync.exceptions import (
    ChartLoadError,
    HelmException,
    ImportIdError,
    InvalidDurationError,
    ReleaseOperationError,
    RequiresReplacementError,
    ValuesParseError,
)
from helm_sync.helm import InstallOptions, UninstallOptions, UpgradeOptions
from helm_sync.lifecycle import ReleaseLifecycle, parse_import_id
from helm_sync.manifest import ClusterConnection, ReleaseSpec, ReleaseStatus, SetValue

from .conftest import CLUSTER, FakeEngine


@pytest.fixture(name="lifecycle")
def lifecycle_fixture(engine_factory: Any, tmp_path: Path) -> ReleaseLifecycle:
    """Create a lifecycle backed by the fake engine."""
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    return ReleaseLifecycle(engine_factory=engine_factory, work_dir=work_dir)


@pytest.fixture(name="spec")
def spec_fixture(chart_dir: Path) -> ReleaseSpec:
    """A release of the local test chart."""
    return ReleaseSpec(
        name="podinfo",
        namespace="apps",
        chart=str(chart_dir),
        values="replicaCount: 1\n",
        set=[SetValue(name="image.tag", value="6.5.0")],
        timeout="2m",
        cluster=CLUSTER,
    )


@pytest.fixture(name="no_pod_diagnostics", autouse=True)
def no_pod_diagnostics_fixture(monkeypatch: pytest.MonkeyPatch) -> None:
    """Report no pods instead of contacting a cluster."""
    monkeypatch.setattr(diagnostics, "_list_pods", lambda getter, namespace: [])


@pytest.mark.parametrize(
    ("import_id", "expected"),
    [
        ("prod:kube-system:cilium", ("prod", "kube-system", "cilium")),
        ("prod:cert-manager", ("prod", "default", "cert-manager")),
    ],
)
def test_parse_import_id(import_id: str, expected: tuple[str, str, str]) -> None:
    """Test parsing import identifiers."""
    assert parse_import_id(import_id) == expected


@pytest.mark.parametrize("import_id", ["cilium", "a:b:c:d", "prod::cilium", ":cilium"])
def test_parse_invalid_import_id(import_id: str) -> None:
    """Test rejecting malformed import identifiers."""
    with pytest.raises(ImportIdError, match="context:namespace:release-name"):
        parse_import_id(import_id)


async def test_create(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test installing a release."""
    state = await lifecycle.create(spec)
    assert len(state.id) == 16
    assert state.spec == spec
    assert state.revision == 1
    assert state.status == ReleaseStatus.DEPLOYED
    assert state.metadata["chart_name"] == "podinfo"

    (install,) = engine.called("install")
    assert install.values == {"replicaCount": 1, "image": {"tag": "6.5.0"}}
    assert isinstance(install.options, InstallOptions)
    assert install.options.timeout.total_seconds() == 120
    assert install.options.wait
    assert install.options.server_side
    assert install.chart is not None
    assert install.chart.path == Path(spec.chart)


async def test_create_work_dir_removed(
    lifecycle: ReleaseLifecycle, spec: ReleaseSpec, tmp_path: Path
) -> None:
    """Test the operation directory is removed afterwards."""
    await lifecycle.create(spec)
    assert list((tmp_path / "work").iterdir()) == []


async def test_create_missing_chart(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec, tmp_path: Path
) -> None:
    """Test a chart path that does not exist fails before installing."""
    spec.chart = str(tmp_path / "missing")
    with pytest.raises(ChartLoadError, match="does not exist"):
        await lifecycle.create(spec)
    assert not engine.called("install")
    assert not engine.releases


@pytest.mark.parametrize(
    ("changes", "error"),
    [
        ({"timeout": "soon"}, InvalidDurationError),
        ({"values": "image: [unclosed\n"}, ValuesParseError),
    ],
)
async def test_create_invalid_input(
    lifecycle: ReleaseLifecycle,
    engine: FakeEngine,
    spec: ReleaseSpec,
    changes: dict[str, Any],
    error: type[Exception],
) -> None:
    """Test bad input fails before the cluster is contacted."""
    for key, value in changes.items():
        setattr(spec, key, value)
    with pytest.raises(error):
        await lifecycle.create(spec)
    assert not engine.calls


async def test_create_replaces_failed_release(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test a failed release left behind is uninstalled first."""
    engine.add_release("podinfo", "apps", revision=1, status=ReleaseStatus.FAILED)
    state = await lifecycle.create(spec)
    assert state.status == ReleaseStatus.DEPLOYED
    (uninstall,) = engine.called("uninstall")
    assert isinstance(uninstall.options, UninstallOptions)
    assert uninstall.options.disable_hooks
    assert not uninstall.options.wait


async def test_create_failed_cleanup(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test an error uninstalling a failed release stops the install."""
    engine.add_release("podinfo", "apps", status=ReleaseStatus.FAILED)
    engine.uninstall_error = HelmException("Error: connection refused")
    with pytest.raises(ReleaseOperationError) as exc_info:
        await lifecycle.create(spec)
    assert exc_info.value.title == "Failed to Clean Up Failed Release"
    assert "helm uninstall podinfo -n apps" in exc_info.value.detail
    assert not engine.called("install")


async def test_create_timeout(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test a timed out install is explained to the operator."""
    engine.install_error = HelmException(
        "Error: INSTALLATION FAILED: context deadline exceeded"
    )
    with pytest.raises(ReleaseOperationError) as exc_info:
        await lifecycle.create(spec)
    assert exc_info.value.title == "Helm Install Timed Out"
    assert "was not ready within 2m0s" in exc_info.value.detail
    assert 'timeout = "4m0s"' in exc_info.value.detail
    assert "kubectl get pods -n apps" in exc_info.value.detail


async def test_create_then_delete_after_manual_removal(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test deleting a release that was already removed by hand."""
    state = await lifecycle.create(spec)
    engine.releases.clear()
    await lifecycle.delete(state)
    assert len(engine.called("uninstall")) == 1


async def test_delete(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test deleting a release with force destroy skips hooks."""
    spec.force_destroy = True
    state = await lifecycle.create(spec)
    await lifecycle.delete(state)
    assert not engine.releases
    (uninstall,) = engine.called("uninstall")
    assert uninstall.options.disable_hooks
    assert not uninstall.options.wait
    assert uninstall.options.timeout.total_seconds() == 120


async def test_delete_failure(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test a failed uninstall keeps the release tracked."""
    state = await lifecycle.create(spec)
    engine.uninstall_error = HelmException("Error: uninstall: timed out")
    with pytest.raises(ReleaseOperationError) as exc_info:
        await lifecycle.delete(state)
    assert exc_info.value.title == "Failed to Delete Helm Release"
    assert "The release remains tracked" in exc_info.value.detail


async def test_update(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test upgrading a release keeps its identity."""
    state = await lifecycle.create(spec)
    spec.set = [SetValue(name="image.tag", value="6.6.0")]
    updated = await lifecycle.update(spec, state)
    assert updated.id == state.id
    assert updated.revision == 2
    (upgrade,) = engine.called("upgrade")
    assert upgrade.values == {"replicaCount": 1, "image": {"tag": "6.6.0"}}
    assert isinstance(upgrade.options, UpgradeOptions)
    assert not upgrade.options.cleanup_on_fail
    assert upgrade.options.max_history == 10


async def test_update_failed_release(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test upgrading a failed release enables cleanup and recovers."""
    state = await lifecycle.create(spec)
    engine.add_release("podinfo", "apps", revision=2, status=ReleaseStatus.FAILED)
    updated = await lifecycle.update(spec, state)
    assert updated.status == ReleaseStatus.DEPLOYED
    assert updated.revision == 3
    (upgrade,) = engine.called("upgrade")
    assert upgrade.options.cleanup_on_fail


async def test_update_rename(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test renaming a release requires a replacement."""
    state = await lifecycle.create(spec)
    spec.name = "podinfo-2"
    with pytest.raises(RequiresReplacementError):
        await lifecycle.update(spec, state)
    assert not engine.called("upgrade")


async def test_update_move_namespace(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test moving a release edited in place requires a replacement."""
    state = await lifecycle.create(spec)
    assert state.spec is not spec
    spec.namespace = "other"
    assert state.namespace == "apps"
    with pytest.raises(RequiresReplacementError):
        await lifecycle.update(spec, state)
    assert not engine.called("upgrade")


async def test_update_rollback(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test a rolled back upgrade is explained to the operator."""
    spec.atomic = True
    state = await lifecycle.create(spec)
    engine.upgrade_error = HelmException(
        "Error: UPGRADE FAILED: release podinfo failed, and has been rolled back "
        "due to atomic being set: context deadline exceeded"
    )
    with pytest.raises(ReleaseOperationError) as exc_info:
        await lifecycle.update(spec, state)
    assert exc_info.value.title == "Helm Upgrade Failed and Rolled Back"
    assert exc_info.value.detail.endswith("Disable rollback: atomic = false")


async def test_read(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test reading an unchanged release."""
    state = await lifecycle.create(spec)
    result = await lifecycle.read(state)
    assert result is not None
    assert result.state == state
    assert result.drift == []
    assert result.warnings == []


async def test_read_drift(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test reading a release changed outside of helm-sync."""
    state = await lifecycle.create(spec)
    engine.add_release("podinfo", "apps", revision=2)
    result = await lifecycle.read(state)
    assert result is not None
    assert result.state.revision == 2
    assert result.drift == [
        "Release revision changed from 1 to 2 (manual helm operation detected)"
    ]


async def test_read_removed(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test reading a release that no longer exists."""
    state = await lifecycle.create(spec)
    engine.releases.clear()
    assert await lifecycle.read(state) is None


async def test_read_auth_failure(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test expired credentials keep the prior state with a warning."""
    state = await lifecycle.create(spec)
    engine.get_error = HelmException(
        "Error: Kubernetes cluster unreachable: the server has asked for the "
        "client to provide credentials"
    )
    result = await lifecycle.read(state)
    assert result is not None
    assert result.state == state
    (warning,) = result.warnings
    assert warning.startswith("Read: Using Prior State, Authentication Failed:")
    assert "provide credentials" in warning


async def test_read_other_failure(
    lifecycle: ReleaseLifecycle, engine: FakeEngine, spec: ReleaseSpec
) -> None:
    """Test errors other than authentication are raised."""
    state = await lifecycle.create(spec)
    engine.get_error = HelmException("Error: Kubernetes cluster unreachable: EOF")
    with pytest.raises(HelmException, match="EOF"):
        await lifecycle.read(state)


async def test_import(
    lifecycle: ReleaseLifecycle,
    engine: FakeEngine,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test adopting a release installed by hand."""
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "kubeconfig"))
    engine.add_release("cilium", "kube-system", revision=4, chart_name="cilium")
    result = await lifecycle.import_release("prod:kube-system:cilium")
    state = result.state
    assert state.spec.name == "cilium"
    assert state.spec.namespace == "kube-system"
    assert state.spec.chart == "cilium"
    assert state.spec.version == "6.5.0"
    assert state.spec.cluster == ClusterConnection(
        kubeconfig_file=str(tmp_path / "kubeconfig"), context="prod"
    )
    assert state.revision == 4
    (warning,) = result.warnings
    assert warning.startswith("Import Successful, Configuration Required:")
    assert "helm get values cilium -n kube-system" in warning


async def test_import_not_found(
    lifecycle: ReleaseLifecycle, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test importing a release that does not exist."""
    monkeypatch.setenv("KUBECONFIG", str(tmp_path / "kubeconfig"))
    with pytest.raises(ReleaseOperationError) as exc_info:
        await lifecycle.import_release("prod:cert-manager")
    assert exc_info.value.title == "Import Failed: Release Not Found"
    assert "helm list -n default --kube-context prod" in exc_info.value.detail


def test_validate(lifecycle: ReleaseLifecycle, spec: ReleaseSpec) -> None:
    """Test validating a release definition."""
    assert lifecycle.validate(spec) == []
    spec.timeout = "soon"
    (message,) = lifecycle.validate(spec)
    assert message.startswith("Invalid Timeout Format")
