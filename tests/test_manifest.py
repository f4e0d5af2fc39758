"""Tests for manifest library."""

from pathlib import Path
import stat

from helm_sync.manifest import (
    REDACTED,
    ClusterConnection,
    ExecConfig,
    Release,
    ReleaseSpec,
    ReleaseState,
    ReleaseStatus,
    SetValue,
    read_state,
    write_state,
)

RELEASE_DOC = {
    "name": "podinfo",
    "namespace": "apps",
    "version": 3,
    "info": {
        "status": "deployed",
        "first_deployed": "2026-01-01T10:00:00.123456789Z",
        "last_deployed": "2026-01-02T10:00:00.5Z",
        "description": "Upgrade complete",
        "notes": "Visit the podinfo service",
    },
    "chart": {
        "metadata": {
            "name": "podinfo",
            "version": "6.5.0",
            "appVersion": "6.5.0",
            "description": "Podinfo Helm chart for Kubernetes",
        }
    },
    "manifest": "---\nkind: Service\n",
}


def test_parse_release() -> None:
    """Test parsing the release document printed by helm."""
    release = Release.parse_doc(RELEASE_DOC)
    assert release.name == "podinfo"
    assert release.namespace == "apps"
    assert release.revision == 3
    assert release.status == ReleaseStatus.DEPLOYED
    assert release.chart_name == "podinfo"
    assert release.chart_version == "6.5.0"
    assert release.manifest == "---\nkind: Service\n"
    assert release.metadata == {
        "chart_name": "podinfo",
        "chart_version": "6.5.0",
        "app_version": "6.5.0",
        "description": "Podinfo Helm chart for Kubernetes",
        "first_deployed": "2026-01-01T10:00:00Z",
        "last_deployed": "2026-01-02T10:00:00Z",
        "notes": "Visit the podinfo service",
    }


def test_parse_release_unknown_status() -> None:
    """Test a status that is not recognized."""
    release = Release.parse_doc(
        {"name": "podinfo", "namespace": "apps", "version": 1, "info": {"status": "odd"}}
    )
    assert release.status == ReleaseStatus.UNKNOWN
    assert release.metadata == {}


def test_state_refresh() -> None:
    """Test computed fields are copied from the live release."""
    state = ReleaseState(id="abc", spec=ReleaseSpec(name="podinfo", chart="podinfo"))
    refreshed = state.refresh(Release.parse_doc(RELEASE_DOC))
    assert refreshed.id == "abc"
    assert refreshed.revision == 3
    assert refreshed.status == ReleaseStatus.DEPLOYED
    assert refreshed.metadata["chart_version"] == "6.5.0"
    assert state.revision is None


async def test_state_file(tmp_path: Path) -> None:
    """Test writing and reading back a state file."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        namespace="apps",
        repository="https://stefanprodan.github.io/podinfo",
        version="6.5.0",
        set=[SetValue(name="replicaCount", value="2")],
        cluster=ClusterConnection(kubeconfig_file="~/.kube/config", context="kind"),
    )
    state = ReleaseState(id="abc", spec=spec).refresh(Release.parse_doc(RELEASE_DOC))
    path = tmp_path / "state.yaml"
    await write_state(path, state)
    assert "status: deployed" in path.read_text()
    assert await read_state(path) == state


async def test_state_file_mode(tmp_path: Path) -> None:
    """Test the state file is only readable by its owner."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        set_sensitive=[SetValue(name="auth.password", value="hunter2")],
    )
    state = ReleaseState(id="abc", spec=spec, manifest="kind: Secret\n")
    path = tmp_path / "state.yaml"
    path.write_text("")
    path.chmod(0o644)
    await write_state(path, state)
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert "hunter2" in path.read_text()


def test_redacted() -> None:
    """Test sensitive values are hidden from printed state."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        repository_password="hunter2",
        set_sensitive=[SetValue(name="auth.password", value="hunter2")],
    )
    state = ReleaseState(id="abc", spec=spec, manifest="kind: Secret\n").redacted()
    assert state.spec.repository_password == REDACTED
    assert state.spec.set_sensitive == [SetValue(name="auth.password", value=REDACTED)]
    assert state.manifest == REDACTED
    assert "hunter2" not in state.yaml()
    assert spec.set_sensitive[0].value == "hunter2"


def test_is_oci() -> None:
    """Test detecting charts from OCI registries."""
    assert ReleaseSpec(
        name="a", chart="podinfo", repository="oci://ghcr.io/stefanprodan/charts"
    ).is_oci
    assert not ReleaseSpec(
        name="a", chart="podinfo", repository="https://example.com"
    ).is_oci
    assert not ReleaseSpec(name="a", chart="./podinfo").is_oci
    assert ReleaseSpec(
        name="a", chart="oci://ghcr.io/stefanprodan/charts/podinfo"
    ).is_oci


def test_connection_fingerprint() -> None:
    """Test the fingerprint changes with every connection setting."""
    base = ClusterConnection(host="https://10.0.0.1:6443", token="a", insecure=True)
    same = ClusterConnection(host="https://10.0.0.1:6443", token="a", insecure=True)
    assert base.fingerprint() == same.fingerprint()
    others = [
        ClusterConnection(host="https://10.0.0.2:6443", token="a", insecure=True),
        ClusterConnection(host="https://10.0.0.1:6443", token="b", insecure=True),
        ClusterConnection(host="https://10.0.0.1:6443", token="a"),
        ClusterConnection(
            host="https://10.0.0.1:6443",
            token="a",
            insecure=True,
            proxy_url="http://proxy:3128",
        ),
        ClusterConnection(
            host="https://10.0.0.1:6443",
            insecure=True,
            exec=ExecConfig(
                api_version="client.authentication.k8s.io/v1beta1",
                command="aws",
                args=["eks", "get-token"],
            ),
        ),
    ]
    fingerprints = {conn.fingerprint() for conn in others}
    assert len(fingerprints) == len(others)
    assert base.fingerprint() not in fingerprints
