"""Tests for checking release definitions without a cluster."""

from pathlib import Path

from helm_sync.manifest import ReleaseSpec
from helm_sync.validation import validate_spec


def test_valid(chart_dir: Path) -> None:
    """Test a valid local chart release."""
    assert validate_spec(ReleaseSpec(name="podinfo", chart=str(chart_dir))) == []


def test_invalid_timeout() -> None:
    """Test a timeout that is not a duration."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        repository="https://stefanprodan.github.io/podinfo",
        timeout="5 minutes",
    )
    assert validate_spec(spec) == [
        "Invalid Timeout Format: Could not parse timeout '5 minutes'. "
        "Use Go duration format: '300s', '5m', '1h'."
    ]


def test_negative_timeout() -> None:
    """Test a timeout below zero."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        repository="https://stefanprodan.github.io/podinfo",
        timeout="-5m",
    )
    assert validate_spec(spec) == [
        "Invalid Timeout: Timeout '-5m' must not be negative."
    ]


def test_missing_local_chart(tmp_path: Path) -> None:
    """Test a local path that is not a chart."""
    (message,) = validate_spec(ReleaseSpec(name="podinfo", chart=str(tmp_path)))
    assert message.startswith(
        f"Chart Not Found: Local chart path '{tmp_path}' does not contain a Chart.yaml"
    )


def test_oci_requires_version() -> None:
    """Test an OCI chart without a version."""
    spec = ReleaseSpec(
        name="podinfo", chart="podinfo", repository="oci://ghcr.io/stefanprodan/charts"
    )
    assert validate_spec(spec) == [
        "Version Required for OCI Registry: OCI registry "
        "'oci://ghcr.io/stefanprodan/charts' requires an explicit version. "
        'Add: version = "1.0.0"'
    ]


def test_oci_chart_reference_requires_version() -> None:
    """Test a full OCI chart reference without a version."""
    spec = ReleaseSpec(
        name="podinfo", chart="oci://ghcr.io/stefanprodan/charts/podinfo"
    )
    (message,) = validate_spec(spec)
    assert message.startswith(
        "Version Required for OCI Registry: OCI registry "
        "'oci://ghcr.io/stefanprodan/charts/podinfo'"
    )


def test_registry_config(tmp_path: Path) -> None:
    """Test the registry config file must exist when set."""
    spec = ReleaseSpec(
        name="podinfo",
        chart="podinfo",
        repository="oci://ghcr.io/stefanprodan/charts",
        version="6.5.0",
        registry_config_path=str(tmp_path / "config.json"),
    )
    (message,) = validate_spec(spec)
    assert message.startswith("Registry Config Not Found:")

    (tmp_path / "config.json").write_text("{}")
    assert validate_spec(spec) == []


def test_multiple_problems(tmp_path: Path) -> None:
    """Test every problem is reported."""
    spec = ReleaseSpec(
        name="podinfo",
        chart=str(tmp_path),
        timeout="forever",
        registry_config_path=str(tmp_path / "missing.json"),
    )
    assert [message.split(":")[0] for message in validate_spec(spec)] == [
        "Invalid Timeout Format",
        "Chart Not Found",
        "Registry Config Not Found",
    ]
