"""Checks of a release definition that need no cluster access.

These catch common mistakes before any chart is downloaded or any helm
command is run.
"""

import datetime
from pathlib import Path

from .chart import CHART_FILE, is_local_chart
from .duration import parse_duration
from .exceptions import InvalidDurationError
from .manifest import ReleaseSpec

__all__ = ["validate_spec"]


def _check_timeout(spec: ReleaseSpec) -> str | None:
    try:
        timeout = parse_duration(spec.timeout)
    except InvalidDurationError:
        return (
            f"Invalid Timeout Format: Could not parse timeout '{spec.timeout}'. "
            "Use Go duration format: '300s', '5m', '1h'."
        )
    if timeout < datetime.timedelta(0):
        return f"Invalid Timeout: Timeout '{spec.timeout}' must not be negative."
    return None


def _check_local_chart(spec: ReleaseSpec) -> str | None:
    if not is_local_chart(spec.chart):
        return None
    path = Path(spec.chart).absolute()
    if (path / CHART_FILE).exists():
        return None
    return (
        f"Chart Not Found: Local chart path '{spec.chart}' does not contain a "
        f"{CHART_FILE} file.\n\nResolved path: {path}\n"
        "Verify the chart path is correct and contains a valid Helm chart."
    )


def _check_oci_version(spec: ReleaseSpec) -> str | None:
    if not spec.is_oci or spec.version:
        return None
    registry = spec.repository or spec.chart
    return (
        f"Version Required for OCI Registry: OCI registry '{registry}' "
        'requires an explicit version. Add: version = "1.0.0"'
    )


def _check_registry_config(spec: ReleaseSpec) -> str | None:
    if not spec.registry_config_path:
        return None
    if Path(spec.registry_config_path).expanduser().exists():
        return None
    return (
        f"Registry Config Not Found: Registry config file "
        f"'{spec.registry_config_path}' does not exist.\n\n"
        "If using the default Docker config, omit registry_config_path entirely."
    )


_CHECKS = [
    _check_timeout,
    _check_local_chart,
    _check_oci_version,
    _check_registry_config,
]


def validate_spec(spec: ReleaseSpec) -> list[str]:
    """Return a message for each problem found in the release definition."""
    return [message for check in _CHECKS if (message := check(spec)) is not None]
