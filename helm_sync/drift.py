"""Detection of changes made to a release outside of helm-sync."""

import logging
from pathlib import Path

from .chart import is_local_chart
from .manifest import DIGEST_SEPARATOR, Release, ReleaseState, ReleaseStatus

__all__ = ["detect_drift"]

_LOGGER = logging.getLogger(__name__)

# Status changes into any other status are expected during normal operation
_DRIFT_STATUSES = {
    ReleaseStatus.FAILED,
    ReleaseStatus.SUPERSEDED,
    ReleaseStatus.UNINSTALLING,
}


def detect_drift(state: ReleaseState, release: Release) -> list[str]:
    """Return a description of each difference between the stored and live release."""
    reasons: list[str] = []

    if state.revision is not None and state.revision != release.revision:
        reasons.append(
            f"Release revision changed from {state.revision} to {release.revision} "
            "(manual helm operation detected)"
        )

    stored_version = state.spec.version
    if stored_version and release.chart_version is not None:
        version_only = stored_version.split(DIGEST_SEPARATOR, 1)[0]
        if version_only != release.chart_version:
            if DIGEST_SEPARATOR in stored_version:
                reasons.append(
                    f"Chart version changed from {stored_version} to "
                    f"{release.chart_version} (digest reference in state but "
                    "release shows different version)"
                )
            else:
                reasons.append(
                    f"Chart version changed from {version_only} to {release.chart_version}"
                )

    stored_chart = state.spec.chart
    if stored_chart and release.chart_name is not None:
        compare_chart = stored_chart
        if is_local_chart(stored_chart):
            compare_chart = Path(stored_chart).name
        if compare_chart != release.chart_name:
            reasons.append(
                f"Chart name changed from {stored_chart} to {release.chart_name}"
            )

    if (
        state.status is not None
        and state.status != release.status
        and release.status in _DRIFT_STATUSES
    ):
        reasons.append(
            f"Release status changed from {state.status} to {release.status}"
        )

    if reasons:
        _LOGGER.warning(
            "Drift detected in release %s: %s",
            state.spec.namespaced_name,
            "; ".join(reasons),
        )
    return reasons
