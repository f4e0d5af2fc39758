"""helm-sync is a library for converging helm releases on a cluster.

A release is declared as a `ReleaseSpec` and applied with the
`ReleaseLifecycle`, which installs or upgrades it with the `helm` binary and
returns a `ReleaseState` to be stored by the caller between runs.
"""

__all__ = [
    "lifecycle",
    "manifest",
    "values",
    "chart",
    "helm",
    "diagnostics",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
