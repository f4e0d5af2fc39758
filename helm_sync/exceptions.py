"""Exceptions related to helm-sync."""

__all__ = [
    "HelmSyncException",
    "InputException",
    "CommandException",
    "HelmException",
    "ChartLoadError",
    "ReleaseNotFoundError",
    "ReleaseOperationError",
]


class HelmSyncException(Exception):
    """Generic base exception used for this library."""


class InputException(HelmSyncException):
    """Raised when the input files or values are not formatted as expected."""


class ValuesParseError(InputException):
    """Raised when the values YAML document can't be parsed."""


class ValuesConflictError(InputException):
    """Raised when a set key conflicts with an existing non-map value."""

    def __init__(self, key: str, segment: str) -> None:
        super().__init__(
            f"cannot set nested value '{key}': '{segment}' is not a map"
        )
        self.key = key
        self.segment = segment


class InvalidDurationError(InputException):
    """Raised for a timeout that is not a valid duration string."""


class ImportIdError(InputException):
    """Raised when an import identifier is not in a supported format."""


class RequiresReplacementError(InputException):
    """Raised when an update changes an immutable field of a release."""


class ConnectionConfigError(InputException):
    """Raised when the cluster connection settings are incomplete or invalid."""


class CommandException(HelmSyncException):
    """Raised when there is a failure running a subcommand."""

    stderr: str = ""
    """Standard error output of the failed command, when there is one."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class ReleaseNotFoundError(HelmException):
    """Raised when the packaging engine has no record of a release."""


class ChartLoadError(HelmException):
    """Raised when a chart can't be located, downloaded, or loaded."""


class InternalError(HelmSyncException):
    """Raised when the packaging engine returns something unexpected."""


class ReleaseOperationError(HelmSyncException):
    """Raised when an install, upgrade, or delete fails.

    The title and detail are meant to be shown to an operator as is.
    """

    def __init__(self, title: str, detail: str) -> None:
        super().__init__(f"{title}: {detail}")
        self.title = title
        self.detail = detail
