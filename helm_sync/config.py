"""Configuration objects for helm-sync."""

from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_TIMEOUT = "300s"
DEFAULT_MAX_HISTORY = 10
DEFAULT_NAMESPACE = "default"


@dataclass
class HelmConfig:
    """Configuration for invoking the helm binary."""

    helm_bin: str = "helm"
    """Path or name of the helm executable."""

    storage_driver: str = "secret"
    """Release storage backend, exported as HELM_DRIVER."""

    repository_config: Path | None = None
    """Value of the helm --repository-config flag."""

    repository_cache: Path | None = None
    """Value of the helm --repository-cache flag."""

    command_grace_period: float = 30.0
    """Seconds a helm process may run past its own --timeout before it is killed."""

    env: dict[str, str] = field(default_factory=dict)
    """Extra environment variables for helm subprocesses."""

    @property
    def base_args(self) -> list[str]:
        """Global helm flags built from the options."""
        args: list[str] = []
        if self.repository_config:
            args.extend(["--repository-config", str(self.repository_config)])
        if self.repository_cache:
            args.extend(["--repository-cache", str(self.repository_cache)])
        return args

    @property
    def command_env(self) -> dict[str, str]:
        """Environment for helm subprocesses."""
        return {"HELM_DRIVER": self.storage_driver, **self.env}
