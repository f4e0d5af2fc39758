"""Library for converging a declared release with the release on a cluster.

The `ReleaseLifecycle` installs, upgrades, reads, uninstalls and imports
releases. Each operation works in its own temporary directory holding the
kubeconfig, the values file and any downloaded charts, which is removed when
the operation finishes.

```python
lifecycle = ReleaseLifecycle()
state = await lifecycle.create(spec)
result = await lifecycle.read(state)
if result is None:
    print("Release was removed outside of helm-sync")
elif result.drift:
    print("\\n".join(result.drift))
```

Failures of helm itself are raised as `ReleaseOperationError` with a title
and a detail explaining the failure and how to fix it.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
import copy
from dataclasses import dataclass, field, replace
import datetime
import logging
from pathlib import Path
import secrets
import tempfile

from .chart import ChartResolver
from .config import DEFAULT_NAMESPACE, HelmConfig
from .connection import (
    ConnectionFactory,
    create_rest_config,
    default_kubeconfig_path,
    is_auth_error,
)
from .context import trace_context
from .diagnostics import error_message, format_helm_error
from .drift import detect_drift
from .duration import parse_timeout
from .exceptions import (
    HelmException,
    HelmSyncException,
    ImportIdError,
    ReleaseNotFoundError,
    ReleaseOperationError,
    RequiresReplacementError,
)
from .helm import (
    HelmCli,
    InstallOptions,
    ReleaseEngine,
    UninstallOptions,
    UpgradeOptions,
)
from .kube_config import RESTClientGetter
from .manifest import (
    ClusterConnection,
    ReleaseSpec,
    ReleaseState,
    ReleaseStatus,
)
from .validation import validate_spec
from .values import merge_release_values

__all__ = [
    "ReleaseLifecycle",
    "ReadResult",
    "ImportResult",
    "parse_import_id",
]

_LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[RESTClientGetter, Path], Awaitable[ReleaseEngine]]


@dataclass
class ReadResult:
    """The refreshed state of a release that still exists."""

    state: ReleaseState
    drift: list[str] = field(default_factory=list)
    """Differences between the stored and the live release."""

    warnings: list[str] = field(default_factory=list)


@dataclass
class ImportResult:
    """The state of a release adopted from a cluster."""

    state: ReleaseState
    warnings: list[str] = field(default_factory=list)


def parse_import_id(import_id: str) -> tuple[str, str, str]:
    """Parse `context:name` or `context:namespace:name` into its parts."""
    parts = import_id.split(":")
    if len(parts) == 2 and all(parts):
        return parts[0], DEFAULT_NAMESPACE, parts[1]
    if len(parts) == 3 and all(parts):
        return parts[0], parts[1], parts[2]
    raise ImportIdError(
        "Import ID must be in format 'context:namespace:release-name' or "
        "'context:release-name'.\n\n"
        "Examples:\n"
        "  prod:kube-system:cilium\n"
        "  prod:cert-manager  (uses default namespace)\n\n"
        f"Got: {import_id}"
    )


def _new_id() -> str:
    return secrets.token_hex(8)


def _install_options(spec: ReleaseSpec, timeout: datetime.timedelta) -> InstallOptions:
    return InstallOptions(
        timeout=timeout,
        wait=spec.wait,
        wait_for_jobs=spec.wait_for_jobs,
        rollback_on_failure=spec.atomic,
        skip_crds=spec.skip_crds,
        disable_hooks=spec.disable_hooks,
        description=spec.description,
        create_namespace=spec.create_namespace,
    )


def _upgrade_options(
    spec: ReleaseSpec, timeout: datetime.timedelta, cleanup_on_fail: bool
) -> UpgradeOptions:
    return UpgradeOptions(
        timeout=timeout,
        wait=spec.wait,
        wait_for_jobs=spec.wait_for_jobs,
        rollback_on_failure=spec.atomic,
        skip_crds=spec.skip_crds,
        disable_hooks=spec.disable_hooks,
        description=spec.description,
        cleanup_on_fail=cleanup_on_fail,
        max_history=spec.max_history,
        reuse_values=spec.reuse_values,
    )


class ReleaseLifecycle:
    """Performs release operations against the cluster of each release."""

    def __init__(
        self,
        engine_factory: EngineFactory | None = None,
        connection_factory: ConnectionFactory = create_rest_config,
        work_dir: Path | None = None,
        helm_config: HelmConfig | None = None,
    ) -> None:
        """Initialize ReleaseLifecycle.

        The work directory is the parent of the temporary directory created
        for each operation, defaulting to the system temporary directory.
        """
        self._engine_factory = engine_factory or self._helm_engine
        self._connection_factory = connection_factory
        self._work_dir = work_dir
        self._helm_config = helm_config

    async def _helm_engine(
        self, getter: RESTClientGetter, work_dir: Path
    ) -> ReleaseEngine:
        return await HelmCli.from_getter(getter, work_dir, self._helm_config)

    @asynccontextmanager
    async def _operation(
        self, spec: ReleaseSpec
    ) -> AsyncGenerator[tuple[RESTClientGetter, ReleaseEngine, Path], None]:
        with tempfile.TemporaryDirectory(
            prefix="helm-sync-", dir=self._work_dir
        ) as tmp_dir:
            work_dir = Path(tmp_dir)
            getter = RESTClientGetter(
                spec.namespace, spec.cluster, self._connection_factory
            )
            engine = await self._engine_factory(getter, work_dir)
            yield getter, engine, work_dir

    async def _cleanup_failed_release(
        self, engine: ReleaseEngine, spec: ReleaseSpec, timeout: datetime.timedelta
    ) -> None:
        """Uninstall a previous failed release so a fresh install can proceed."""
        try:
            existing = await engine.get(spec.name, spec.namespace)
        except HelmException:
            return
        if existing.status != ReleaseStatus.FAILED:
            return
        _LOGGER.warning(
            "Found existing failed release %s, uninstalling before fresh install",
            spec.namespaced_name,
        )
        try:
            await engine.uninstall(
                spec.name,
                spec.namespace,
                UninstallOptions(timeout=timeout, disable_hooks=True, wait=False),
            )
        except ReleaseNotFoundError:
            _LOGGER.debug("Failed release %s already removed", spec.namespaced_name)
        except HelmException as err:
            raise ReleaseOperationError(
                "Failed to Clean Up Failed Release",
                f"Found a failed release '{spec.name}' but could not uninstall it: "
                f"{error_message(err)}\n\n"
                f"Manually uninstall the release with: helm uninstall {spec.name} "
                f"-n {spec.namespace}",
            ) from err

    async def create(self, spec: ReleaseSpec) -> ReleaseState:
        """Install a new release and return its state."""
        timeout = parse_timeout(spec.timeout)
        values = merge_release_values(spec)
        _LOGGER.info("Creating release %s chart %s", spec.namespaced_name, spec.chart)
        with trace_context("create", spec.namespaced_name):
            async with self._operation(spec) as (getter, engine, work_dir):
                await self._cleanup_failed_release(engine, spec, timeout)
                state_id = _new_id()
                chart = await ChartResolver(work_dir, engine.dependency_update).resolve(
                    spec
                )
                try:
                    release = await engine.install(
                        spec.name,
                        spec.namespace,
                        chart,
                        values,
                        _install_options(spec, timeout),
                    )
                except HelmException as err:
                    title, detail = await format_helm_error(
                        "Install", spec.name, spec.namespace, timeout, err, getter
                    )
                    raise ReleaseOperationError(title, detail) from err
        _LOGGER.info(
            "Release %s created revision %s status %s",
            spec.namespaced_name,
            release.revision,
            release.status,
        )
        return ReleaseState(id=state_id, spec=copy.deepcopy(spec)).refresh(release)

    async def read(self, state: ReleaseState) -> ReadResult | None:
        """Return the refreshed state, or None if the release no longer exists.

        When the cluster rejects the credentials the prior state is returned
        along with a warning, so an expired token does not drop the release.
        """
        _LOGGER.info("Reading release %s", state.spec.namespaced_name)
        with trace_context("read", state.spec.namespaced_name):
            try:
                async with self._operation(state.spec) as (_, engine, _):
                    release = await engine.get(state.name, state.namespace)
            except ReleaseNotFoundError:
                _LOGGER.warning(
                    "Release %s not found, removing from tracking",
                    state.spec.namespaced_name,
                )
                return None
            except HelmSyncException as err:
                if not is_auth_error(err):
                    raise
                _LOGGER.warning(
                    "Authentication failed reading %s, using prior state",
                    state.spec.namespaced_name,
                )
                return ReadResult(
                    state=state,
                    warnings=[
                        "Read: Using Prior State, Authentication Failed: Could not "
                        f"read Helm release '{state.name}' from cluster: "
                        "authentication failed. Using prior state. This typically "
                        "means the stored token has expired between runs. "
                        f"Details: {error_message(err)}"
                    ],
                )
        drift = detect_drift(state, release)
        return ReadResult(state=state.refresh(release), drift=drift)

    async def update(self, spec: ReleaseSpec, prior: ReleaseState) -> ReleaseState:
        """Upgrade an existing release to the new definition."""
        if spec.name != prior.name or spec.namespace != prior.namespace:
            raise RequiresReplacementError(
                f"Release {prior.spec.namespaced_name} can't be renamed or moved to "
                f"{spec.namespaced_name}, it must be replaced"
            )
        timeout = parse_timeout(spec.timeout)
        values = merge_release_values(spec)
        _LOGGER.info("Updating release %s chart %s", spec.namespaced_name, spec.chart)
        with trace_context("update", spec.namespaced_name):
            async with self._operation(spec) as (getter, engine, work_dir):
                cleanup_on_fail = False
                try:
                    current = await engine.get(spec.name, spec.namespace)
                except HelmException:
                    pass
                else:
                    if current.status == ReleaseStatus.FAILED:
                        _LOGGER.warning(
                            "Release %s is in failed state, enabling cleanup on fail",
                            spec.namespaced_name,
                        )
                        cleanup_on_fail = True
                chart = await ChartResolver(work_dir, engine.dependency_update).resolve(
                    spec
                )
                try:
                    release = await engine.upgrade(
                        spec.name,
                        spec.namespace,
                        chart,
                        values,
                        _upgrade_options(spec, timeout, cleanup_on_fail),
                    )
                except HelmException as err:
                    title, detail = await format_helm_error(
                        "Upgrade", spec.name, spec.namespace, timeout, err, getter
                    )
                    raise ReleaseOperationError(title, detail) from err
        _LOGGER.info(
            "Release %s upgraded to revision %s status %s",
            spec.namespaced_name,
            release.revision,
            release.status,
        )
        return ReleaseState(id=prior.id, spec=copy.deepcopy(spec)).refresh(release)

    async def delete(self, state: ReleaseState) -> None:
        """Uninstall a release, succeeding if it is already gone."""
        spec = state.spec
        timeout = parse_timeout(spec.timeout)
        options = UninstallOptions(
            timeout=timeout,
            disable_hooks=spec.force_destroy or spec.disable_hooks,
            wait=False,
        )
        _LOGGER.info("Deleting release %s", spec.namespaced_name)
        with trace_context("delete", spec.namespaced_name):
            async with self._operation(spec) as (_, engine, _):
                try:
                    await engine.uninstall(spec.name, spec.namespace, options)
                except ReleaseNotFoundError:
                    _LOGGER.info("Release %s already deleted", spec.namespaced_name)
                    return
                except HelmException as err:
                    raise ReleaseOperationError(
                        "Failed to Delete Helm Release",
                        f"Could not uninstall Helm release '{spec.name}': "
                        f"{error_message(err)}\n\nThe release remains tracked. "
                        "Fix the issue and run the delete again to retry.",
                    ) from err
        _LOGGER.info("Release %s deleted", spec.namespaced_name)

    async def import_release(self, import_id: str) -> ImportResult:
        """Adopt a release that was installed outside of helm-sync."""
        context, namespace, name = parse_import_id(import_id)
        connection = ClusterConnection(
            kubeconfig_file=str(default_kubeconfig_path()), context=context
        )
        spec = ReleaseSpec(name=name, namespace=namespace, chart="", cluster=connection)
        _LOGGER.info("Importing release %s from context %s", spec.namespaced_name, context)
        with trace_context("import", spec.namespaced_name):
            async with self._operation(spec) as (_, engine, _):
                try:
                    release = await engine.get(name, namespace)
                except ReleaseNotFoundError as err:
                    raise ReleaseOperationError(
                        "Import Failed: Release Not Found",
                        f"Helm release '{name}' not found in namespace '{namespace}' "
                        f"(context: {context}).\n\nVerify the release exists:\n"
                        f"  helm list -n {namespace} --kube-context {context}",
                    ) from err
                except HelmException as err:
                    raise ReleaseOperationError(
                        "Import Failed",
                        f"Failed to get Helm release: {error_message(err)}",
                    ) from err
        spec = replace(
            spec, chart=release.chart_name or "", version=release.chart_version
        )
        state = ReleaseState(id=_new_id(), spec=copy.deepcopy(spec)).refresh(release)
        warning = (
            "Import Successful, Configuration Required: "
            f"Helm release '{name}' imported successfully.\n\n"
            "The following fields were imported:\n"
            f"- chart: {release.chart_name}\n"
            f"- version: {release.chart_version}\n"
            f"- revision: {release.revision}\n\n"
            "You must add to your release definition:\n"
            "- repository: The Helm repository URL\n"
            f"- values: Any custom values (check with: helm get values {name} -n {namespace})\n\n"
            "The cluster connection uses your KUBECONFIG. Replace with your actual "
            "connection config."
        )
        return ImportResult(state=state, warnings=[warning])

    def validate(self, spec: ReleaseSpec) -> list[str]:
        """Return problems with a release definition found without cluster access."""
        return validate_spec(spec)
