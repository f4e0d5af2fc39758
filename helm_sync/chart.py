"""Library for resolving a chart reference to a chart ready for install.

A chart is referenced one of three ways:

- A local path, e.g. `./charts/podinfo` or a `.tgz` archive
- A chart name in an HTTP repository, e.g. `podinfo` with repository
  `https://stefanprodan.github.io/podinfo`
- A chart in an OCI registry, e.g. `podinfo` with repository
  `oci://ghcr.io/stefanprodan/charts`

```python
resolver = ChartResolver(work_dir, helm.dependency_update)
chart = await resolver.resolve(spec)
print(f"Resolved {chart.name} {chart.version} at {chart.path}")
```
"""

from collections.abc import Awaitable, Callable
import enum
import io
import logging
from pathlib import Path
import tarfile

import aiofiles
from aiofiles.ospath import exists
import yaml

from .exceptions import ChartLoadError, HelmException, InputException
from .manifest import Chart, ChartMetadata, ReleaseSpec, is_oci_reference
from .oci import chart_reference
from .repo import ChartPathOptions, fetch_repo_chart

__all__ = [
    "ChartSource",
    "ChartResolver",
    "classify_reference",
    "is_local_chart",
    "load_chart",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"

DependencyManager = Callable[[Path], Awaitable[None]]


class ChartSource(str, enum.Enum):
    """Where a chart is loaded from."""

    LOCAL = "local"
    HTTP = "http"
    OCI = "oci"


def is_local_chart(chart: str) -> bool:
    """Return true if the chart reference is a local path."""
    return (
        chart.startswith(("./", "../", "/"))
        or "/" not in chart
        and Path(chart).exists()
    )


def classify_reference(chart: str, repository: str | None) -> ChartSource:
    """Return the source a chart reference is loaded from."""
    if is_local_chart(chart):
        return ChartSource.LOCAL
    if is_oci_reference(chart, repository):
        return ChartSource.OCI
    if not repository:
        raise ChartLoadError("repository must be specified for remote charts")
    return ChartSource.HTTP


def _parse_chart_file(content: bytes | str, source: str) -> ChartMetadata:
    try:
        doc = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise ChartLoadError(f"Unable to parse {CHART_FILE} in {source}: {err}") from err
    try:
        return ChartMetadata.parse_doc(doc)
    except InputException as err:
        raise ChartLoadError(f"Invalid chart {source}: {err}") from err


def _archive_metadata(data: bytes, source: str) -> ChartMetadata:
    """Read Chart.yaml from the top level directory of a chart archive."""
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
            for member in archive.getmembers():
                parts = Path(member.name).parts
                if len(parts) == 2 and parts[1] == CHART_FILE and member.isfile():
                    if (chart_file := archive.extractfile(member)) is None:
                        break
                    return _parse_chart_file(chart_file.read(), source)
    except (tarfile.TarError, OSError, EOFError) as err:
        raise ChartLoadError(f"Unable to read chart archive {source}: {err}") from err
    raise ChartLoadError(f"Chart archive {source} does not contain {CHART_FILE}")


async def load_chart(path: Path) -> Chart:
    """Load a chart from a directory or a `.tgz` archive."""
    if not await exists(path):
        raise ChartLoadError(f"Chart path {path} does not exist")
    if path.is_dir():
        chart_file = path / CHART_FILE
        if not await exists(chart_file):
            raise ChartLoadError(f"Chart directory {path} does not contain {CHART_FILE}")
        async with aiofiles.open(chart_file) as f:
            content = await f.read()
        metadata = _parse_chart_file(content, str(path))
    else:
        async with aiofiles.open(path, mode="rb") as f:
            data = await f.read()
        metadata = _archive_metadata(data, str(path))
    _LOGGER.debug("Loaded chart %s %s from %s", metadata.name, metadata.version, path)
    return Chart(metadata=metadata, path=path)


def _extract(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a chart archive, returning the chart directory."""
    with tarfile.open(archive_path, mode="r:gz") as archive:
        roots = {Path(member.name).parts[0] for member in archive.getmembers()}
        if len(roots) != 1:
            raise ChartLoadError(
                f"Chart archive {archive_path} must contain a single top level directory"
            )
        archive.extractall(dest_dir, filter="data")
    return dest_dir / roots.pop()


class ChartResolver:
    """Resolves chart references into loaded charts.

    Downloads and extracted archives are written to the work directory of
    the operation.
    """

    def __init__(
        self, work_dir: Path, dependency_manager: DependencyManager | None = None
    ) -> None:
        """Initialize ChartResolver."""
        self._work_dir = work_dir
        self._dependency_manager = dependency_manager

    async def resolve(self, spec: ReleaseSpec) -> Chart:
        """Return the chart for a release."""
        source = classify_reference(spec.chart, spec.repository)
        _LOGGER.debug("Resolving %s chart %s", source.value, spec.chart)
        if source == ChartSource.LOCAL:
            chart = await self._resolve_local(spec)
        elif source == ChartSource.OCI:
            chart = await self._resolve_oci(spec)
        else:
            chart = await self._resolve_http(spec)
        if spec.dependency_update:
            chart = await self._update_dependencies(chart)
        return chart

    async def _resolve_local(self, spec: ReleaseSpec) -> Chart:
        return await load_chart(Path(spec.chart).absolute())

    async def _resolve_oci(self, spec: ReleaseSpec) -> Chart:
        if not spec.version:
            raise ChartLoadError(
                f"version is required for OCI chart {spec.chart}, "
                "e.g. version = \"1.2.3\""
            )
        options = ChartPathOptions.from_spec(spec)
        registry_client = options.new_registry_client()
        ref = chart_reference(spec.repository, spec.chart, spec.version)
        archive = await registry_client.pull(ref, self._work_dir)
        return await load_chart(archive)

    async def _resolve_http(self, spec: ReleaseSpec) -> Chart:
        options = ChartPathOptions.from_spec(spec)
        options.new_registry_client()
        archive = await fetch_repo_chart(spec.chart, options, self._work_dir)
        return await load_chart(archive)

    async def _update_dependencies(self, chart: Chart) -> Chart:
        """Download declared dependencies and reload the chart."""
        if not chart.metadata.dependencies:
            _LOGGER.debug("Chart %s has no dependencies", chart.name)
            return chart
        if self._dependency_manager is None:
            raise ChartLoadError(
                f"Chart {chart.name} declares dependencies but no dependency manager is available"
            )
        chart_dir = chart.path
        if not chart_dir.is_dir():
            try:
                chart_dir = _extract(chart.path, self._work_dir / "src")
            except (tarfile.TarError, OSError) as err:
                raise ChartLoadError(
                    f"Unable to extract chart archive {chart.path}: {err}"
                ) from err
        _LOGGER.info(
            "Updating %d dependencies of chart %s",
            len(chart.metadata.dependencies),
            chart.name,
        )
        try:
            await self._dependency_manager(chart_dir)
        except ChartLoadError:
            raise
        except HelmException as err:
            raise ChartLoadError(
                f"Failed to update dependencies of chart {chart.name}: {err}"
            ) from err
        return await load_chart(chart_dir)

