"""Library for downloading charts from helm HTTP repositories.

A repository serves an `index.yaml` listing every version of every chart,
with URLs of the chart archives that are either relative to the repository,
absolute, or references into an OCI registry.
"""

from collections.abc import Callable
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import re
import ssl
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
import yaml

from .exceptions import ChartLoadError
from .manifest import OCI_SCHEME, ReleaseSpec
from .oci import RegistryClient

__all__ = [
    "ChartPathOptions",
    "fetch_index",
    "find_chart_version",
    "parse_constraint",
    "fetch_repo_chart",
]

_LOGGER = logging.getLogger(__name__)

_SEMVER_RE = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)
_WILDCARDS = ("x", "X", "*")
_DOWNLOAD_TIMEOUT = 60.0


@dataclass
class ChartPathOptions:
    """Where and how to fetch a chart.

    The registry client is not part of the copyable fields, so `copy_with`
    must be used instead of `dataclasses.replace` to derive new options.
    """

    repository: str | None = None
    version: str | None = None
    username: str | None = None
    password: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    ca_file: str | None = None
    pass_credentials: bool = False
    registry_config_path: str | None = None

    registry_client: RegistryClient | None = field(
        default=None, init=False, repr=False, compare=False
    )

    @classmethod
    def from_spec(cls, spec: ReleaseSpec) -> "ChartPathOptions":
        return cls(
            repository=spec.repository,
            version=spec.version,
            username=spec.repository_username,
            password=spec.repository_password,
            cert_file=spec.repository_cert_file,
            key_file=spec.repository_key_file,
            ca_file=spec.repository_ca_file,
            pass_credentials=spec.pass_credentials,
            registry_config_path=spec.registry_config_path,
        )

    def copy_with(self, **changes: Any) -> "ChartPathOptions":
        """Return a copy with changes applied, keeping the registry client."""
        options = replace(self, **changes)
        options.registry_client = self.registry_client
        return options

    def new_registry_client(self) -> RegistryClient:
        """Create and attach the registry client for these options."""
        self.registry_client = RegistryClient(
            username=self.username,
            password=self.password,
            registry_config_path=self.registry_config_path,
        )
        return self.registry_client

    @property
    def basic_auth(self) -> tuple[str, str] | None:
        if self.username and self.password:
            return (self.username, self.password)
        return None

    def ssl_context(self) -> ssl.SSLContext:
        """Return the TLS settings for talking to the repository."""
        context = ssl.create_default_context(cafile=self.ca_file)
        if self.cert_file and self.key_file:
            context.load_cert_chain(self.cert_file, self.key_file)
        return context


def _semver_key(version: str) -> tuple[Any, ...] | None:
    if not (match := _SEMVER_RE.match(version)):
        return None
    pre = match.group("pre")
    pre_key: tuple[Any, ...] = ()
    if pre:
        pre_key = tuple(
            (0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in pre.split(".")
        )
    return (
        int(match.group("major")),
        int(match.group("minor") or 0),
        int(match.group("patch") or 0),
        # A release sorts after all of its pre-releases
        0 if pre else 1,
        pre_key,
    )


_CONSTRAINT_RE = re.compile(
    r"^(?P<op>!=|>=|<=|=>|=<|~>|[=<>~^])?v?(?P<major>\d+|[xX*])"
    r"(?:\.(?P<minor>\d+|[xX*]))?(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)
_HYPHEN_RANGE_RE = re.compile(r"(\S+)\s+-\s+(\S+)")
_OPERATOR_SPACE_RE = re.compile(r"([=<>~^!]+)\s+")

VersionKey = tuple[Any, ...]
Check = Callable[[VersionKey], bool]


def _bump(parts: list[int], index: int) -> VersionKey:
    """Return the lowest key above every version sharing the leading parts."""
    bumped = parts[:index] + [parts[index] + 1] + [0] * (2 - index)
    return (*bumped, 0, ())


def _parse_term(term: str) -> tuple[Check, bool] | None:
    """Parse one comparison, returning its check and whether it names a pre-release."""
    if not (match := _CONSTRAINT_RE.match(term)):
        return None
    op = {"=>": ">=", "=<": "<=", "~>": "~"}.get(match.group("op"), match.group("op"))
    parts: list[int] = []
    for group in ("major", "minor", "patch"):
        value = match.group(group)
        if value is None or value in _WILDCARDS:
            break
        parts.append(int(value))
    pre = match.group("pre") if len(parts) == 3 else None
    if not parts:
        return (lambda key: op not in ("<", ">", "!=")), False
    padded = parts + [0] * (3 - len(parts))
    if len(parts) == 3:
        exact = _semver_key(".".join(map(str, padded)) + (f"-{pre}" if pre else ""))
        if exact is None:
            return None
        low, high = exact, None
    else:
        low, high = (*padded, 0, ()), _bump(padded, len(parts) - 1)

    def within(key: VersionKey) -> bool:
        if high is None:
            return key == low
        return low <= key < high

    if op == "~":
        upper = _bump(padded, 1 if len(parts) > 1 else 0)
        return (lambda key: low <= key < upper), bool(pre)
    if op == "^":
        if padded[0] or len(parts) == 1:
            upper = _bump(padded, 0)
        elif padded[1] or len(parts) == 2:
            upper = _bump(padded, 1)
        else:
            upper = _bump(padded, 2)
        return (lambda key: low <= key < upper), bool(pre)
    checks: dict[str | None, Check] = {
        None: within,
        "=": within,
        "!=": lambda key: not within(key),
        ">": lambda key: key > low if high is None else key >= high,
        ">=": lambda key: key >= low,
        "<": lambda key: key < low,
        "<=": lambda key: key <= low if high is None else key < high,
    }
    return checks[op], bool(pre)


def parse_constraint(constraint: str) -> Check | None:
    """Return a check for a version constraint, or None if it is not valid.

    Supports exact and partial versions, `x` and `*` wildcards, the
    comparison operators, `~` and `^` ranges, hyphen ranges and `||`
    alternatives. Comparisons within an alternative are separated by
    spaces or commas. Pre-releases only match an alternative that names
    a pre-release.
    """
    alternatives: list[tuple[list[Check], bool]] = []
    for group in constraint.split("||"):
        group = _HYPHEN_RANGE_RE.sub(r">=\1 <=\2", group)
        group = _OPERATOR_SPACE_RE.sub(r"\1", group)
        terms = [term for term in re.split(r"[\s,]+", group) if term]
        if not terms:
            return None
        checks: list[Check] = []
        allow_pre = False
        for term in terms:
            if (parsed := _parse_term(term)) is None:
                return None
            checks.append(parsed[0])
            allow_pre = allow_pre or parsed[1]
        alternatives.append((checks, allow_pre))

    def check(key: VersionKey) -> bool:
        return any(
            (group_pre or key[3]) and all(item(key) for item in group_checks)
            for group_checks, group_pre in alternatives
        )

    return check


def find_chart_version(
    index: dict[str, Any], name: str, version: str | None
) -> dict[str, Any]:
    """Return the index entry for a chart matching the version constraint.

    An empty version selects the newest version that is not a pre-release.
    """
    entries = (index.get("entries") or {}).get(name)
    if not entries:
        raise ChartLoadError(f"Chart {name} not found in repository index")
    check = parse_constraint(version) if version else None
    candidates = []
    for entry in entries:
        entry_version = str(entry.get("version", ""))
        if version and entry_version == version:
            return entry
        if (key := _semver_key(entry_version)) is None:
            continue
        if check is not None and check(key) or not version and key[3]:
            candidates.append((key, entry))
    if version and check is None:
        raise ChartLoadError(f"Chart {name} version constraint {version} is not valid")
    if not candidates:
        raise ChartLoadError(
            f"Chart {name} version {version or '(latest)'} not found in repository index"
        )
    return max(candidates, key=lambda item: item[0])[1]


def _chart_url(repository: str, entry: dict[str, Any]) -> str:
    if not (urls := entry.get("urls")):
        raise ChartLoadError(
            f"Chart {entry.get('name')} version {entry.get('version')} has no download url"
        )
    url = str(urls[0])
    if url.startswith(OCI_SCHEME) or urlparse(url).scheme:
        return url
    return urljoin(f"{repository.rstrip('/')}/", url)


async def fetch_index(
    client: httpx.AsyncClient, options: ChartPathOptions
) -> dict[str, Any]:
    """Download and parse the index.yaml of a repository."""
    if not options.repository:
        raise ChartLoadError("repository must be specified for remote charts")
    url = f"{options.repository.rstrip('/')}/index.yaml"
    _LOGGER.debug("Fetching repository index %s", url)
    try:
        response = await client.get(url, auth=options.basic_auth)
        response.raise_for_status()
    except httpx.HTTPError as err:
        raise ChartLoadError(
            f"Failed to download repository index {url}: {err}"
        ) from err
    try:
        index = yaml.load(response.text, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise ChartLoadError(f"Failed to parse repository index {url}: {err}") from err
    if not isinstance(index, dict):
        raise ChartLoadError(f"Repository index {url} is not a mapping")
    return index


async def _download(
    client: httpx.AsyncClient, url: str, options: ChartPathOptions, dest: Path
) -> Path:
    auth = options.basic_auth
    repo_host = urlparse(options.repository or "").netloc
    if urlparse(url).netloc != repo_host and not options.pass_credentials:
        auth = None
    _LOGGER.info("Downloading chart %s", url)
    try:
        response = await client.get(url, auth=auth)
        response.raise_for_status()
    except httpx.HTTPError as err:
        raise ChartLoadError(f"Failed to download chart {url}: {err}") from err
    dest.write_bytes(response.content)
    return dest


async def fetch_repo_chart(
    name: str,
    options: ChartPathOptions,
    dest_dir: Path,
    client: httpx.AsyncClient | None = None,
) -> Path:
    """Download the archive of a chart from an HTTP repository.

    Returns the path of the downloaded archive.
    """
    if options.registry_client is None:
        options.new_registry_client()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            verify=options.ssl_context(),
            follow_redirects=True,
            timeout=_DOWNLOAD_TIMEOUT,
        )
    try:
        index = await fetch_index(client, options)
        entry = find_chart_version(index, name, options.version)
        resolved = options.copy_with(version=str(entry["version"]))
        url = _chart_url(options.repository or "", entry)
        if url.startswith(OCI_SCHEME):
            if resolved.registry_client is None:
                raise ChartLoadError(f"No registry client available to pull {url}")
            return await resolved.registry_client.pull(url[len(OCI_SCHEME) :], dest_dir)
        return await _download(
            client, url, resolved, dest_dir / f"{name}-{resolved.version}.tgz"
        )
    finally:
        if owns_client:
            await client.aclose()
