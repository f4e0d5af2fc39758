"""Classification and enrichment of failed helm operations.

Helm reports failures as plain text, so errors are classified by matching
an ordered list of rules against the message. Timeouts are enriched with a
summary of unhealthy pods in the release namespace, collected with a single
API call. Diagnostics never mask the original failure: any error while
collecting them results in no enrichment.
"""

import asyncio
from collections.abc import Callable
import copy
import datetime
import enum
import logging
from typing import Any, Protocol

from kubernetes import client

from .duration import format_duration

__all__ = [
    "HelmErrorKind",
    "classify_helm_error",
    "format_helm_error",
    "summarize_pods",
    "suggest_timeout",
]

_LOGGER = logging.getLogger(__name__)

MAX_POD_ISSUES = 5
_MIN_SUGGESTED_TIMEOUT = datetime.timedelta(seconds=60)
_POD_LIST_TIMEOUT = 10


class HelmErrorKind(enum.Enum):
    """Kinds of helm failures that get a tailored message."""

    UNKNOWN = "unknown"
    TIMEOUT = "timeout"
    NAMESPACE_NOT_FOUND = "namespace-not-found"
    ROLLBACK = "rollback"


class RestConfigGetter(Protocol):
    """Anything that can provide a kubernetes client configuration."""

    def to_rest_config(self) -> client.Configuration:
        """Return a kubernetes client configuration."""


def _contains_any(message: str, needles: tuple[str, ...]) -> bool:
    return any(needle in message for needle in needles)


_TIMEOUT_MARKERS = ("context deadline exceeded", "timed out waiting", "not ready")
_ROLLBACK_MARKERS = (
    "rollback",
    "rolled back",
    "uninstalled due to",
    "RollbackOnFailure",
)

# Evaluated in order, the first matching rule wins. A rolled back release
# also reports a timeout so it must be checked first.
_RULES: list[tuple[Callable[[str], bool], HelmErrorKind]] = [
    (
        lambda msg: _contains_any(msg, _TIMEOUT_MARKERS)
        and _contains_any(msg, _ROLLBACK_MARKERS),
        HelmErrorKind.ROLLBACK,
    ),
    (lambda msg: _contains_any(msg, _TIMEOUT_MARKERS), HelmErrorKind.TIMEOUT),
    (
        lambda msg: "not found" in msg and "namespace" in msg,
        HelmErrorKind.NAMESPACE_NOT_FOUND,
    ),
]


def classify_helm_error(message: str) -> HelmErrorKind:
    """Return the kind of failure described by a helm error message."""
    for predicate, kind in _RULES:
        if predicate(message):
            return kind
    return HelmErrorKind.UNKNOWN


def suggest_timeout(current: datetime.timedelta) -> str:
    """Return double the current timeout, at least one minute."""
    return format_duration(max(current * 2, _MIN_SUGGESTED_TIMEOUT))


def _pod_issues(pod: Any) -> list[str]:
    status = pod.status
    if status is None:
        return []
    issues = []
    for cs in status.init_container_statuses or []:
        waiting = cs.state.waiting if cs.state else None
        if waiting and waiting.reason:
            issues.append(f"init container '{cs.name}': {waiting.reason}")
    for cs in status.container_statuses or []:
        waiting = cs.state.waiting if cs.state else None
        terminated = cs.state.terminated if cs.state else None
        if waiting and waiting.reason:
            issues.append(waiting.reason)
        elif terminated and terminated.exit_code:
            issues.append(
                f"exited with code {terminated.exit_code} ({terminated.reason})"
            )
    if status.phase == "Pending":
        for cond in status.conditions or []:
            if cond.type == "PodScheduled" and cond.status == "False":
                issues.append(f"unschedulable: {cond.message}")
    return issues


def summarize_pods(pods: list[Any]) -> str:
    """Return a short description of why pods are not ready."""
    if not pods:
        return "No pods found in namespace (chart may not have created any)."
    issues = [
        (pod.metadata.name, reason) for pod in pods for reason in _pod_issues(pod)
    ]
    if not issues:
        return f"All {len(pods)} pod(s) exist but are not yet ready."
    lines = ["Pod issues:\n"]
    for pod_name, reason in issues[:MAX_POD_ISSUES]:
        lines.append(f"  - {pod_name}: {reason}\n")
    if len(issues) > MAX_POD_ISSUES:
        lines.append(f"  ... and {len(issues) - MAX_POD_ISSUES} more\n")
    return "".join(lines)


def _pod_list_client(getter: RestConfigGetter) -> client.ApiClient:
    """Return a client that makes a single attempt per request."""
    configuration = copy.copy(getter.to_rest_config())
    configuration.retries = 0
    return client.ApiClient(configuration)


def _list_pods(getter: RestConfigGetter, namespace: str) -> list[Any]:
    with _pod_list_client(getter) as api_client:
        return (
            client.CoreV1Api(api_client)
            .list_namespaced_pod(namespace, _request_timeout=_POD_LIST_TIMEOUT)
            .items
        )


async def pod_diagnostics(getter: RestConfigGetter | None, namespace: str) -> str:
    """Return a summary of pod problems, or an empty string if unavailable."""
    if getter is None:
        return ""
    try:
        pods = await asyncio.to_thread(_list_pods, getter, namespace)
    except Exception as err:
        _LOGGER.debug("Skipping pod diagnostics: cannot list pods: %s", err)
        return ""
    return summarize_pods(pods)


async def _format_timeout(
    operation: str,
    release: str,
    namespace: str,
    timeout: datetime.timedelta,
    getter: RestConfigGetter | None,
    rolled_back: bool,
) -> tuple[str, str]:
    if rolled_back:
        title = f"Helm {operation} Failed and Rolled Back"
        summary = (
            f"Release '{release}' in namespace '{namespace}' was not ready within "
            f"{format_duration(timeout)} and was automatically rolled back.\n"
        )
        last_option = "  - Disable rollback: atomic = false"
    else:
        title = f"Helm {operation} Timed Out"
        summary = (
            f"Release '{release}' in namespace '{namespace}' was not ready within "
            f"{format_duration(timeout)}.\n"
        )
        last_option = "  - Skip waiting: wait = false"
    detail = [summary]
    if diagnostics := await pod_diagnostics(getter, namespace):
        detail.append("\n")
        detail.append(diagnostics)
    detail.append("\nOptions:\n")
    detail.append(f'  - Increase timeout: timeout = "{suggest_timeout(timeout)}"\n')
    detail.append(f"  - Investigate: kubectl get pods -n {namespace}\n")
    detail.append(last_option)
    return title, "".join(detail)


def _format_namespace_not_found(release: str, namespace: str) -> tuple[str, str]:
    return "Namespace Not Found", (
        f"Cannot install release '{release}': namespace '{namespace}' does not exist.\n"
        "\nOptions:\n"
        "  - Auto-create: create_namespace = true\n"
        f"  - Create manually: kubectl create namespace {namespace}"
    )


def error_message(err: BaseException) -> str:
    """Return the text helm printed for a failure, falling back to the exception."""
    return getattr(err, "stderr", "").strip() or str(err)


async def format_helm_error(
    operation: str,
    release: str,
    namespace: str,
    timeout: datetime.timedelta,
    err: BaseException,
    getter: RestConfigGetter | None = None,
) -> tuple[str, str]:
    """Return a title and detail describing a failed helm operation.

    The operation is a capitalized verb such as `Install` or `Upgrade`.
    """
    message = error_message(err)
    kind = classify_helm_error(message)
    _LOGGER.debug("Classified %s failure of %s as %s", operation, release, kind.value)
    if kind in (HelmErrorKind.TIMEOUT, HelmErrorKind.ROLLBACK):
        return await _format_timeout(
            operation,
            release,
            namespace,
            timeout,
            getter,
            rolled_back=kind == HelmErrorKind.ROLLBACK,
        )
    if kind == HelmErrorKind.NAMESPACE_NOT_FOUND:
        return _format_namespace_not_found(release, namespace)
    return (
        f"Failed to {operation} Helm Release",
        f"Could not {operation.lower()} Helm release '{release}': {message}",
    )
