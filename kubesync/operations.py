"""Cluster-facing interfaces and building blocks used while running a sync.

Talking to a cluster is left to implementations of :class:`ClusterClient`
and :class:`ResourceOperations`; failures are reported by raising
:class:`ApiError` or one of its subclasses.
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Union

from kubesync.common import (
    NAMESPACE_KIND,
    OperationPhase,
    ResourceKey,
    ResultCode,
    get_name,
    get_resource_key,
    group_version_kind,
)
from kubesync.reconcile import ReconciliationResult

CRD_GROUP = "apiextensions.k8s.io"
CRD_KIND = "CustomResourceDefinition"

# How long to wait for a freshly applied CRD to become established.
CRD_READINESS_TIMEOUT = 3.0
CRD_READINESS_POLL_INTERVAL = 0.1

# The operation phase a resource enters for each result code.
OPERATION_PHASES: dict[ResultCode, OperationPhase] = {
    ResultCode.SYNCED: OperationPhase.RUNNING,
    ResultCode.SYNC_FAILED: OperationPhase.FAILED,
    ResultCode.PRUNED: OperationPhase.SUCCEEDED,
    ResultCode.PRUNE_SKIPPED: OperationPhase.SUCCEEDED,
}


class ApiError(Exception):
    """A request to the cluster failed."""


class NotFoundError(ApiError):
    """The requested resource or resource type does not exist."""


class UnauthorizedError(ApiError):
    """The cluster refused the request's credentials."""


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class DeletePropagation(_StrEnum):
    ORPHAN = "Orphan"
    BACKGROUND = "Background"
    FOREGROUND = "Foreground"


class DryRunStrategy(_StrEnum):
    NONE = "none"
    CLIENT = "client"
    SERVER = "server"


class HealthStatusCode(_StrEnum):
    UNKNOWN = "Unknown"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    SUSPENDED = "Suspended"
    DEGRADED = "Degraded"
    MISSING = "Missing"


@dataclass(frozen=True)
class HealthStatus:
    """Health of a live object."""

    status: HealthStatusCode
    message: str = ""


@dataclass(frozen=True)
class ApiResource:
    """A resource type served by the cluster."""

    name: str
    kind: str
    group: str = ""
    version: str = ""
    namespaced: bool = True
    verbs: tuple[str, ...] = ()


# Returns the health of a live object, or None for objects without health.
HealthCheck = Callable[[dict], Optional[HealthStatus]]
# Raises an exception to refuse syncing an object of the given resource type.
PermissionValidator = Callable[[dict, ApiResource], None]
# Invoked after each applied wave with (phase, wave, final); raising fails the sync.
SyncWaveHook = Callable[[Any, int, bool], None]
# Decides whether a managed namespace must be created or updated.
NamespaceModifier = Callable[[dict, Optional[dict]], bool]


class ResourceOperations(Protocol):
    """Apply-style operations on single objects; each returns a message."""

    def apply_resource(
        self,
        obj: dict,
        dry_run_strategy: DryRunStrategy,
        force: bool,
        validate: bool,
        server_side: bool,
        manager: str,
    ) -> str: ...

    def replace_resource(self, obj: dict, dry_run_strategy: DryRunStrategy, force: bool) -> str: ...

    def create_resource(self, obj: dict, dry_run_strategy: DryRunStrategy, validate: bool) -> str: ...

    def update_resource(self, obj: dict, dry_run_strategy: DryRunStrategy) -> dict: ...


class ClusterClient(Protocol):
    """Discovery, reads and deletes against a cluster."""

    def server_resource(self, group: str, version: str, kind: str, verb: str) -> ApiResource:
        """Return the served resource type; raise NotFoundError if unknown."""
        ...

    def get_resource(
        self, group: str, version: str, kind: str, name: str, namespace: str
    ) -> Optional[dict]:
        """Return the live object; raise NotFoundError if it does not exist."""
        ...

    def delete_resource(
        self,
        group: str,
        version: str,
        kind: str,
        name: str,
        namespace: str,
        propagation: DeletePropagation,
    ) -> None: ...

    def is_crd_established(self, name: str) -> bool:
        """Tell whether the named CRD has an Established=True condition."""
        ...


class RunState(IntEnum):
    """Outcome of running a batch of tasks, ordered by severity."""

    SUCCESSFUL = 0
    PENDING = 1
    FAILED = 2


def merge_run_states(current: RunState, results: Iterable[RunState]) -> RunState:
    """Fold results into the current state.

    Failed is terminal, pending can only become failed, and successful takes
    on any pending or failed result.
    """
    state = RunState(current)
    for result in results:
        # the severity ordering of RunState encodes the allowed transitions
        state = max(state, RunState(result))
    return state


def run_concurrently(
    current: RunState, funcs: Iterable[Callable[[RunState], RunState]]
) -> RunState:
    """Run every function with the current state in parallel and merge their results."""
    funcs = list(funcs)
    if not funcs:
        return RunState(current)
    with ThreadPoolExecutor(max_workers=len(funcs)) as pool:
        futures = [pool.submit(func, current) for func in funcs]
        results = [future.result() for future in futures]
    return merge_run_states(current, results)


@dataclass
class DiffResult:
    """Comparison of one resource: serialized objects and whether it differs."""

    normalized_live: Union[bytes, str] = b"null"
    predicted_live: Union[bytes, str] = b"null"
    modified: bool = False


@dataclass
class ReconciledResource:
    """A target object paired with its live counterpart."""

    target: Optional[dict] = None
    live: Optional[dict] = None

    def key(self) -> ResourceKey:
        """The key of the live object if there is one, otherwise of the target."""
        return get_resource_key(self.live if self.live is not None else self.target)


def group_resources(reconciliation_result: ReconciliationResult) -> dict[ResourceKey, ReconciledResource]:
    """Index target/live pairs by resource key."""
    targets = reconciliation_result.target
    lives = reconciliation_result.live
    if len(lives) < len(targets):
        raise ValueError("reconciliation result has fewer live entries than targets")
    resources: dict[ResourceKey, ReconciledResource] = {}
    for target, live in zip(targets, lives):
        resource = ReconciledResource(target=target, live=live)
        resources[resource.key()] = resource
    return resources


def _as_text(data: Union[bytes, str]) -> str:
    return data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data


def group_diff_results(diffs: Iterable[DiffResult]) -> dict[ResourceKey, bool]:
    """Map each diffed resource's key to whether it was modified.

    The normalized live object identifies the resource unless it is null, in
    which case the predicted live object does; undecodable entries are skipped.
    """
    modified: dict[ResourceKey, bool] = {}
    for diff in diffs:
        live = _as_text(diff.normalized_live)
        raw = live if live != "null" else _as_text(diff.predicted_live)
        try:
            obj = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            continue
        if not isinstance(obj, dict):
            continue
        modified[get_resource_key(obj)] = diff.modified
    return modified


def is_crd(obj: Optional[Mapping[str, Any]]) -> bool:
    """Tell whether the object is a CustomResourceDefinition."""
    if obj is None:
        return False
    group, _, kind = group_version_kind(obj)
    return group == CRD_GROUP and kind == CRD_KIND


def _nested_str(obj: Mapping[str, Any], *path: str) -> Optional[str]:
    value: Any = obj
    for part in path:
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value if isinstance(value, str) else None


def is_crd_of_group_kind(group: str, kind: str, obj: Optional[Mapping[str, Any]]) -> bool:
    """Tell whether the object is a CRD defining the given group and kind."""
    if not is_crd(obj):
        return False
    crd_group = _nested_str(obj, "spec", "group")
    crd_kind = _nested_str(obj, "spec", "names", "kind")
    if crd_group is None or crd_kind is None:
        return False
    return crd_group == group and crd_kind == kind


def is_namespace_with_name(obj: Optional[Mapping[str, Any]], name: str) -> bool:
    """Tell whether the object is the core Namespace called ``name``."""
    if obj is None:
        return False
    group, _, kind = group_version_kind(obj)
    return group == "" and kind == NAMESPACE_KIND and get_name(obj) == name