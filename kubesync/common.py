"""Core types and object accessors shared by the sync machinery.

Kubernetes objects are handled as plain dictionaries (the decoded JSON/YAML
form of a manifest).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_KEY_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_KEY_HOOK_DELETE_POLICY = "argocd.argoproj.io/hook-delete-policy"

SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE = "SkipDryRunOnMissingResource=true"
SYNC_OPTION_DISABLE_PRUNE = "Prune=false"
SYNC_OPTIONS_DISABLE_VALIDATION = "Validate=false"
SYNC_OPTION_PRUNE_LAST = "PruneLast=true"
SYNC_OPTION_REPLACE = "Replace=true"
SYNC_OPTION_SERVER_SIDE_APPLY = "ServerSideApply=true"
SYNC_OPTION_DISABLE_DELETION = "Delete=false"

NAMESPACE_KIND = "Namespace"


class _StrEnum(str, Enum):
    def __str__(self) -> str:
        return self.value


class SyncPhase(_StrEnum):
    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"


class OperationPhase(_StrEnum):
    RUNNING = "Running"
    TERMINATING = "Terminating"
    FAILED = "Failed"
    ERROR = "Error"
    SUCCEEDED = "Succeeded"

    def completed(self) -> bool:
        return self in (OperationPhase.FAILED, OperationPhase.ERROR, OperationPhase.SUCCEEDED)

    def running(self) -> bool:
        return self is OperationPhase.RUNNING

    def successful(self) -> bool:
        return self is OperationPhase.SUCCEEDED

    def failed(self) -> bool:
        return self is OperationPhase.FAILED


class ResultCode(_StrEnum):
    SYNCED = "Synced"
    SYNC_FAILED = "SyncFailed"
    PRUNED = "Pruned"
    PRUNE_SKIPPED = "PruneSkipped"


class HookType(_StrEnum):
    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SKIP = "Skip"
    SYNC_FAIL = "SyncFail"


class HookDeletePolicy(_StrEnum):
    HOOK_SUCCEEDED = "HookSucceeded"
    HOOK_FAILED = "HookFailed"
    BEFORE_HOOK_CREATION = "BeforeHookCreation"


def new_hook_type(text: str) -> Optional[HookType]:
    """Return the hook type named by ``text``, or None if it names none."""
    try:
        return HookType(text)
    except ValueError:
        return None


def new_hook_delete_policy(text: str) -> Optional[HookDeletePolicy]:
    """Return the delete policy named by ``text``, or None if it names none."""
    try:
        return HookDeletePolicy(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a resource: group, kind, namespace and name."""

    group: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


@dataclass
class ResourceSyncResult:
    """Outcome of syncing one resource in one sync phase."""

    resource_key: ResourceKey
    version: str = ""
    order: int = 0
    status: Optional[ResultCode] = None
    message: str = ""
    hook_type: Optional[HookType] = None
    hook_phase: Optional[OperationPhase] = None
    sync_phase: Optional[SyncPhase] = None


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, Mapping) else {}


def _metadata_str(obj: Mapping[str, Any], field: str) -> str:
    value = _metadata(obj).get(field)
    return value if isinstance(value, str) else ""


def get_annotations(obj: Mapping[str, Any]) -> dict[str, str]:
    """Return the object's annotations; empty unless all values are strings."""
    annotations = _metadata(obj).get("annotations")
    if not isinstance(annotations, Mapping):
        return {}
    if not all(isinstance(v, str) for v in annotations.values()):
        return {}
    return dict(annotations)


def get_name(obj: Mapping[str, Any]) -> str:
    return _metadata_str(obj, "name")


def get_namespace(obj: Mapping[str, Any]) -> str:
    return _metadata_str(obj, "namespace")


def get_kind(obj: Mapping[str, Any]) -> str:
    kind = obj.get("kind")
    return kind if isinstance(kind, str) else ""


def group_version_kind(obj: Mapping[str, Any]) -> tuple[str, str, str]:
    """Return ``(group, version, kind)`` parsed from apiVersion and kind.

    An apiVersion with more than one slash yields an all-empty result.
    """
    api_version = obj.get("apiVersion")
    if not isinstance(api_version, str):
        api_version = ""
    kind = get_kind(obj)
    if api_version in ("", "/"):
        return "", "", kind
    slashes = api_version.count("/")
    if slashes == 0:
        return "", api_version, kind
    if slashes == 1:
        group, version = api_version.split("/")
        return group, version, kind
    return "", "", ""


def get_resource_key(obj: Mapping[str, Any]) -> ResourceKey:
    group, _, kind = group_version_kind(obj)
    return ResourceKey(group, kind, get_namespace(obj), get_name(obj))