"""Sync tasks: one resource or hook to apply, prune or wait for in a phase."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from kubesync import hooks
from kubesync.common import (
    NAMESPACE_KIND,
    HookDeletePolicy,
    HookType,
    OperationPhase,
    ResourceKey,
    ResultCode,
    SyncPhase,
    get_kind,
    get_name,
    get_namespace,
    get_resource_key,
    group_version_kind,
)

Obj = Mapping[str, Any]

SYNC_PHASE_ORDER = {
    SyncPhase.PRE_SYNC: -1,
    SyncPhase.SYNC: 0,
    SyncPhase.POST_SYNC: 1,
    SyncPhase.SYNC_FAIL: 2,
}

_KINDS = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)

# All known kinds get a negative rank so that unknown (custom) kinds, ranked 0, come last.
KIND_ORDER = {kind: index - len(_KINDS) for index, kind in enumerate(_KINDS)}

_PHASE_HOOK_TYPES = frozenset(
    {HookType.PRE_SYNC, HookType.SYNC, HookType.POST_SYNC, HookType.SYNC_FAIL}
)

_CRD_GROUP = "apiextensions.k8s.io"
_CRD_KIND = "CustomResourceDefinition"


def sync_phases(obj: Obj) -> list[SyncPhase]:
    """The sync phases the object takes part in; empty for skipped or garbage hooks."""
    if hooks.skip(obj):
        return []
    if hooks.is_hook(obj):
        return list(
            dict.fromkeys(
                SyncPhase(t.value) for t in hooks.hook_types(obj) if t in _PHASE_HOOK_TYPES
            )
        )
    return [SyncPhase.SYNC]


def resource_result_key(key: ResourceKey, phase: SyncPhase) -> str:
    """The key under which a resource's result in a phase is stored."""
    return f"{key}:{phase}"


def _is_crd(obj: Obj) -> bool:
    group, _, kind = group_version_kind(obj)
    return group == _CRD_GROUP and kind == _CRD_KIND


def _nested_str(obj: Obj, *path: str) -> Optional[str]:
    value: Any = obj
    for part in path:
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value if isinstance(value, str) else None


@dataclass
class SyncTask:
    """A live and/or target object to sync in one phase.

    A missing target means the live object is to be pruned; a missing live
    object means the target has yet to be created.
    """

    phase: SyncPhase = SyncPhase.SYNC
    live_obj: Optional[dict] = None
    target_obj: Optional[dict] = None
    skip_dry_run: bool = False
    sync_status: Optional[ResultCode] = None
    operation_state: Optional[OperationPhase] = None
    message: str = ""
    wave_override: Optional[int] = None

    def __str__(self) -> str:
        kind_label = "hook" if self.is_hook() else "resource"
        live = "obj" if self.live_obj is not None else "nil"
        target = "obj" if self.target_obj is not None else "nil"
        return (
            f"{self.phase}/{self.wave()} {kind_label} "
            f"{self.group()}/{self.kind()}:{self.namespace()}/{self.name()} "
            f"{live}->{target} "
            f"({self.sync_status or ''},{self.operation_state or ''},{self.message})"
        )

    def obj(self) -> Optional[dict]:
        """The target object if there is one, otherwise the live object."""
        return self.target_obj if self.target_obj is not None else self.live_obj

    def is_prune(self) -> bool:
        return self.target_obj is None

    def result_key(self) -> str:
        return resource_result_key(get_resource_key(self.obj()), self.phase)

    def wave(self) -> int:
        if self.wave_override is not None:
            return self.wave_override
        return hooks.wave(self.obj())

    def is_hook(self) -> bool:
        return hooks.is_hook(self.obj())

    def group(self) -> str:
        return group_version_kind(self.obj())[0]

    def kind(self) -> str:
        return group_version_kind(self.obj())[2]

    def version(self) -> str:
        return group_version_kind(self.obj())[1]

    def name(self) -> str:
        return get_name(self.obj())

    def namespace(self) -> str:
        return get_namespace(self.obj())

    def pending(self) -> bool:
        return self.operation_state is None

    def running(self) -> bool:
        return self.operation_state is not None and self.operation_state.running()

    def completed(self) -> bool:
        return self.operation_state is not None and self.operation_state.completed()

    def successful(self) -> bool:
        return self.operation_state is not None and self.operation_state.successful()

    def hook_type(self) -> Optional[HookType]:
        """The hook type matching this task's phase, or None for non-hooks."""
        if self.is_hook():
            return HookType(self.phase.value)
        return None

    def has_hook_delete_policy(self, policy: HookDeletePolicy) -> bool:
        # a delete policy is meaningless on something that is not a hook
        if not self.is_hook():
            return False
        return policy in hooks.delete_policies(self.obj())

    def delete_before_creation(self) -> bool:
        return (
            self.live_obj is not None
            and self.pending()
            and self.has_hook_delete_policy(HookDeletePolicy.BEFORE_HOOK_CREATION)
        )

    def delete_on_phase_completion(self) -> bool:
        return self.delete_on_phase_failed() or self.delete_on_phase_successful()

    def delete_on_phase_successful(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_SUCCEEDED
        )

    def delete_on_phase_failed(self) -> bool:
        return self.live_obj is not None and self.has_hook_delete_policy(
            HookDeletePolicy.HOOK_FAILED
        )

    def resource_key(self) -> ResourceKey:
        return get_resource_key(self.obj())


def _sort_key(task: SyncTask) -> tuple[int, int, int, str]:
    obj = task.obj()
    return (
        SYNC_PHASE_ORDER[task.phase],
        task.wave(),
        KIND_ORDER.get(get_kind(obj), 0),
        get_name(obj),
    )


def _namespace_dependency(obj: Obj) -> Optional[str]:
    if get_kind(obj) == NAMESPACE_KIND and group_version_kind(obj)[0] == "":
        return get_name(obj)
    return None


def _namespace_reference(obj: Obj) -> Optional[str]:
    namespace = get_namespace(obj)
    return namespace or None


def _crd_dependency(obj: Obj) -> Optional[str]:
    if not _is_crd(obj):
        return None
    crd_group = _nested_str(obj, "spec", "group")
    crd_kind = _nested_str(obj, "spec", "names", "kind")
    if crd_group is None or crd_kind is None:
        return None
    return f"{crd_group}/{crd_kind}"


def _group_kind_reference(obj: Obj) -> Optional[str]:
    group, _, kind = group_version_kind(obj)
    return f"{group}/{kind}"


DependencyKey = Callable[[Obj], Optional[str]]


class SyncTasks(list):
    """An ordered list of sync tasks."""

    def __init__(self, tasks: Iterable[SyncTask] = ()) -> None:
        super().__init__(tasks)

    def __str__(self) -> str:
        return "[" + ", ".join(str(task) for task in self) + "]"

    def sort_tasks(self) -> None:
        """Order by phase, wave, kind and name, then move dependencies first.

        Namespaces go before resources in them and CRDs before their custom
        resources.
        """
        self.sort(key=_sort_key)
        self._adjust_deps(_namespace_dependency, _namespace_reference)
        self._adjust_deps(_crd_dependency, _group_kind_reference)

    def _adjust_deps(self, is_dep: DependencyKey, refers_to_dep: DependencyKey) -> None:
        first_index: dict[str, int] = {}
        # Tasks only ever move to earlier positions, so iterating over a snapshot
        # still visits each task at its current position.
        for position, task in enumerate(list(self)):
            target = task.target_obj
            if target is None:
                continue
            dep_key = is_dep(target)
            if dep_key is not None:
                index = first_index.get(dep_key)
                if index is None:
                    continue
                anchor = self[index]
                task.wave_override = anchor.wave()
                task.phase = anchor.phase
                del self[position]
                self.insert(index, task)
                for key, first in first_index.items():
                    if first >= index:
                        first_index[key] = first + 1
            else:
                ref_key = refers_to_dep(target)
                if ref_key is not None:
                    first_index.setdefault(ref_key, position)

    def filter(self, predicate: Callable[[SyncTask], bool]) -> "SyncTasks":
        return SyncTasks(task for task in self if predicate(task))

    def split(self, predicate: Callable[[SyncTask], bool]) -> tuple["SyncTasks", "SyncTasks"]:
        matching, rest = SyncTasks(), SyncTasks()
        for task in self:
            (matching if predicate(task) else rest).append(task)
        return matching, rest

    def unique_messages(self, func: Callable[[SyncTask], str]) -> list[str]:
        """Distinct values of ``func`` over the tasks, in first-seen order."""
        return list(dict.fromkeys(func(task) for task in self))

    def all(self, predicate: Callable[[SyncTask], bool]) -> bool:
        return all(predicate(task) for task in self)

    def any(self, predicate: Callable[[SyncTask], bool]) -> bool:
        return any(predicate(task) for task in self)

    def find(self, predicate: Callable[[SyncTask], bool]) -> Optional[SyncTask]:
        return next((task for task in self if predicate(task)), None)

    def phase(self) -> Optional[SyncPhase]:
        return self[0].phase if self else None

    def wave(self) -> int:
        return self[0].wave() if self else 0

    def last_phase(self) -> Optional[SyncPhase]:
        return self[-1].phase if self else None

    def last_wave(self) -> int:
        return self[-1].wave() if self else 0

    def multi_step(self) -> bool:
        return self.wave() != self.last_wave() or self.phase() != self.last_phase()