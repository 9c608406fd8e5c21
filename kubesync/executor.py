"""Running sync tasks against a cluster and recording their results."""

from __future__ import annotations

import copy
import dataclasses
import functools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from kubesync.annotations import has_annotation_option
from kubesync.common import (
    ANNOTATION_SYNC_OPTIONS,
    NAMESPACE_KIND,
    SYNC_OPTION_DISABLE_PRUNE,
    SYNC_OPTION_REPLACE,
    SYNC_OPTION_SERVER_SIDE_APPLY,
    SYNC_OPTIONS_DISABLE_VALIDATION,
    OperationPhase,
    ResourceKey,
    ResourceSyncResult,
    ResultCode,
    get_kind,
    get_name,
    get_namespace,
    group_version_kind,
)
from kubesync.operations import (
    CRD_READINESS_POLL_INTERVAL,
    CRD_READINESS_TIMEOUT,
    OPERATION_PHASES,
    ClusterClient,
    DeletePropagation,
    DryRunStrategy,
    HealthCheck,
    NamespaceModifier,
    NotFoundError,
    PermissionValidator,
    ResourceOperations,
    RunState,
    SyncWaveHook,
    is_crd,
    run_concurrently,
)
from kubesync.tasks import SyncTask, SyncTasks, resource_result_key

ResourcesFilter = Callable[[ResourceKey, Optional[dict], Optional[dict]], bool]


@dataclass
class SyncSettings:
    """Options that shape a sync operation."""

    dry_run: bool = False
    force: bool = False
    validate: bool = True
    skip_hooks: bool = False
    prune: bool = False
    replace: bool = False
    server_side_apply: bool = False
    server_side_apply_manager: str = ""
    prune_last: bool = False
    prune_propagation_policy: Optional[DeletePropagation] = None
    resources_filter: Optional[ResourcesFilter] = None
    permission_validator: Optional[PermissionValidator] = None
    health_check: Optional[HealthCheck] = None
    namespace_modifier: Optional[NamespaceModifier] = None
    sync_wave_hook: Optional[SyncWaveHook] = None
    apply_out_of_sync_only: bool = False
    modification_result: Optional[dict[ResourceKey, bool]] = None


class ResultStore:
    """Thread-safe record of per-resource, per-phase sync results."""

    def __init__(
        self,
        initial: Iterable[ResourceSyncResult] = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._log = logger or logging.getLogger(__name__)
        self._results: dict[str, ResourceSyncResult] = {
            resource_result_key(r.resource_key, r.sync_phase): dataclasses.replace(r)
            for r in initial
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._results

    def __setitem__(self, key: str, result: ResourceSyncResult) -> None:
        with self._lock:
            self._results[key] = dataclasses.replace(result)

    def set_resource_result(
        self,
        task: SyncTask,
        sync_status: Optional[ResultCode],
        operation_state: Optional[OperationPhase],
        message: str,
    ) -> None:
        """Update the task and record its result, keeping the latest message."""
        task.sync_status = sync_status
        task.operation_state = operation_state
        if message:
            task.message = message

        key = task.result_key()
        result = ResourceSyncResult(
            resource_key=task.resource_key(),
            version=task.version(),
            status=task.sync_status,
            message=task.message,
            hook_type=task.hook_type(),
            hook_phase=task.operation_state,
            sync_phase=task.phase,
        )
        where = f"{task.namespace()}/{task.kind()}/{task.name()} ({task.phase})"
        with self._lock:
            existing = self._results.get(key)
            if existing is not None:
                if (
                    result.status != existing.status
                    or result.hook_phase != existing.hook_phase
                    or result.message != existing.message
                ):
                    self._log.info(
                        "Updating resource result %s, status: '%s' -> '%s', "
                        "phase '%s' -> '%s', message '%s' -> '%s'",
                        where,
                        existing.status or "",
                        result.status or "",
                        existing.hook_phase or "",
                        result.hook_phase or "",
                        existing.message,
                        result.message,
                    )
                    existing.status = result.status
                    existing.hook_phase = result.hook_phase
                    existing.message = result.message
            else:
                self._log.info(
                    "Adding resource result %s, status: '%s', phase: '%s', message: '%s'",
                    where,
                    result.status or "",
                    result.hook_phase or "",
                    result.message,
                )
                result.order = len(self._results) + 1
                self._results[key] = result

    def started(self) -> bool:
        """Tell whether any result has been recorded."""
        return len(self) > 0

    def get(self, key: str) -> Optional[ResourceSyncResult]:
        """A copy of the result stored under ``key``, or None."""
        with self._lock:
            result = self._results.get(key)
            return dataclasses.replace(result) if result is not None else None

    def results(self) -> list[ResourceSyncResult]:
        """Copies of all results in the order they were first recorded."""
        with self._lock:
            values = [dataclasses.replace(r) for r in self._results.values()]
        return sorted(values, key=lambda r: r.order)


def _metadata(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, Mapping) else {}


def _resource_version(obj: Mapping[str, Any]) -> str:
    value = _metadata(obj).get("resourceVersion")
    return value if isinstance(value, str) else ""


def _set_resource_version(obj: dict, version: str) -> None:
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        if not version:
            return
        meta = obj["metadata"] = {}
    if version:
        meta["resourceVersion"] = version
    else:
        meta.pop("resourceVersion", None)


def _marked_for_deletion(obj: Mapping[str, Any]) -> bool:
    return bool(_metadata(obj).get("deletionTimestamp"))


def _batches_by_kind(tasks: Iterable[SyncTask]) -> Iterator[SyncTasks]:
    batch = SyncTasks()
    for task in tasks:
        if batch and get_kind(batch[0].target_obj) != task.kind():
            yield batch
            batch = SyncTasks([task])
        else:
            batch.append(task)
    if batch:
        yield batch


class TaskRunner:
    """Applies, prunes and deletes the objects behind sync tasks."""

    def __init__(
        self,
        cluster: ClusterClient,
        resource_ops: ResourceOperations,
        settings: SyncSettings,
        store: ResultStore,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.cluster = cluster
        self.resource_ops = resource_ops
        self.settings = settings
        self.store = store
        self._log = logger or logging.getLogger(__name__)

    def delete_options(self) -> DeletePropagation:
        """The propagation policy used for deletions; foreground by default."""
        return self.settings.prune_propagation_policy or DeletePropagation.FOREGROUND

    def apply_object(
        self, task: SyncTask, dry_run: bool, force: bool, validate: bool
    ) -> tuple[ResultCode, str]:
        """Apply, replace, create or update the task's target object."""
        strategy = DryRunStrategy.CLIENT if dry_run else DryRunStrategy.NONE
        target = task.target_obj
        should_replace = self.settings.replace or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_REPLACE
        )
        server_side = self.settings.server_side_apply or has_annotation_option(
            target, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_SERVER_SIDE_APPLY
        )
        try:
            if should_replace:
                if task.live_obj is not None:
                    # Replacing CRDs or namespaces would delete everything they hold.
                    if is_crd(target) or get_kind(target) == NAMESPACE_KIND:
                        update = copy.deepcopy(target)
                        _set_resource_version(update, _resource_version(task.live_obj))
                        self.resource_ops.update_resource(update, strategy)
                        message = f"{get_kind(target)}/{get_name(target)} updated"
                    else:
                        message = self.resource_ops.replace_resource(target, strategy, force)
                else:
                    message = self.resource_ops.create_resource(target, strategy, validate)
            else:
                message = self.resource_ops.apply_resource(
                    target,
                    strategy,
                    force,
                    validate,
                    server_side,
                    self.settings.server_side_apply_manager,
                )
        except Exception as err:  # any failure to apply fails this resource
            return ResultCode.SYNC_FAILED, str(err)
        if is_crd(target) and not dry_run:
            self._ensure_crd_ready(get_name(target))
        return ResultCode.SYNCED, message

    def _ensure_crd_ready(self, name: str) -> None:
        deadline = time.monotonic() + CRD_READINESS_TIMEOUT
        while True:
            try:
                if self.cluster.is_crd_established(name):
                    return
            except Exception as err:
                self._log.error("failed to ensure that CRD %s is ready: %s", name, err)
                return
            if time.monotonic() >= deadline:
                self._log.error("failed to ensure that CRD %s is ready: timed out", name)
                return
            time.sleep(CRD_READINESS_POLL_INTERVAL)

    def prune_object(
        self, live_obj: dict, prune: bool, dry_run: bool
    ) -> tuple[ResultCode, str]:
        """Delete the live object when pruning is enabled and not a dry run."""
        if not prune:
            return ResultCode.PRUNE_SKIPPED, "ignored (requires pruning)"
        if has_annotation_option(live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DISABLE_PRUNE):
            return ResultCode.PRUNE_SKIPPED, "ignored (no prune)"
        if dry_run:
            return ResultCode.PRUNED, "pruned (dry run)"
        # an object already being deleted is left alone to avoid an update hot loop
        if not _marked_for_deletion(live_obj):
            group, version, kind = group_version_kind(live_obj)
            try:
                self.cluster.delete_resource(
                    group,
                    version,
                    kind,
                    get_name(live_obj),
                    get_namespace(live_obj),
                    self.delete_options(),
                )
            except Exception as err:
                return ResultCode.SYNC_FAILED, str(err)
        return ResultCode.PRUNED, "pruned"

    def delete_resource(self, task: SyncTask) -> None:
        """Delete the task's object; errors from the cluster propagate."""
        self._log.debug("Deleting resource %s", task)
        group, version, kind = group_version_kind(task.obj())
        api_resource = self.cluster.server_resource(group, version, kind, "delete")
        namespace = task.namespace() if api_resource.namespaced else ""
        self.cluster.delete_resource(
            group, version, kind, task.name(), namespace, self.delete_options()
        )

    def _prune_one(self, task: SyncTask, dry_run: bool, state: RunState) -> RunState:
        self._log.debug("Pruning %s (dry run: %s)", task, dry_run)
        result, message = self.prune_object(task.live_obj, self.settings.prune, dry_run)
        failed = result is ResultCode.SYNC_FAILED
        if failed:
            state = RunState.FAILED
            self._log.info("Pruning %s failed: %s", task, message)
        if not dry_run or self.settings.dry_run or failed:
            self.store.set_resource_result(task, result, OPERATION_PHASES[result], message)
        return state

    def _delete_one(self, task: SyncTask, dry_run: bool, state: RunState) -> RunState:
        self._log.debug("Deleting %s (dry run: %s)", task, dry_run)
        if dry_run:
            return state
        try:
            self.delete_resource(task)
        except NotFoundError:
            # the resource may already be gone; nothing to do
            return state
        except Exception as err:
            self.store.set_resource_result(
                task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
            )
            return RunState.FAILED
        # something was deleted, so wait for the next sync before creating it again
        return RunState.PENDING

    def _apply_one(self, task: SyncTask, dry_run: bool, state: RunState) -> RunState:
        self._log.debug("Applying %s (dry run: %s)", task, dry_run)
        validate = self.settings.validate and not has_annotation_option(
            task.target_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTIONS_DISABLE_VALIDATION
        )
        result, message = self.apply_object(task, dry_run, self.settings.force, validate)
        failed = result is ResultCode.SYNC_FAILED
        if failed:
            self._log.info("Apply of %s failed: %s", task, message)
            state = RunState.FAILED
        if not dry_run or self.settings.dry_run or failed:
            phase = OPERATION_PHASES[result]
            # nothing is created in a dry run, so a running phase means success
            if self.settings.dry_run and phase is OperationPhase.RUNNING:
                phase = OperationPhase.SUCCEEDED
            self.store.set_resource_result(task, result, phase, message)
        return state

    def _process_create_tasks(
        self, state: RunState, tasks: SyncTasks, dry_run: bool
    ) -> RunState:
        funcs = [
            functools.partial(self._apply_one, task, dry_run)
            for task in tasks
            if not (dry_run and task.skip_dry_run)
        ]
        return run_concurrently(state, funcs)

    def run_tasks(self, tasks: Iterable[SyncTask], dry_run: bool) -> RunState:
        """Prune, delete hooks due for re-creation, then apply in batches of one kind."""
        dry_run = dry_run or self.settings.dry_run
        tasks = SyncTasks(tasks)
        self._log.debug("Running %d tasks (dry run: %s)", len(tasks), dry_run)

        prune_tasks, create_tasks = tasks.split(lambda t: t.is_prune())

        state = run_concurrently(
            RunState.SUCCESSFUL,
            [functools.partial(self._prune_one, task, dry_run) for task in prune_tasks],
        )
        if state is not RunState.SUCCESSFUL:
            return state

        pending_deletion = create_tasks.filter(lambda t: t.delete_before_creation())
        if pending_deletion:
            state = run_concurrently(
                state,
                [functools.partial(self._delete_one, task, dry_run) for task in pending_deletion],
            )
        if state is not RunState.SUCCESSFUL:
            return state

        for batch in _batches_by_kind(create_tasks):
            state = self._process_create_tasks(state, batch, dry_run)
        return state