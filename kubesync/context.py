"""Driving a sync operation step by step.

A sync applies target manifests in a fixed order: by phase (PreSync, Sync,
PostSync), then by wave (the ``argocd.argoproj.io/sync-wave`` annotation,
lower first), then by kind (namespaces first, workloads last), then by name.
Each call to :meth:`SyncContext.sync` runs the next pending phase and wave,
waits for hooks and multi-step resources to finish, prunes obsolete
resources when asked to, and runs SyncFail hooks when the operation fails.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from kubesync.annotations import has_annotation_option
from kubesync.common import (
    ANNOTATION_SYNC_OPTIONS,
    ANNOTATION_SYNC_WAVE,
    NAMESPACE_KIND,
    SYNC_OPTION_PRUNE_LAST,
    SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
    OperationPhase,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    get_kind,
    get_name,
    get_namespace,
    group_version_kind,
)
from kubesync.executor import ResultStore, SyncSettings, TaskRunner
from kubesync.hooks import is_hook
from kubesync.operations import (
    ApiResource,
    ClusterClient,
    HealthStatusCode,
    NotFoundError,
    ResourceOperations,
    RunState,
    UnauthorizedError,
    group_resources,
    is_crd_of_group_kind,
    is_namespace_with_name,
)
from kubesync.reconcile import ReconciliationResult
from kubesync.tasks import SyncTask, SyncTasks, sync_phases

_DISCOVERY_ATTEMPTS = 5

InitialState = tuple[Optional[OperationPhase], str, Iterable[ResourceSyncResult]]


def _set_namespace(obj: dict, namespace: str) -> None:
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        meta = obj["metadata"] = {}
    if namespace:
        meta["namespace"] = namespace
    else:
        meta.pop("namespace", None)


def _set_name(obj: dict, name: str) -> None:
    meta = obj.get("metadata")
    if not isinstance(meta, dict):
        meta = obj["metadata"] = {}
    meta["name"] = name


def _generate_name(obj: dict) -> str:
    meta = obj.get("metadata")
    value = meta.get("generateName") if isinstance(meta, dict) else None
    return value if isinstance(value, str) else ""


class SyncContext:
    """State of one sync operation; call :meth:`sync` until it completes."""

    def __init__(
        self,
        revision: str,
        reconciliation_result: ReconciliationResult,
        cluster: ClusterClient,
        resource_ops: ResourceOperations,
        namespace: str,
        *,
        settings: Optional[SyncSettings] = None,
        initial_state: Optional[InitialState] = None,
        started_at: Optional[datetime] = None,
    ) -> None:
        self.revision = revision
        self.resources = group_resources(reconciliation_result)
        self.hooks: list[dict] = list(reconciliation_result.hooks)
        self.cluster = cluster
        self.resource_ops = resource_ops
        self.namespace = namespace
        self.settings = settings or SyncSettings()
        self.started_at = started_at or datetime.now(timezone.utc)
        self._log = logging.getLogger(__name__)
        self.phase: Optional[OperationPhase] = None
        self.message = ""
        results: Iterable[ResourceSyncResult] = ()
        if initial_state is not None:
            self.phase, self.message, results = initial_state
        self.store = ResultStore(results, self._log)
        self._runner = TaskRunner(cluster, resource_ops, self.settings, self.store, self._log)

    # state -----------------------------------------------------------------

    def get_state(self) -> tuple[Optional[OperationPhase], str, list[ResourceSyncResult]]:
        """The operation phase, its message and the results in execution order."""
        return self.phase, self.message, self.store.results()

    def _set_operation_phase(self, phase: OperationPhase, message: str) -> None:
        if self.phase != phase or self.message != message:
            self._log.info(
                "Updating operation state. phase: %s -> %s, message: '%s' -> '%s'",
                self.phase or "", phase, self.message, message,
            )
        self.phase = phase
        self.message = message

    def set_running_phase(self, tasks: SyncTasks, is_pending_deletion: bool) -> None:
        """Mark the operation running and say what it is waiting for."""
        if not tasks:
            return
        first = tasks[0]
        if first.is_hook():
            waiting_for, and_more = "completion of hook", "hooks"
        else:
            waiting_for, and_more = "healthy state of", "resources"
        if is_pending_deletion:
            waiting_for = "deletion of"
        message = f"waiting for {waiting_for} {first.group()}/{first.kind()}/{first.name()}"
        more = len(tasks) - 1
        if more > 0:
            message = f"{message} and {more} more {and_more}"
        self._set_operation_phase(OperationPhase.RUNNING, message)

    def set_operation_failed(
        self, sync_fail_tasks: SyncTasks, sync_failed_tasks: SyncTasks, message: str
    ) -> None:
        """Fail the operation, first starting any SyncFail hooks not yet run."""
        messages = SyncTasks(sync_failed_tasks or ()).unique_messages(lambda t: t.message)
        error_message = f"{message}, reason: {','.join(messages)}" if messages else message
        sync_fail_tasks = SyncTasks(sync_fail_tasks or ())
        if not sync_fail_tasks:
            self._set_operation_phase(OperationPhase.FAILED, error_message)
            return
        if sync_fail_tasks.all(lambda t: t.completed()):
            self._set_operation_phase(OperationPhase.FAILED, error_message)
            return
        # start the failure hooks; the phase is settled by a later sync
        if self._runner.run_tasks(sync_fail_tasks, False) is RunState.FAILED:
            self._set_operation_phase(OperationPhase.FAILED, error_message)

    # helpers ---------------------------------------------------------------

    def _health(self, obj: dict):
        check = self.settings.health_check
        return check(obj) if check is not None else None

    def _hook_phase(self, hook: dict) -> tuple[OperationPhase, str]:
        phase, message = OperationPhase.SUCCEEDED, f"{get_name(hook)} created"
        health = self._health(hook)
        if health is not None:
            if health.status in (HealthStatusCode.UNKNOWN, HealthStatusCode.DEGRADED):
                phase, message = OperationPhase.FAILED, health.message
            elif health.status in (HealthStatusCode.PROGRESSING, HealthStatusCode.SUSPENDED):
                phase, message = OperationPhase.RUNNING, health.message
            elif health.status is HealthStatusCode.HEALTHY:
                phase, message = OperationPhase.SUCCEEDED, health.message
        return phase, message

    def _filter_out_of_sync(self, tasks: SyncTasks) -> SyncTasks:
        modification = self.settings.modification_result or {}

        def keep(task: SyncTask) -> bool:
            if task.is_hook():
                return True
            key = task.resource_key()
            if (
                key in modification
                and not modification[key]
                and task.target_obj is not None
                and task.live_obj is not None
            ):
                self._log.debug("Skipping %s as resource was not modified", key)
                return False
            return True

        return tasks.filter(keep)

    def _delete_hooks(self, tasks: SyncTasks) -> None:
        for task in tasks:
            try:
                self._runner.delete_resource(task)
            except NotFoundError:
                continue
            except Exception as err:
                self.store.set_resource_result(
                    task, None, OperationPhase.ERROR, f"failed to delete resource: {err}"
                )

    def _target_objs(self) -> list[dict]:
        return self.hooks + [r.target for r in self.resources.values() if r.target is not None]

    def has_crd_of_group_kind(self, group: str, kind: str) -> bool:
        """Tell whether this sync defines a CRD for the given group and kind."""
        return any(is_crd_of_group_kind(group, kind, obj) for obj in self._target_objs())

    def live_obj(self, obj: dict) -> Optional[dict]:
        """The live object matching ``obj``; cluster-scoped keys ignore namespace."""
        group, _, _ = group_version_kind(obj)
        for key, resource in self.resources.items():
            if (
                key.group == group
                and key.kind == get_kind(obj)
                and (key.namespace == "" or key.namespace == get_namespace(obj))
                and key.name == get_name(obj)
            ):
                return resource.live
        return None

    def _contains(self, resource) -> bool:
        flt = self.settings.resources_filter
        return flt is None or flt(resource.key(), resource.target, resource.live)

    def _server_resource(self, task: SyncTask) -> ApiResource:
        group, version, kind = group_version_kind(task.obj())
        for attempt in range(_DISCOVERY_ATTEMPTS):
            try:
                return self.cluster.server_resource(group, version, kind, "get")
            except UnauthorizedError:
                if attempt == _DISCOVERY_ATTEMPTS - 1:
                    raise
        raise AssertionError("unreachable")

    # namespace auto creation ----------------------------------------------

    def _append_ns_task(
        self, tasks: SyncTasks, task: SyncTask, managed: dict, live: Optional[dict]
    ) -> None:
        try:
            modified = self.settings.namespace_modifier(managed, live)
        except Exception as err:
            self._append_failed_ns_task(tasks, managed, f"namespaceModifier error: {err}")
            return
        if modified:
            tasks.append(task)

    def _append_failed_ns_task(self, tasks: SyncTasks, managed: dict, message: str) -> None:
        task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed)
        self.store.set_resource_result(task, ResultCode.SYNC_FAILED, OperationPhase.ERROR, message)
        tasks.append(task)

    def _auto_create_namespace(self, tasks: SyncTasks) -> None:
        targets = [r.target for r in self.resources.values()]
        if any(is_namespace_with_name(obj, self.namespace) for obj in targets):
            return
        managed = {"apiVersion": "v1", "kind": NAMESPACE_KIND, "metadata": {"name": self.namespace}}
        try:
            live = self.cluster.get_resource("", "v1", NAMESPACE_KIND, self.namespace, "")
        except NotFoundError:
            task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed)
            self._append_ns_task(tasks, task, managed, None)
            return
        except Exception as err:
            self._append_failed_ns_task(tasks, managed, f"Namespace auto creation failed: {err}")
            return
        task = SyncTask(phase=SyncPhase.PRE_SYNC, target_obj=managed, live_obj=live)
        if task.result_key() in self.store or live is not None:
            self._append_ns_task(tasks, task, managed, live)

    # task generation -------------------------------------------------------

    def get_sync_tasks(self) -> tuple[SyncTasks, bool]:
        """Build, validate and order this sync's tasks; also tell if all are valid."""
        successful = True
        tasks = SyncTasks()
        for resource in self.resources.values():
            if not self._contains(resource):
                continue
            obj = resource.target if resource.target is not None else resource.live
            if is_hook(obj):
                continue
            for phase in sync_phases(obj):
                tasks.append(SyncTask(phase=phase, target_obj=resource.target, live_obj=resource.live))

        if not self.settings.skip_hooks:
            revision = self.revision[:7] if len(self.revision) >= 8 else self.revision
            stamp = int(self.started_at.timestamp())
            for hook in self.hooks:
                for phase in sync_phases(hook):
                    target = copy.deepcopy(hook)
                    if not get_name(target):
                        postfix = f"{revision}-{phase}-{stamp}".lower()
                        _set_name(target, _generate_name(hook) + postfix)
                    tasks.append(SyncTask(phase=phase, target_obj=target))

        for task in tasks:
            if task.target_obj is not None and not get_namespace(task.target_obj):
                # set even on cluster-scoped objects so nothing lands in a default namespace
                task.target_obj = copy.deepcopy(task.target_obj)
                _set_namespace(task.target_obj, self.namespace)

        if self.settings.namespace_modifier is not None and self.namespace:
            self._auto_create_namespace(tasks)

        for task in tasks:
            if task.target_obj is not None and task.live_obj is None:
                task.live_obj = self.live_obj(task.target_obj)

        cache: dict[tuple[str, str, str], ApiResource] = {}
        for task in tasks:
            gvk = group_version_kind(task.obj())
            try:
                server_res = cache.get(gvk) or self._server_resource(task)
                cache[gvk] = server_res
            except Exception as err:
                if isinstance(err, NotFoundError) and (
                    (
                        task.target_obj is not None
                        and has_annotation_option(
                            task.target_obj,
                            ANNOTATION_SYNC_OPTIONS,
                            SYNC_OPTION_SKIP_DRY_RUN_ON_MISSING_RESOURCE,
                        )
                    )
                    or self.has_crd_of_group_kind(task.group(), task.kind())
                ):
                    task.skip_dry_run = True
                else:
                    self.store.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                    successful = False
                continue
            validator = self.settings.permission_validator
            if validator is not None:
                try:
                    validator(task.obj(), server_res)
                except Exception as err:
                    self.store.set_resource_result(task, ResultCode.SYNC_FAILED, None, str(err))
                    successful = False

        last_wave = max(
            [0]
            + [t.wave() for t in tasks if t.phase is SyncPhase.SYNC and not t.is_prune()]
        ) + 1
        for task in tasks:
            if task.is_prune() and (
                self.settings.prune_last
                or has_annotation_option(task.live_obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_PRUNE_LAST)
            ):
                meta = task.live_obj.setdefault("metadata", {})
                annotations = meta.get("annotations")
                if not isinstance(annotations, dict):
                    annotations = meta["annotations"] = {}
                annotations[ANNOTATION_SYNC_WAVE] = str(last_wave)

        tasks.sort_tasks()

        for task in tasks:
            result = self.store.get(task.result_key())
            if result is not None:
                task.sync_status = result.status
                task.operation_state = result.hook_phase
                task.message = result.message
        return tasks, successful

    # operation -------------------------------------------------------------

    def sync(self) -> None:
        """Run the next step of the sync and update the operation state."""
        tasks, valid = self.get_sync_tasks()
        if not valid:
            self._set_operation_phase(
                OperationPhase.FAILED, "one or more synchronization tasks are not valid"
            )
            return

        if not self.store.started():
            # a dry run of everything catches most manifest errors before anything changes
            dry_tasks = (
                self._filter_out_of_sync(tasks) if self.settings.apply_out_of_sync_only else tasks
            )
            if self._runner.run_tasks(dry_tasks, True) is RunState.FAILED:
                self._set_operation_phase(
                    OperationPhase.FAILED, "one or more objects failed to apply (dry run)"
                )
                return

        for task in tasks.filter(lambda t: t.running() and t.live_obj is not None):
            if task.is_hook():
                try:
                    state, message = self._hook_phase(task.live_obj)
                except Exception as err:
                    self.store.set_resource_result(
                        task, None, OperationPhase.ERROR, f"failed to get resource health: {err}"
                    )
                else:
                    self.store.set_resource_result(task, None, state, message)
                continue
            try:
                health = self._health(task.live_obj)
            except Exception:
                continue
            if health is None:
                self.store.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, task.message
                )
            elif health.status is HealthStatusCode.HEALTHY:
                self.store.set_resource_result(
                    task, task.sync_status, OperationPhase.SUCCEEDED, health.message
                )
            elif health.status is HealthStatusCode.DEGRADED:
                self.store.set_resource_result(
                    task, task.sync_status, OperationPhase.FAILED, health.message
                )

        multi_step = tasks.multi_step()
        running = tasks.filter(lambda t: (multi_step or t.is_hook()) and t.running())
        if running:
            self.set_running_phase(running, False)
            return

        done_hooks = lambda t: t.is_hook() and t.live_obj is not None and not t.running()  # noqa: E731
        delete_on_success = tasks.filter(lambda t: done_hooks(t) and t.delete_on_phase_successful())
        delete_on_failure = tasks.filter(lambda t: done_hooks(t) and t.delete_on_phase_failed())

        sync_fail_tasks, tasks = tasks.split(lambda t: t.phase is SyncPhase.SYNC_FAIL)
        sync_failed_tasks, _ = tasks.split(lambda t: t.sync_status is ResultCode.SYNC_FAILED)

        if tasks.any(lambda t: t.completed() and not t.successful()):
            self._delete_hooks(delete_on_failure)
            self.set_operation_failed(
                sync_fail_tasks,
                sync_failed_tasks,
                "one or more synchronization tasks completed unsuccessfully",
            )
            return

        tasks = tasks.filter(lambda t: t.pending())
        if self.settings.apply_out_of_sync_only:
            tasks = self._filter_out_of_sync(tasks)

        if not tasks:
            self._delete_hooks(delete_on_success)
            self._set_operation_phase(OperationPhase.SUCCEEDED, "successfully synced (no more tasks)")
            return

        phase, wave = tasks.phase(), tasks.wave()
        final_wave = phase == tasks.last_phase() and wave == tasks.last_wave()
        # non-hooks of the last wave count as done once applied, even if they degrade later
        remaining = tasks.filter(lambda t: t.phase != phase or t.wave() != wave or t.is_hook())
        tasks = tasks.filter(lambda t: t.phase == phase and t.wave() == wave)

        self._set_operation_phase(OperationPhase.RUNNING, "one or more tasks are running")
        run_state = self._runner.run_tasks(tasks, False)

        hook = self.settings.sync_wave_hook
        if hook is not None and run_state is not RunState.FAILED:
            try:
                hook(phase, wave, final_wave)
            except Exception as err:
                self._delete_hooks(delete_on_failure)
                self._set_operation_phase(OperationPhase.FAILED, f"SyncWaveHook failed: {err}")
                self._log.error("SyncWaveHook failed: %s", err)
                return

        if run_state is RunState.FAILED:
            failed, _ = tasks.split(lambda t: t.sync_status is ResultCode.SYNC_FAILED)
            self._delete_hooks(delete_on_failure)
            self.set_operation_failed(sync_fail_tasks, failed, "one or more objects failed to apply")
        elif run_state is RunState.SUCCESSFUL:
            if not remaining:
                self._delete_hooks(delete_on_success)
                self._set_operation_phase(
                    OperationPhase.SUCCEEDED, "successfully synced (all tasks run)"
                )
            else:
                self.set_running_phase(remaining, False)
        else:
            self.set_running_phase(tasks.filter(lambda t: t.delete_on_phase_completion()), True)

    def terminate(self) -> None:
        """Delete running hooks and mark the operation terminated."""
        ok = True
        tasks, _ = self.get_sync_tasks()
        for task in tasks:
            if not task.is_hook() or task.live_obj is None:
                continue
            try:
                phase, message = self._hook_phase(task.live_obj)
            except Exception as err:
                self._set_operation_phase(OperationPhase.ERROR, f"Failed to get hook health: {err}")
                return
            if phase is OperationPhase.RUNNING:
                try:
                    self._runner.delete_resource(task)
                except Exception as err:
                    self.store.set_resource_result(
                        task, None, OperationPhase.FAILED, f"Failed to delete: {err}"
                    )
                    ok = False
                else:
                    self.store.set_resource_result(task, None, OperationPhase.SUCCEEDED, "Deleted")
            else:
                self.store.set_resource_result(task, None, phase, message)
        if ok:
            self._set_operation_phase(OperationPhase.FAILED, "Operation terminated")
        else:
            self._set_operation_phase(OperationPhase.ERROR, "Operation termination had errors")