import threading

import pytest

from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_SYNC_OPTIONS,
    OperationPhase,
    ResourceKey,
    ResourceSyncResult,
    ResultCode,
    SyncPhase,
    get_name,
    get_resource_key,
)
from kubesync.executor import ResultStore, SyncSettings, TaskRunner
from kubesync.operations import (
    ApiError,
    ApiResource,
    DeletePropagation,
    DryRunStrategy,
    NotFoundError,
    RunState,
)
from kubesync.tasks import SyncTask, resource_result_key

NAMESPACE = "fake-argocd-ns"


def new_pod(name="my-pod", namespace=NAMESPACE, annotations=None):
    meta = {"name": name, "namespace": namespace}
    if annotations:
        meta["annotations"] = dict(annotations)
    return {"apiVersion": "v1", "kind": "Pod", "metadata": meta}


def new_service(name="my-service", namespace=NAMESPACE, annotations=None):
    obj = new_pod(name, namespace, annotations)
    obj["kind"] = "Service"
    return obj


def new_namespace(name="my-ns", annotations=None):
    meta = {"name": name}
    if annotations:
        meta["annotations"] = dict(annotations)
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": meta}


def new_crd():
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": "testcrds.argoproj.io"},
        "spec": {"group": "argoproj.io", "names": {"kind": "TestCrd"}},
    }


class FakeResourceOps:
    def __init__(self, errors=None):
        self.errors = errors or {}
        self.commands = {}
        self.strategies = []
        self.updated = []
        self.last_validate = None
        self.last_server_side = False
        self.last_manager = ""
        self._lock = threading.Lock()

    def _record(self, obj, command, strategy):
        with self._lock:
            self.commands[get_resource_key(obj)] = command
            self.strategies.append(strategy)
        err = self.errors.get(get_name(obj))
        if err is not None:
            raise err

    def apply_resource(self, obj, dry_run_strategy, force, validate, server_side, manager):
        with self._lock:
            self.last_validate = validate
            self.last_server_side = server_side
            self.last_manager = manager
        self._record(obj, "apply", dry_run_strategy)
        return ""

    def replace_resource(self, obj, dry_run_strategy, force):
        self._record(obj, "replace", dry_run_strategy)
        return ""

    def create_resource(self, obj, dry_run_strategy, validate):
        with self._lock:
            self.last_validate = validate
        self._record(obj, "create", dry_run_strategy)
        return ""

    def update_resource(self, obj, dry_run_strategy):
        with self._lock:
            self.updated.append(obj)
        self._record(obj, "update", dry_run_strategy)
        return obj


class FakeCluster:
    def __init__(self, delete_errors=None, established=True):
        self.delete_errors = delete_errors or {}
        self.established = established
        self.deleted = []
        self.established_checks = []
        self._lock = threading.Lock()

    def server_resource(self, group, version, kind, verb):
        return ApiResource(
            name=kind.lower() + "s",
            kind=kind,
            group=group,
            version=version,
            namespaced=kind != "Namespace",
            verbs=(verb,),
        )

    def get_resource(self, group, version, kind, name, namespace):
        return None

    def delete_resource(self, group, version, kind, name, namespace, propagation):
        with self._lock:
            self.deleted.append((kind, name, namespace, propagation))
        err = self.delete_errors.get(name)
        if err is not None:
            raise err

    def is_crd_established(self, name):
        with self._lock:
            self.established_checks.append(name)
        return self.established


def make_runner(settings=None, ops=None, cluster=None):
    store = ResultStore()
    runner = TaskRunner(
        cluster or FakeCluster(),
        ops or FakeResourceOps(),
        settings or SyncSettings(),
        store,
    )
    return runner, store


def test_delete_options_default():
    runner, _ = make_runner()
    assert runner.delete_options() is DeletePropagation.FOREGROUND


def test_delete_options_with_prune_propagation_policy():
    runner, _ = make_runner(SyncSettings(prune_propagation_policy=DeletePropagation.BACKGROUND))
    assert runner.delete_options() is DeletePropagation.BACKGROUND


def test_validate_disabled_by_settings():
    ops = FakeResourceOps()
    pod = new_pod()
    runner, _ = make_runner(SyncSettings(validate=False), ops)
    runner.run_tasks([SyncTask(live_obj=pod, target_obj=pod)], False)
    assert ops.last_validate is False


@pytest.mark.parametrize(
    "annotation, want", [("", True), ("Validate=true", True), ("Validate=false", False)]
)
def test_sync_option_validate(annotation, want):
    ops = FakeResourceOps()
    pod = new_pod(annotations={ANNOTATION_SYNC_OPTIONS: annotation})
    runner, _ = make_runner(ops=ops)
    runner.run_tasks([SyncTask(live_obj=pod, target_obj=pod)], False)
    assert ops.last_validate is want


def _replace(obj):
    obj["metadata"]["annotations"] = {ANNOTATION_SYNC_OPTIONS: "Replace=true"}
    return obj


@pytest.mark.parametrize(
    "target, live, command",
    [
        (new_pod(), new_pod(), "apply"),
        (_replace(new_pod()), new_pod(), "replace"),
        (_replace(new_pod()), None, "create"),
    ],
)
def test_replace_commands(target, live, command):
    ops = FakeResourceOps()
    runner, _ = make_runner(ops=ops)
    state = runner.run_tasks([SyncTask(live_obj=live, target_obj=target)], False)
    assert state is RunState.SUCCESSFUL
    assert ops.commands[get_resource_key(target)] == command


def _annotated(obj, value):
    obj["metadata"]["annotations"] = {ANNOTATION_SYNC_OPTIONS: value}
    return obj


@pytest.mark.parametrize(
    "target, live, command, server_side, manager",
    [
        (new_pod(), new_pod(), "apply", False, "managerA"),
        (_annotated(new_pod(), "ServerSideApply=true"), new_pod(), "apply", True, "managerB"),
        (_annotated(new_pod(), "Replace=true,ServerSideApply=true"), new_pod(), "replace", False, ""),
        (
            _annotated(new_namespace(), "Replace=true,ServerSideApply=true"),
            new_namespace(),
            "update",
            False,
            "",
        ),
        (_annotated(new_pod(), "Replace=true"), None, "create", False, ""),
    ],
)
def test_server_side_apply(target, live, command, server_side, manager):
    ops = FakeResourceOps()
    runner, _ = make_runner(SyncSettings(server_side_apply_manager=manager), ops)
    runner.run_tasks([SyncTask(live_obj=live, target_obj=target)], False)
    assert ops.commands[get_resource_key(target)] == command
    assert ops.last_server_side is server_side
    assert ops.last_manager == manager


def test_namespace_update_takes_live_resource_version():
    ops = FakeResourceOps()
    target = _annotated(new_namespace(), "Replace=true")
    live = new_namespace()
    live["metadata"]["resourceVersion"] = "42"
    runner, _ = make_runner(ops=ops)
    result, message = runner.apply_object(SyncTask(live_obj=live, target_obj=target), False, False, True)
    assert result is ResultCode.SYNCED
    assert message == "Namespace/my-ns updated"
    assert ops.updated[0]["metadata"]["resourceVersion"] == "42"
    assert "resourceVersion" not in target["metadata"]


def test_create_failure():
    svc = new_service()
    ops = FakeResourceOps(errors={"my-service": ApiError("foo")})
    runner, store = make_runner(ops=ops)
    state = runner.run_tasks([SyncTask(target_obj=svc)], False)
    assert state is RunState.FAILED
    results = store.results()
    assert len(results) == 1
    assert results[0].status is ResultCode.SYNC_FAILED
    assert results[0].message == "foo"
    assert results[0].hook_phase is OperationPhase.FAILED


def test_apply_failure_on_existing_resource():
    svc = new_service(name="test-service")
    ops = FakeResourceOps(errors={"test-service": ApiError("foo")})
    runner, store = make_runner(SyncSettings(prune=True), ops)
    state = runner.run_tasks([SyncTask(live_obj=svc, target_obj=svc)], False)
    assert state is RunState.FAILED
    assert [(r.status, r.message) for r in store.results()] == [(ResultCode.SYNC_FAILED, "foo")]


def test_prune_successfully():
    cluster = FakeCluster()
    pod = new_pod()
    runner, store = make_runner(SyncSettings(prune=True), cluster=cluster)
    state = runner.run_tasks([SyncTask(live_obj=pod)], False)
    assert state is RunState.SUCCESSFUL
    result = store.results()[0]
    assert result.status is ResultCode.PRUNED
    assert result.message == "pruned"
    assert result.hook_phase is OperationPhase.SUCCEEDED
    assert cluster.deleted == [("Pod", "my-pod", NAMESPACE, DeletePropagation.FOREGROUND)]


def test_prune_delete_failure_stops_creation():
    ops = FakeResourceOps()
    cluster = FakeCluster(delete_errors={"my-pod": ApiError("foo")})
    runner, store = make_runner(SyncSettings(prune=True), ops, cluster)
    state = runner.run_tasks(
        [SyncTask(live_obj=new_pod()), SyncTask(target_obj=new_service())], False
    )
    assert state is RunState.FAILED
    assert ops.commands == {}
    assert [(r.status, r.message) for r in store.results()] == [(ResultCode.SYNC_FAILED, "foo")]


def test_prune_skipped_without_prune():
    runner, _ = make_runner()
    assert runner.prune_object(new_pod(), False, False) == (
        ResultCode.PRUNE_SKIPPED,
        "ignored (requires pruning)",
    )


def test_prune_false_annotation():
    cluster = FakeCluster()
    runner, store = make_runner(SyncSettings(prune=True), cluster=cluster)
    pod = new_pod(annotations={ANNOTATION_SYNC_OPTIONS: "Prune=false"})
    state = runner.run_tasks([SyncTask(live_obj=pod)], False)
    assert state is RunState.SUCCESSFUL
    result = store.results()[0]
    assert result.status is ResultCode.PRUNE_SKIPPED
    assert result.message == "ignored (no prune)"
    assert cluster.deleted == []


def test_prune_dry_run_deletes_nothing():
    cluster = FakeCluster()
    runner, _ = make_runner(cluster=cluster)
    assert runner.prune_object(new_pod(), True, True) == (ResultCode.PRUNED, "pruned (dry run)")
    assert cluster.deleted == []


def test_prune_skips_objects_already_being_deleted():
    cluster = FakeCluster()
    pod = new_pod()
    pod["metadata"]["deletionTimestamp"] = "2020-01-01T00:00:00Z"
    runner, _ = make_runner(cluster=cluster)
    assert runner.prune_object(pod, True, False) == (ResultCode.PRUNED, "pruned")
    assert cluster.deleted == []


def test_dry_run_records_nothing():
    ops = FakeResourceOps()
    runner, store = make_runner(ops=ops)
    state = runner.run_tasks([SyncTask(target_obj=new_pod())], True)
    assert state is RunState.SUCCESSFUL
    assert store.started() is False
    assert ops.strategies == [DryRunStrategy.CLIENT]


def test_dry_run_setting_marks_results_succeeded():
    runner, store = make_runner(SyncSettings(dry_run=True))
    state = runner.run_tasks([SyncTask(target_obj=new_pod())], False)
    assert state is RunState.SUCCESSFUL
    result = store.results()[0]
    assert result.status is ResultCode.SYNCED
    assert result.hook_phase is OperationPhase.SUCCEEDED


def test_skip_dry_run_task_not_applied_in_dry_run():
    ops = FakeResourceOps()
    runner, _ = make_runner(ops=ops)
    state = runner.run_tasks([SyncTask(target_obj=new_pod(), skip_dry_run=True)], True)
    assert state is RunState.SUCCESSFUL
    assert ops.commands == {}


def _hook_pod():
    return new_pod(annotations={ANNOTATION_KEY_HOOK: "Sync"})


def test_before_hook_creation_deletes_and_waits():
    ops = FakeResourceOps()
    cluster = FakeCluster()
    hook = _hook_pod()
    runner, _ = make_runner(ops=ops, cluster=cluster)
    state = runner.run_tasks([SyncTask(live_obj=hook, target_obj=hook)], False)
    assert state is RunState.PENDING
    assert cluster.deleted == [("Pod", "my-pod", NAMESPACE, DeletePropagation.FOREGROUND)]
    assert ops.commands == {}


def test_before_hook_creation_not_found_is_ignored():
    ops = FakeResourceOps()
    cluster = FakeCluster(delete_errors={"my-pod": NotFoundError("gone")})
    hook = _hook_pod()
    runner, store = make_runner(ops=ops, cluster=cluster)
    state = runner.run_tasks([SyncTask(live_obj=hook, target_obj=hook)], False)
    assert state is RunState.SUCCESSFUL
    assert ops.commands[get_resource_key(hook)] == "apply"
    assert store.results()[0].hook_phase is OperationPhase.RUNNING


def test_before_hook_creation_delete_error_fails():
    cluster = FakeCluster(delete_errors={"my-pod": ApiError("boom")})
    hook = _hook_pod()
    runner, store = make_runner(cluster=cluster)
    state = runner.run_tasks([SyncTask(live_obj=hook, target_obj=hook)], False)
    assert state is RunState.FAILED
    result = store.results()[0]
    assert result.hook_phase is OperationPhase.ERROR
    assert result.message == "failed to delete resource: boom"


def test_applied_crd_is_checked_for_readiness():
    cluster = FakeCluster()
    runner, _ = make_runner(cluster=cluster)
    result = runner.apply_object(SyncTask(target_obj=new_crd()), False, False, True)
    assert result == (ResultCode.SYNCED, "")
    assert cluster.established_checks == ["testcrds.argoproj.io"]


def test_applies_all_kinds():
    ops = FakeResourceOps()
    runner, store = make_runner(ops=ops)
    pod, svc = new_pod(), new_service()
    state = runner.run_tasks([SyncTask(target_obj=svc), SyncTask(target_obj=pod)], False)
    assert state is RunState.SUCCESSFUL
    assert set(ops.commands) == {get_resource_key(pod), get_resource_key(svc)}
    assert len(store.results()) == 2


def test_result_store_orders_results():
    store = ResultStore()
    assert store.started() is False
    store.set_resource_result(SyncTask(target_obj=new_pod("a")), ResultCode.SYNCED, OperationPhase.RUNNING, "one")
    store.set_resource_result(SyncTask(target_obj=new_pod("b")), ResultCode.SYNCED, OperationPhase.RUNNING, "two")
    assert store.started() is True
    results = store.results()
    assert [(r.resource_key.name, r.order) for r in results] == [("a", 1), ("b", 2)]
    assert results[0].version == "v1"
    assert results[0].hook_type is None
    assert results[0].sync_phase is SyncPhase.SYNC


def test_result_store_updates_existing_and_keeps_message():
    store = ResultStore()
    task = SyncTask(target_obj=new_pod())
    store.set_resource_result(task, ResultCode.SYNCED, OperationPhase.RUNNING, "applied")
    store.set_resource_result(task, ResultCode.SYNCED, OperationPhase.SUCCEEDED, "")
    results = store.results()
    assert len(results) == 1
    assert results[0].order == 1
    assert results[0].hook_phase is OperationPhase.SUCCEEDED
    assert results[0].message == "applied"
    assert task.operation_state is OperationPhase.SUCCEEDED


def test_result_store_initial_results_and_copies():
    key = ResourceKey("", "Pod", NAMESPACE, "my-pod")
    store = ResultStore(
        [ResourceSyncResult(resource_key=key, hook_phase=OperationPhase.SUCCEEDED, sync_phase=SyncPhase.PRE_SYNC)]
    )
    result_key = resource_result_key(key, SyncPhase.PRE_SYNC)
    assert result_key in store
    got = store.get(result_key)
    assert got.hook_phase is OperationPhase.SUCCEEDED
    got.hook_phase = OperationPhase.FAILED
    assert store.get(result_key).hook_phase is OperationPhase.SUCCEEDED
    store[result_key] = got
    assert store.get(result_key).hook_phase is OperationPhase.FAILED
    assert store.get("missing") is None