from kubesync.common import ResourceKey, get_resource_key
from kubesync.reconcile import (
    ReconciliationResult,
    dedup_live_resources,
    reconcile,
    split_hooks,
)


def make_pod(name="my-pod", namespace=None, annotations=None):
    meta = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    if annotations:
        meta["annotations"] = dict(annotations)
    return {"apiVersion": "v1", "kind": "Pod", "metadata": meta}


def deployment(api_version, uid, namespace="ns"):
    return {
        "apiVersion": api_version,
        "kind": "Deployment",
        "metadata": {"name": "web", "namespace": namespace, "uid": uid},
    }


def test_split_hooks_separates_and_drops():
    pod = make_pod()
    hook = make_pod("hook", annotations={"argocd.argoproj.io/hook": "PreSync"})
    garbage = make_pod("garbage", annotations={"argocd.argoproj.io/hook": "Garbage"})
    targets, hooks = split_hooks([pod, None, hook, garbage])
    assert targets == [pod]
    assert hooks == [hook]


def test_dedup_keeps_target_duplicate():
    apps = deployment("apps/v1", "uid-1")
    ext = deployment("extensions/v1beta1", "uid-1")
    live = {get_resource_key(apps): apps, get_resource_key(ext): ext}
    result = dedup_live_resources([apps], live)
    assert list(result) == [get_resource_key(apps)]
    assert len(live) == 2


def test_dedup_keeps_one_when_none_in_target():
    apps = deployment("apps/v1", "uid-1")
    ext = deployment("extensions/v1beta1", "uid-1")
    live = {get_resource_key(apps): apps, get_resource_key(ext): ext}
    result = dedup_live_resources([], live)
    assert len(result) == 1
    assert next(iter(result.values())) in (apps, ext)


def test_dedup_leaves_distinct_uids():
    first = deployment("apps/v1", "uid-1")
    second = deployment("apps/v1", "uid-2", namespace="other")
    live = {get_resource_key(first): first, get_resource_key(second): second, ResourceKey("", "Pod", "ns", "x"): None}
    assert dedup_live_resources([], live) == live


def test_reconcile_matches_with_default_namespace():
    pod = make_pod()
    live_pod = make_pod(namespace="ns")
    live = {get_resource_key(live_pod): live_pod}
    result = reconcile([pod], live, "ns", None)
    assert result == ReconciliationResult(live=[live_pod], target=[pod], hooks=[])
    assert len(live) == 1


def test_reconcile_unmatched_target_gets_no_live():
    pod = make_pod()
    result = reconcile([pod], {}, "ns", None)
    assert result.target == [pod]
    assert result.live == [None]


def test_reconcile_cluster_scoped_lookup():
    ns_obj = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "team"}}
    live_ns = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "team"}}
    live = {get_resource_key(live_ns): live_ns}

    cluster_scoped = reconcile([ns_obj], live, "ns", lambda group, kind: False)
    assert cluster_scoped.live == [live_ns]
    assert cluster_scoped.target == [ns_obj]

    namespaced = reconcile([ns_obj], live, "ns", lambda group, kind: True)
    assert namespaced.target == [ns_obj, None]
    assert namespaced.live == [None, live_ns]

    unknown = reconcile([ns_obj], live, "ns", lambda group, kind: None)
    assert unknown.live == namespaced.live


def test_reconcile_collects_hooks():
    pod = make_pod()
    hook = make_pod("hook", annotations={"argocd.argoproj.io/hook": "PostSync"})
    result = reconcile([pod, hook], {}, "ns", None)
    assert result.hooks == [hook]
    assert result.target == [pod]