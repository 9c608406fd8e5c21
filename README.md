# kubesync

A library that synchronises a desired set of Kubernetes-style resources
with what is live in a cluster. Resources are plain dictionaries shaped like
manifests. The engine applies resources in a fixed order and prunes live
resources that are no longer wanted. It runs resource hooks and works
through sync waves one step at a time.

## Features

- **Basic syncing**: every resource is applied in a fixed order. Namespaces
  and custom resource definitions go first and workloads last.
- **Pruning**: live resources without a target can be deleted. This happens
  only when `SyncSettings.prune` is set. Otherwise they are reported as
  `PruneSkipped`.
- **Hooks**: a resource annotated with `argocd.argoproj.io/hook` runs in
  the `PreSync`, `Sync`, `PostSync` or `SyncFail` phase. `Skip` on its own
  leaves the resource out. Helm hook annotations (`helm.sh/hook`,
  `helm.sh/hook-delete-policy`, `helm.sh/hook-weight`) are understood too,
  but only when no `argocd.argoproj.io/hook` types are present. A hook
  without a name is given one: its `generateName`, then the revision's
  first seven characters, the phase and the start time.
- **Hook delete policies**: `argocd.argoproj.io/hook-delete-policy` accepts
  `HookSucceeded`, `HookFailed` and `BeforeHookCreation`. With no policy,
  `BeforeHookCreation` applies.
- **Sync waves**: `argocd.argoproj.io/sync-wave` puts a resource into a
  wave. Without it, the Helm hook weight is used, and failing that wave 0.
  Waves run in sequence and may be negative.
- **Sync options**: `argocd.argoproj.io/sync-options` is a comma-separated
  list. It accepts these options:
  - `SkipDryRunOnMissingResource=true`
  - `Prune=false`
  - `Validate=false`
  - `PruneLast=true`
  - `Replace=true`
  - `ServerSideApply=true`

## Ordering

Tasks are sorted by phase, then wave (lower first), then kind, then name.
For kinds, namespaces come first and unknown custom kinds come last. After
sorting, dependencies are moved forward:

- a namespace moves ahead of the first object that lives in it;
- a CRD moves ahead of the first custom resource of its group and kind.

A dependency that moves takes on that object's phase and wave.

## Usage

```python
from kubesync.context import SyncContext
from kubesync.executor import SyncSettings
from kubesync.reconcile import reconcile

pod = {"apiVersion": "v1", "kind": "Pod", "metadata": {"name": "my-pod"}}

result = reconcile([pod], live_obj_by_key={}, namespace="default",
                   is_namespaced=lambda group, kind: True)

ctx = SyncContext("deadbeef", result, cluster, resource_ops, "default",
                  settings=SyncSettings(prune=True))
ctx.sync()
phase, message, results = ctx.get_state()
```

Call `sync()` again until `phase.completed()` is true. Each call does the
following:

1. The first call performs a dry run of every task. If anything fails, the
   sync stops.
2. It refreshes the state of running tasks.
3. It applies the next pending phase and wave.
4. It waits for hooks, and for multi-step syncs to become healthy.
5. It deletes finished hooks according to their delete policies.
6. On failure, it starts the `SyncFail` hooks.

`terminate()` deletes hooks that are still running and marks the operation
`Failed` with "Operation terminated". If a deletion fails, the operation is
marked `Error` instead.

`get_state()` returns three things:

- the `OperationPhase`;
- a message;
- the `ResourceSyncResult` list, in the order the results were first
  recorded.

### Connecting to a cluster

The engine reaches a cluster only through two interfaces in
`kubesync.operations`. You supply objects that implement them.

`ClusterClient` has these methods:

- `server_resource(group, version, kind, verb)` returns an `ApiResource`.
- `get_resource(group, version, kind, name, namespace)`
- `delete_resource(group, version, kind, name, namespace, propagation)`
- `is_crd_established(name)`

`ResourceOperations` has these methods:

- `apply_resource(obj, dry_run_strategy, force, validate, server_side, manager)`
- `replace_resource(obj, dry_run_strategy, force)`
- `create_resource(obj, dry_run_strategy, validate)`
- `update_resource(obj, dry_run_strategy)`

Failures are reported by raising exceptions:

- Raise `NotFoundError` for a missing resource or resource type.
- Raise `UnauthorizedError` for refused credentials. Discovery is then
  tried up to five times.
- Raise any other `ApiError` for other failures.

After a CRD is applied, the engine polls `is_crd_established` for up to
three seconds.

### Settings

`kubesync.executor.SyncSettings` holds these options:

- Flags:
  - `dry_run`
  - `force`
  - `validate`, on by default
  - `skip_hooks`
  - `prune`
  - `replace`
  - `server_side_apply`
  - `server_side_apply_manager`
  - `prune_last`
- `prune_propagation_policy`: a `DeletePropagation`; `Foreground` by
  default.
- Callbacks:
  - `resources_filter(key, target, live)` limits the sync to selected
    resources.
  - `permission_validator(obj, api_resource)` raises to refuse an object.
  - `health_check(obj)` returns a `HealthStatus` or `None`.
  - `namespace_modifier(managed, live)` returns true to create or update
    the target namespace.
  - `sync_wave_hook(phase, wave, final)` is called after each applied wave.
    Raising from it fails the sync.
- `apply_out_of_sync_only`, together with `modification_result`: skips
  unmodified resources. `kubesync.operations.group_diff_results` builds
  `modification_result` from a list of `DiffResult`.

A `SyncContext` can resume from an earlier state with
`initial_state=(phase, message, results)`.

### Lower-level helpers

- `kubesync.hooks`: `is_hook`, `skip`, `hook_types`, `delete_policies`,
  `ignore`, `wave`
- `kubesync.helm`: `is_helm_hook`, `helm_types`, `helm_delete_policies`,
  `helm_weight`
- `kubesync.annotations`: `get_annotation_csvs`, `has_annotation_option`
- `kubesync.reconcile`: `split_hooks`, `dedup_live_resources`, `reconcile`
- `kubesync.tasks`: `SyncTask`, `SyncTasks`, `sync_phases`
- `kubesync.common`: these enums and accessors:
  - the enums `SyncPhase`, `OperationPhase`, `ResultCode`, `HookType` and
    `HookDeletePolicy`;
  - `ResourceKey`;
  - the accessors `get_resource_key` and `group_version_kind`.

## What this package does not do

- It has no cluster client of its own. `ClusterClient` and
  `ResourceOperations` must be implemented by the caller.
- It has no built-in health assessment. Without `health_check`, every
  object counts as having no health. Running resources and hooks are then
  treated as succeeded.
- It provides no command-line tool and stores nothing. All state lives in
  the `SyncContext` object.

## Tests

```
pip install -e ".[test]"
pytest
```