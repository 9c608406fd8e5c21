"""Pairing target manifests with live cluster objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from kubesync.common import (
    ResourceKey,
    get_name,
    get_namespace,
    get_resource_key,
    group_version_kind,
)
from kubesync.hooks import ignore, is_hook

NamespacedCheck = Callable[[str, str], Optional[bool]]


@dataclass
class ReconciliationResult:
    """Targets and live objects paired by position, plus the hooks."""

    live: list[Optional[dict]] = field(default_factory=list)
    target: list[Optional[dict]] = field(default_factory=list)
    hooks: list[dict] = field(default_factory=list)


def split_hooks(target: Iterable[Optional[dict]]) -> tuple[list[dict], list[dict]]:
    """Separate hooks from regular targets, dropping missing and ignored objects."""
    target_objs: list[dict] = []
    hook_objs: list[dict] = []
    for obj in target:
        if obj is None or ignore(obj):
            continue
        (hook_objs if is_hook(obj) else target_objs).append(obj)
    return target_objs, hook_objs


def _uid(obj: Mapping[str, Any]) -> str:
    meta = obj.get("metadata")
    uid = meta.get("uid") if isinstance(meta, Mapping) else None
    return uid if isinstance(uid, str) else ""


def dedup_live_resources(
    target_objs: Iterable[dict],
    live_objs_by_key: Mapping[ResourceKey, Optional[dict]],
) -> dict[ResourceKey, Optional[dict]]:
    """Return the live objects without duplicates that share a UID.

    The same object can be served under several API groups. Duplicates not
    named by a target are dropped, but at least one of each set stays.
    """
    target_keys = {get_resource_key(obj) for obj in target_objs}
    result = dict(live_objs_by_key)

    by_uid: dict[str, list[dict]] = {}
    for obj in live_objs_by_key.values():
        if obj is not None:
            by_uid.setdefault(_uid(obj), []).append(obj)

    for objs in by_uid.values():
        if len(objs) < 2:
            continue
        duplicates_left = len(objs)
        for obj in objs:
            key = get_resource_key(obj)
            if key in target_keys:
                continue
            result.pop(key, None)
            duplicates_left -= 1
            if duplicates_left == 1:
                break
    return result


def reconcile(
    target_objs: Iterable[Optional[dict]],
    live_obj_by_key: Mapping[ResourceKey, Optional[dict]],
    namespace: str,
    is_namespaced: Optional[NamespacedCheck],
) -> ReconciliationResult:
    """Pair each target with its live object; unmatched live objects come last.

    Targets without a namespace are looked up in ``namespace``.
    ``is_namespaced(group, kind)`` may return True, False or None for unknown;
    only an explicit False makes the lookup cluster-scoped.
    """
    targets, hook_objs = split_hooks(target_objs)
    live_by_key = dedup_live_resources(targets, live_obj_by_key)

    managed_live: list[Optional[dict]] = []
    for obj in targets:
        group, _, kind = group_version_kind(obj)
        ns = get_namespace(obj) or namespace
        if is_namespaced is not None and is_namespaced(group, kind) is False:
            ns = ""
        managed_live.append(live_by_key.pop(ResourceKey(group, kind, ns, get_name(obj)), None))

    remaining = list(live_by_key.values())
    return ReconciliationResult(
        live=managed_live + remaining,
        target=[*targets, *([None] * len(remaining))],
        hooks=hook_objs,
    )