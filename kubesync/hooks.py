"""Hook detection, hook delete policies, ignoring and sync waves."""

from __future__ import annotations

import re
from typing import Any, Mapping

from kubesync.annotations import get_annotation_csvs
from kubesync.common import (
    ANNOTATION_KEY_HOOK,
    ANNOTATION_KEY_HOOK_DELETE_POLICY,
    ANNOTATION_SYNC_WAVE,
    HookDeletePolicy,
    HookType,
    get_annotations,
    new_hook_delete_policy,
    new_hook_type,
)
from kubesync.helm import helm_delete_policies, helm_types, helm_weight, is_helm_hook

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def is_hook(obj: Mapping[str, Any]) -> bool:
    """Tell whether the object is a hook.

    An object annotated only with ``Skip`` is not a hook; an object with an
    unrecognised hook value still is.
    """
    if ANNOTATION_KEY_HOOK in get_annotations(obj):
        return not skip(obj)
    return is_helm_hook(obj)


def skip(obj: Mapping[str, Any]) -> bool:
    """Tell whether the object's only hook type is ``Skip``."""
    types = hook_types(obj)
    return HookType.SKIP in types and len(types) == 1


def hook_types(obj: Mapping[str, Any]) -> list[HookType]:
    """The hook types on the object; Helm hooks count only without our own."""
    types = [
        t
        for t in (new_hook_type(text) for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK))
        if t is not None
    ]
    if not types:
        types = [t.hook_type() for t in helm_types(obj)]
    return types


def delete_policies(obj: Mapping[str, Any]) -> list[HookDeletePolicy]:
    """The hook delete policies; ``BeforeHookCreation`` when none is given."""
    policies = [
        p
        for p in (
            new_hook_delete_policy(text)
            for text in get_annotation_csvs(obj, ANNOTATION_KEY_HOOK_DELETE_POLICY)
        )
        if p is not None
    ]
    policies.extend(p.delete_policy() for p in helm_delete_policies(obj))
    return policies or [HookDeletePolicy.BEFORE_HOOK_CREATION]


def ignore(obj: Mapping[str, Any]) -> bool:
    """Tell whether the object is a hook with no recognised hook type."""
    return is_hook(obj) and not hook_types(obj)


def wave(obj: Mapping[str, Any]) -> int:
    """The object's sync wave, falling back to the Helm hook weight."""
    text = get_annotations(obj).get(ANNOTATION_SYNC_WAVE)
    if text is not None and _INT_RE.fullmatch(text):
        value = int(text)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return helm_weight(obj)