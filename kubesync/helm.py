"""Helm hook annotations and their mapping onto sync hooks."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping

from kubesync.annotations import get_annotation_csvs
from kubesync.common import HookDeletePolicy, HookType, get_annotations

HELM_HOOK_ANNOTATION = "helm.sh/hook"
HELM_HOOK_DELETE_POLICY_ANNOTATION = "helm.sh/hook-delete-policy"
HELM_HOOK_WEIGHT_ANNOTATION = "helm.sh/hook-weight"

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class HelmHookType(str, Enum):
    PRE_INSTALL = "pre-install"
    PRE_UPGRADE = "pre-upgrade"
    POST_UPGRADE = "post-upgrade"
    POST_INSTALL = "post-install"

    def __str__(self) -> str:
        return self.value

    def hook_type(self) -> HookType:
        """The sync hook type this Helm hook corresponds to."""
        if self in (HelmHookType.PRE_INSTALL, HelmHookType.PRE_UPGRADE):
            return HookType.PRE_SYNC
        return HookType.POST_SYNC


class HelmDeletePolicy(str, Enum):
    BEFORE_HOOK_CREATION = "before-hook-creation"
    HOOK_SUCCEEDED = "hook-succeeded"
    HOOK_FAILED = "hook-failed"

    def __str__(self) -> str:
        return self.value

    def delete_policy(self) -> HookDeletePolicy:
        """The sync delete policy this Helm policy corresponds to."""
        return {
            HelmDeletePolicy.BEFORE_HOOK_CREATION: HookDeletePolicy.BEFORE_HOOK_CREATION,
            HelmDeletePolicy.HOOK_SUCCEEDED: HookDeletePolicy.HOOK_SUCCEEDED,
            HelmDeletePolicy.HOOK_FAILED: HookDeletePolicy.HOOK_FAILED,
        }[self]


def is_helm_hook(obj: Mapping[str, Any]) -> bool:
    """Tell whether the object carries a Helm hook annotation.

    Helm marks CRDs with ``crd-install`` too, but those are not hooks.
    """
    annotations = get_annotations(obj)
    return HELM_HOOK_ANNOTATION in annotations and annotations[HELM_HOOK_ANNOTATION] != "crd-install"


def helm_types(obj: Mapping[str, Any]) -> list[HelmHookType]:
    """The supported Helm hook types named on the object."""
    result = []
    for text in get_annotation_csvs(obj, HELM_HOOK_ANNOTATION):
        try:
            result.append(HelmHookType(text))
        except ValueError:
            continue
    return result


def helm_delete_policies(obj: Mapping[str, Any]) -> list[HelmDeletePolicy]:
    """The supported Helm delete policies named on the object."""
    result = []
    for text in get_annotation_csvs(obj, HELM_HOOK_DELETE_POLICY_ANNOTATION):
        try:
            result.append(HelmDeletePolicy(text))
        except ValueError:
            continue
    return result


def helm_weight(obj: Mapping[str, Any]) -> int:
    """The Helm hook weight, or 0 if it is absent or not an integer."""
    text = get_annotations(obj).get(HELM_HOOK_WEIGHT_ANNOTATION)
    if text is not None and _INT_RE.fullmatch(text):
        value = int(text)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return 0