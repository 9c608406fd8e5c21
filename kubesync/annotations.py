"""Reading comma-separated annotation values."""

from __future__ import annotations

from typing import Any, Mapping

from kubesync.common import get_annotations


def get_annotation_csvs(obj: Mapping[str, Any], key: str) -> list[str]:
    """Return the distinct, trimmed, non-empty values of a CSV annotation."""
    values: dict[str, None] = {}
    for item in get_annotations(obj).get(key, "").split(","):
        val = item.strip()
        if val:
            values[val] = None
    return list(values)


def has_annotation_option(obj: Mapping[str, Any], key: str, val: str) -> bool:
    """Tell whether the CSV annotation ``key`` contains ``val``."""
    return val in get_annotation_csvs(obj, key)