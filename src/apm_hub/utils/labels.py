from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any


def merge_labels(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge label mappings left to right; later layers win on key collision."""
    merged: dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update(layer)
    return merged


def stringify(value: Any) -> str:
    """Render a JSON value as a label/message string.

    Strings are returned as-is, everything else is JSON encoded.
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str, separators=(",", ":"))


def flatten(obj: Any, prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts/lists into dot-path keys.

    {"k8s": {"pod": "a"}, "tags": ["x"]} -> {"k8s.pod": "a", "tags.0": "x"}
    """
    out: dict[str, Any] = {}
    if isinstance(obj, Mapping):
        items = ((str(k), v) for k, v in obj.items())
    elif isinstance(obj, list):
        items = ((str(i), v) for i, v in enumerate(obj))
    else:
        if prefix:
            out[prefix] = obj
        return out

    for key, value in items:
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, (Mapping, list)) and value:
            out.update(flatten(value, path))
        else:
            out[path] = value
    return out


def label_selector(labels: Mapping[str, str] | None) -> str:
    """Render labels as a Kubernetes label selector ('k1=v1,k2=v2')."""
    if not labels:
        return ""
    return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
