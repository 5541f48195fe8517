# diff_utils.py - Field-level structural diffs for audit metadata
import json
from typing import Any, Dict, Iterable, Mapping


def _is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _plain(value: Any) -> Any:
    """Make enum members and datetimes JSON-friendly for storage"""
    if hasattr(value, "value") and not _is_object(value):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def build_field_diff(before: Mapping[str, Any], after: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    """Diff two snapshots on the given fields only.

    Changed scalars become ``{"from": old, "to": new}``. Nested mappings are
    diffed recursively over the union of their keys and only kept when
    something inside changed. Arrays are compared by content.
    """
    result: Dict[str, Any] = {}

    for key in fields:
        old_val = before.get(key)
        new_val = after.get(key)

        if _is_object(old_val) and _is_object(new_val):
            sub_keys = list(dict.fromkeys([*old_val.keys(), *new_val.keys()]))
            sub_diff = build_field_diff(old_val, new_val, sub_keys)
            if sub_diff:
                result[key] = sub_diff
        elif _is_array(old_val) and _is_array(new_val):
            if json.dumps(list(old_val), sort_keys=True, default=str) != json.dumps(
                list(new_val), sort_keys=True, default=str
            ):
                result[key] = {"from": list(old_val), "to": list(new_val)}
        elif _plain(old_val) != _plain(new_val):
            result[key] = {"from": _plain(old_val), "to": _plain(new_val)}

    return result


def snapshot(obj: Any, fields: Iterable[str]) -> Dict[str, Any]:
    """Copy the named attributes of an ORM row into a plain dict"""
    return {name: getattr(obj, name, None) for name in fields}
