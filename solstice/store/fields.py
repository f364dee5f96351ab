"""Field-level write sentinels and helpers for dotted field paths."""

from __future__ import annotations

import copy
from typing import Any, Dict, Mapping, Tuple


class Increment:
    """Add ``amount`` to a numeric field, creating it when missing."""

    __slots__ = ("amount",)

    def __init__(self, amount: int | float = 1) -> None:
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount!r})"


class ArrayUnion:
    """Append the given values to an array field, skipping ones already present."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values: Tuple[Any, ...] = values

    def __repr__(self) -> str:
        return f"ArrayUnion{self.values!r}"


class ArrayRemove:
    """Remove every occurrence of the given values from an array field."""

    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values: Tuple[Any, ...] = values

    def __repr__(self) -> str:
        return f"ArrayRemove{self.values!r}"


class _DeleteField:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()

_MISSING = object()


def split_path(path: str) -> Tuple[str, ...]:
    parts = tuple(path.split("."))
    if not path or any(not part for part in parts):
        raise ValueError(f"invalid field path: {path!r}")
    return parts


def get_path(data: Mapping[str, Any], path: str, default: Any = None) -> Any:
    current: Any = data
    for part in split_path(path):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def has_path(data: Mapping[str, Any], path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


def _resolve(current: Any, value: Any) -> Any:
    if isinstance(value, Increment):
        if isinstance(current, (int, float)) and not isinstance(current, bool):
            return current + value.amount
        return value.amount
    if isinstance(value, ArrayUnion):
        items = list(current) if isinstance(current, list) else []
        for entry in value.values:
            if entry not in items:
                items.append(entry)
        return items
    if isinstance(value, ArrayRemove):
        if not isinstance(current, list):
            return []
        return [entry for entry in current if entry not in value.values]
    return copy.deepcopy(value)


def _assign(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    target = data
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    leaf = parts[-1]
    if value is DELETE_FIELD:
        target.pop(leaf, None)
        return
    target[leaf] = _resolve(target.get(leaf), value)


def apply_update(data: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``data`` with dotted-path ``updates`` applied."""
    result = copy.deepcopy(dict(data))
    for path, value in updates.items():
        _assign(result, path, value)
    return result


def resolve_document(data: Mapping[str, Any]) -> Dict[str, Any]:
    """Materialise sentinels for a full (non-merge) document write."""
    result: Dict[str, Any] = {}
    for key, value in data.items():
        if value is DELETE_FIELD:
            raise ValueError(f"DELETE_FIELD is only valid in updates or merges (field {key!r})")
        if isinstance(value, Mapping):
            result[key] = resolve_document(value)
        else:
            result[key] = _resolve(None, value)
    return result


def flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings into dotted paths, as a merge write applies them."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, Mapping) and value:
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def to_mongo_update(updates: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Translate dotted-path updates with sentinels into a MongoDB update document."""
    operators: Dict[str, Dict[str, Any]] = {}

    def _op(name: str) -> Dict[str, Any]:
        return operators.setdefault(name, {})

    for path, value in updates.items():
        split_path(path)
        if value is DELETE_FIELD:
            _op("$unset")[path] = ""
        elif isinstance(value, Increment):
            _op("$inc")[path] = value.amount
        elif isinstance(value, ArrayUnion):
            _op("$addToSet")[path] = {"$each": list(value.values)}
        elif isinstance(value, ArrayRemove):
            _op("$pull")[path] = {"$in": list(value.values)}
        else:
            _op("$set")[path] = value
    return operators


__all__ = [
    "ArrayRemove",
    "ArrayUnion",
    "DELETE_FIELD",
    "Increment",
    "apply_update",
    "flatten",
    "get_path",
    "has_path",
    "resolve_document",
    "split_path",
    "to_mongo_update",
]
