"""
JSON Pointer addressing and JSON Patch application.

Pointers are "/"-delimited with percent-encoded segments (the form the
generated resources and the decision model use), e.g.
``/code/coding/0/display`` or ``/extension/0/valueString``.

Patches follow RFC 6902 restricted to add, remove and replace. They are
applied to a deep copy; the input document is never modified.
"""

import copy
from typing import Any, Optional
from urllib.parse import quote, unquote


class PointerError(ValueError):
    """A pointer does not resolve, or a patch operation is malformed."""


def parse_pointer(pointer: str) -> list[str]:
    """Split a pointer into decoded segments ("" -> [], "/" -> [""])."""
    if pointer == "":
        return []
    if not pointer.startswith("/"):
        raise PointerError(f"Pointer must start with '/': {pointer!r}")
    return [unquote(seg) for seg in pointer.split("/")[1:]]


def format_pointer(segments: list[Any]) -> str:
    return "".join("/" + quote(str(seg), safe="") for seg in segments)


def _index(container: list, segment: str, allow_end: bool = False) -> int:
    if allow_end and segment == "-":
        return len(container)
    if not (segment.isascii() and segment.isdigit()):
        raise PointerError(f"Expected an array index, got {segment!r}")
    index = int(segment)
    upper = len(container) if allow_end else len(container) - 1
    if index > upper:
        raise PointerError(f"Array index {index} out of range")
    return index


def _step(node: Any, segment: str) -> Any:
    if isinstance(node, list):
        return node[_index(node, segment)]
    if isinstance(node, dict):
        if segment not in node:
            raise PointerError(f"Key {segment!r} not found")
        return node[segment]
    raise PointerError(f"Cannot descend into {type(node).__name__} at {segment!r}")


def get(document: Any, pointer: str) -> Any:
    """
    Resolve a pointer.

    Raises:
        PointerError: If any segment does not resolve
    """
    node = document
    for segment in parse_pointer(pointer):
        node = _step(node, segment)
    return node


def resolve(document: Any, pointer: str, default: Any = None) -> Any:
    """Like `get`, returning `default` instead of raising."""
    try:
        return get(document, pointer)
    except PointerError:
        return default


def _apply_op(document: Any, op: dict[str, Any]) -> Any:
    if not isinstance(op, dict):
        raise PointerError(f"Patch operation must be an object: {op!r}")
    kind = op.get("op")
    path = op.get("path")
    if kind not in ("add", "remove", "replace"):
        raise PointerError(f"Unsupported patch op: {kind!r}")
    if not isinstance(path, str):
        raise PointerError(f"Patch op without a path: {op!r}")
    if kind != "remove" and "value" not in op:
        raise PointerError(f"'{kind}' at {path} has no value")

    segments = parse_pointer(path)
    value = copy.deepcopy(op.get("value"))
    if not segments:
        if kind == "remove":
            raise PointerError("Cannot remove the document root")
        return value

    parent = document
    for segment in segments[:-1]:
        parent = _step(parent, segment)
    last = segments[-1]

    if isinstance(parent, list):
        if kind == "add":
            parent.insert(_index(parent, last, allow_end=True), value)
        elif kind == "remove":
            del parent[_index(parent, last)]
        else:
            parent[_index(parent, last)] = value
    elif isinstance(parent, dict):
        if kind == "add":
            parent[last] = value
        elif last not in parent:
            raise PointerError(f"Key {last!r} not found for '{kind}' at {path}")
        elif kind == "remove":
            del parent[last]
        else:
            parent[last] = value
    else:
        raise PointerError(f"Cannot patch inside {type(parent).__name__} at {path}")
    return document


def apply_patch(document: Any, patch: list[dict[str, Any]]) -> Any:
    """
    Apply a patch to a deep copy of `document` and return the copy.

    Raises:
        PointerError: If any operation fails (the input is left untouched)
    """
    result = copy.deepcopy(document)
    for op in patch:
        result = _apply_op(result, op)
    return result


def base_coding_pointer(path: str) -> Optional[str]:
    """
    The coding an edit at `path` belongs to, or None if it touches no coding.

    ``/code/coding/0/display`` -> ``/code/coding/0``; for bare codings,
    ``/valueCoding/code`` -> ``/valueCoding``.
    """
    try:
        segments = parse_pointer(path)
    except PointerError:
        return None
    if not segments:
        return None
    if "coding" in segments:
        i = segments.index("coding")
        if i + 1 < len(segments) and segments[i + 1].isascii() and segments[i + 1].isdigit():
            return format_pointer(segments[:i + 2])
        return format_pointer(segments[:i + 1])
    if segments[-1] in ("system", "code"):
        return format_pointer(segments[:-1])
    return None
