"""Deterministic repair helpers used by the repair strategies.

Nothing here talks to a generator. These functions fix what can be fixed
mechanically (broken JSON syntax, misspelled field names), locate the
smallest invalid pieces of an artifact, and synthesize schema-valid
placeholders.
"""

from __future__ import annotations

import copy
import difflib
import json
import math
import re
from typing import Any, Iterable, Optional, Sequence

from json_repair import repair_json

from .schema import Issue, resolve_ref

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")

PLACEHOLDER_TEXT = "Content pending regeneration"

Path = tuple  # tuple of str keys / int indices


# ---------------------------------------------------------------------------
# Syntax
# ---------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text.strip()


def parse_strict(raw: Any) -> Any:
    """Parse *raw* as-is. Non-string values are assumed already parsed.

    Raises:
        json.JSONDecodeError: if *raw* is a string that is not valid JSON.
    """
    if not isinstance(raw, str):
        return raw
    return json.loads(raw)


def parse_lenient(raw: Any) -> tuple[Any, bool]:
    """Parse *raw*, repairing JSON syntax when strict parsing fails.

    Returns ``(value, repaired)``. ``repaired`` is True when fences had to
    be stripped or json_repair had to fix the text.

    Raises:
        ValueError: if nothing JSON-like can be recovered.
    """
    if not isinstance(raw, str):
        return raw, False
    try:
        return json.loads(raw), False
    except json.JSONDecodeError:
        pass

    text = strip_fences(raw)
    try:
        return json.loads(text), True
    except json.JSONDecodeError:
        pass

    repaired = repair_json(text)
    if not repaired or repaired in ('""', "''"):
        raise ValueError("Output contains no recoverable JSON")
    try:
        return json.loads(repaired), True
    except json.JSONDecodeError as e:
        raise ValueError(f"Output contains no recoverable JSON: {e}") from e


# ---------------------------------------------------------------------------
# Field names
# ---------------------------------------------------------------------------

def _snake(name: str) -> str:
    return _CAMEL_RE.sub(r"_\1", name).replace("-", "_").replace(" ", "_").lower()


def _squash(name: str) -> str:
    return re.sub(r"[\s_\-]", "", name).lower()


def match_field_name(key: str, known: Sequence[str]) -> Optional[str]:
    """Best known field name for a misspelled *key*, or None."""
    if key in known:
        return key
    snake = _snake(key)
    if snake in known:
        return snake
    squashed = {_squash(name): name for name in known}
    if _squash(key) in squashed:
        return squashed[_squash(key)]
    close = difflib.get_close_matches(_squash(key), list(squashed), n=1, cutoff=0.85)
    return squashed[close[0]] if close else None


def _object_node(node: dict, root: dict, value: dict) -> Optional[dict]:
    """The object schema a dict *value* should be checked against."""
    node = resolve_ref(node, root)
    if "properties" in node:
        return node
    options = [resolve_ref(o, root) for o in node.get("anyOf", node.get("oneOf", []))]
    options = [o for o in options if "properties" in o]
    if not options:
        return None
    # Prefer the option sharing the most field names with the value.
    return max(options, key=lambda o: len(set(o["properties"]) & set(value)))


def _array_items(node: dict, root: dict) -> Optional[dict]:
    node = resolve_ref(node, root)
    if "items" in node:
        return node["items"]
    for option in node.get("anyOf", node.get("oneOf", [])):
        option = resolve_ref(option, root)
        if "items" in option:
            return option["items"]
    return None


def normalize_field_names(value: Any, node: dict, root: Optional[dict] = None) -> tuple[Any, bool]:
    """Rename misspelled object keys to the schema's field names, recursively.

    A key is only renamed when the target name is not already present.
    Returns ``(new_value, changed)``; *value* itself is not modified.
    """
    root = node if root is None else root

    if isinstance(value, dict):
        obj = _object_node(node, root, value)
        if obj is None:
            return value, False
        props = obj["properties"]
        changed = False
        result: dict = {}
        for key, item in value.items():
            target = key
            if key not in props:
                guess = match_field_name(key, list(props))
                if guess and guess not in value and guess not in result:
                    target = guess
                    changed = True
            child_node = props.get(target)
            if child_node is not None:
                item, child_changed = normalize_field_names(item, child_node, root)
                changed = changed or child_changed
            result[target] = item
        return result, changed

    if isinstance(value, list):
        items = _array_items(node, root)
        if items is None:
            return value, False
        changed = False
        result_list = []
        for item in value:
            item, child_changed = normalize_field_names(item, items, root)
            changed = changed or child_changed
            result_list.append(item)
        return result_list, changed

    return value, False


# ---------------------------------------------------------------------------
# Element isolation
# ---------------------------------------------------------------------------

def split_path(path: str) -> Path:
    """``"sections.2.title"`` -> ``("sections", 2, "title")``."""
    if not path:
        return ()
    return tuple(int(part) if part.isdigit() else part for part in path.split("."))


def join_path(path: Path) -> str:
    return ".".join(str(part) for part in path)


def element_path(path: Path) -> Path:
    """The smallest regenerable unit containing an issue at *path*.

    That is the deepest array item on the path, or the top-level field
    when the path crosses no array. Root-level issues have no unit.
    """
    for index in range(len(path) - 1, -1, -1):
        if isinstance(path[index], int):
            return path[: index + 1]
    return path[:1]


def isolate_elements(issues: Iterable[Issue]) -> dict[Path, list[Issue]]:
    """Group issues by the element they belong to, in first-seen order.

    Returns an empty mapping when any issue sits at the root, since the
    artifact then has no smaller unit to regenerate.
    """
    groups: dict[Path, list[Issue]] = {}
    for issue in issues:
        unit = element_path(split_path(issue.path))
        if not unit:
            return {}
        groups.setdefault(unit, []).append(issue)

    # Fold units nested inside another unit into the outer one.
    merged: dict[Path, list[Issue]] = {}
    for unit, found in groups.items():
        outer = min((other for other in groups if unit[: len(other)] == other), key=len)
        merged.setdefault(outer, []).extend(found)
    return merged


def get_at(value: Any, path: Path, default: Any = None) -> Any:
    for part in path:
        try:
            value = value[part]
        except (KeyError, IndexError, TypeError):
            return default
    return value


def set_at(value: Any, path: Path, new: Any) -> Any:
    """Return a copy of *value* with *new* at *path*.

    Raises:
        KeyError: if an intermediate container is missing.
    """
    if not path:
        return new
    result = copy.deepcopy(value)
    target = result
    for part in path[:-1]:
        try:
            target = target[part]
        except (KeyError, IndexError, TypeError) as e:
            raise KeyError(join_path(path)) from e
    last = path[-1]
    if isinstance(target, list) and isinstance(last, int) and last == len(target):
        target.append(new)
    else:
        try:
            target[last] = new
        except (IndexError, TypeError) as e:
            raise KeyError(join_path(path)) from e
    return result


def node_at(root: dict, path: Path) -> dict:
    """JSON schema node describing the value at *path*; ``{}`` when unknown."""
    node = root
    for part in path:
        node = resolve_ref(node, root)
        if isinstance(part, int):
            items = _array_items(node, root)
            if items is None:
                return {}
            node = items
        else:
            props = node.get("properties")
            if props is None:
                for option in node.get("anyOf", node.get("oneOf", [])):
                    option = resolve_ref(option, root)
                    if part in option.get("properties", {}):
                        props = option["properties"]
                        break
            if not props or part not in props:
                return {}
            node = props[part]
    return resolve_ref(node, root)


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------

def _placeholder_string(node: dict) -> str:
    text = PLACEHOLDER_TEXT
    min_length = node.get("minLength", 0)
    max_length = node.get("maxLength")
    if len(text) < min_length:
        text = text + "." * (min_length - len(text))
    if max_length is not None:
        text = text[:max_length]
    return text


def _placeholder_number(node: dict, integer: bool) -> Any:
    if "minimum" in node:
        value = node["minimum"]
    elif "exclusiveMinimum" in node:
        value = node["exclusiveMinimum"] + (1 if integer else 0.5)
    elif "maximum" in node:
        value = min(0, node["maximum"])
    elif "exclusiveMaximum" in node:
        value = min(0, node["exclusiveMaximum"] - 1)
    else:
        value = 0
    if integer:
        value = math.ceil(value)
    return value


def synthesize_placeholder(node: dict, root: Optional[dict] = None) -> Any:
    """Build the smallest value matching a JSON schema node.

    Required fields only, minimum array lengths, first enum member. String
    patterns are not honoured.
    """
    root = node if root is None else root
    node = resolve_ref(node, root)

    if "const" in node:
        return node["const"]
    if "enum" in node:
        return node["enum"][0]
    if "default" in node:
        return copy.deepcopy(node["default"])

    options = node.get("anyOf", node.get("oneOf"))
    if options:
        concrete = [o for o in options if resolve_ref(o, root).get("type") != "null"]
        return synthesize_placeholder(concrete[0], root) if concrete else None

    kind = node.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), None)

    if kind == "object" or "properties" in node:
        props = node.get("properties", {})
        return {
            name: synthesize_placeholder(props[name], root)
            for name in node.get("required", [])
            if name in props
        }
    if kind == "array":
        items = node.get("items", {})
        return [synthesize_placeholder(items, root) for _ in range(node.get("minItems", 0))]
    if kind == "string":
        return _placeholder_string(node)
    if kind == "integer":
        return _placeholder_number(node, integer=True)
    if kind == "number":
        return _placeholder_number(node, integer=False)
    if kind == "boolean":
        return False
    return None
