"""Rule predicates: a small all/any/each expression tree over a fact model.

Evaluation returns the list of fact paths ("locations") the condition
matched, or None when the condition does not hold.
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from .facts import FactModel

_COMPARISON_OPS = {
    "eq", "ne", "in", "not_in", "contains", "contains_any",
    "startswith", "endswith", "matches", "gt", "ge", "lt", "le",
}
_EXISTENCE_OPS = {"absent", "present"}
_VALID_OPS = _COMPARISON_OPS | _EXISTENCE_OPS
_LIST_VALUE_OPS = {"in", "not_in", "contains_any"}
_STRING_VALUE_OPS = {"startswith", "endswith", "matches"}
_ELEMENT_MODES = {"any", "all"}


def validate_condition(condition: dict) -> list[str]:
    """Return a list of error strings if the condition tree is malformed."""
    errors: list[str] = []
    _validate_node(condition, errors, path="condition", scoped=False)
    return errors


def _validate_node(node: dict, errors: list[str], path: str, scoped: bool) -> None:
    if not isinstance(node, dict):
        errors.append(f"{path}: expected dict, got {type(node).__name__}")
        return

    if "all" in node or "any" in node:
        key = "all" if "all" in node else "any"
        children = node[key]
        if not isinstance(children, list):
            errors.append(f"{path}.{key}: expected list, got {type(children).__name__}")
            return
        if not children:
            errors.append(f"{path}.{key}: must not be empty")
        for i, child in enumerate(children):
            _validate_node(child, errors, path=f"{path}.{key}[{i}]", scoped=scoped)
    elif "each" in node:
        if not isinstance(node["each"], str) or not node["each"]:
            errors.append(f"{path}.each: expected a non-empty path pattern")
        if "where" not in node:
            errors.append(f"{path}: missing required key 'where'")
        else:
            _validate_node(node["where"], errors, path=f"{path}.where", scoped=True)
    else:
        _validate_leaf(node, errors, path, scoped)


def _validate_leaf(node: dict, errors: list[str], path: str, scoped: bool) -> None:
    for key in ("path", "op"):
        if key not in node:
            errors.append(f"{path}: missing required key '{key}'")

    fact_path = node.get("path")
    if fact_path is not None:
        if not isinstance(fact_path, str) or not fact_path:
            errors.append(f"{path}: 'path' must be a non-empty string")
        elif fact_path.startswith(".") and not scoped:
            errors.append(f"{path}: relative path '{fact_path}' used outside of 'each'")

    op = node.get("op")
    if op is None:
        return
    if op not in _VALID_OPS:
        errors.append(f"{path}: unknown operator '{op}' (valid: {sorted(_VALID_OPS)})")
        return

    if op in _COMPARISON_OPS and "value" not in node:
        errors.append(f"{path}: missing required key 'value'")
    val = node.get("value")
    if op in _LIST_VALUE_OPS and not isinstance(val, (list, tuple)):
        errors.append(f"{path}: '{op}' operator requires a list value, got {type(val).__name__}")
    if op in _STRING_VALUE_OPS and not isinstance(val, str):
        errors.append(f"{path}: '{op}' operator requires a string value, got {type(val).__name__}")
    if op == "matches" and isinstance(val, str):
        try:
            re.compile(val)
        except re.error as e:
            errors.append(f"{path}: invalid regular expression {val!r}: {e}")

    if "ignore_case" in node and not isinstance(node["ignore_case"], bool):
        errors.append(f"{path}: 'ignore_case' must be a boolean")
    if "elements" in node:
        if node["elements"] not in _ELEMENT_MODES:
            errors.append(f"{path}: 'elements' must be one of {sorted(_ELEMENT_MODES)}")
        if op in _EXISTENCE_OPS:
            errors.append(f"{path}: 'elements' cannot be combined with '{op}'")


def evaluate_condition(condition: dict, facts: Mapping[str, Any]) -> list[str] | None:
    """Evaluate a condition tree against a fact model.

    Returns the matched locations, or None if the condition does not hold.
    Missing facts never satisfy a comparison; ``absent`` reports the
    pattern it looked for as its location.
    """
    if not isinstance(facts, FactModel):
        facts = FactModel(facts)
    return _evaluate_node(condition, facts, scope="")


def _evaluate_node(node: dict, facts: FactModel, scope: str) -> list[str] | None:
    if "all" in node:
        locations: list[str] = []
        for child in node["all"]:
            found = _evaluate_node(child, facts, scope)
            if found is None:
                return None
            locations.extend(found)
        return _dedupe(locations)

    if "any" in node:
        return _collect((_evaluate_node(child, facts, scope) for child in node["any"]))

    if "each" in node:
        pattern = _resolve(node["each"], scope)
        elements = [e for e in facts.prefixes(pattern) if _evaluate_node(node["where"], facts, e) is not None]
        return elements or None

    return _evaluate_leaf(node, facts, scope)


def _evaluate_leaf(leaf: dict, facts: FactModel, scope: str) -> list[str] | None:
    pattern = _resolve(leaf["path"], scope)
    op = leaf["op"]
    paths = facts.match(pattern)

    if op == "absent":
        return None if paths else [pattern]
    if op == "present":
        return paths or None

    hits = [p for p in paths if _test(op, facts[p], leaf)]
    return hits or None


def _test(op: str, actual: Any, leaf: dict) -> bool:
    expected = leaf.get("value")
    ignore_case = leaf.get("ignore_case", False)
    mode = leaf.get("elements")

    if mode and isinstance(actual, tuple):
        # An empty list has no element that could violate anything.
        if not actual:
            return False
        results = (_apply(op, item, expected, ignore_case) for item in actual)
        return any(results) if mode == "any" else all(results)
    return _apply(op, actual, expected, ignore_case)


def _apply(op: str, actual: Any, expected: Any, ignore_case: bool) -> bool:
    if op == "matches":
        if not isinstance(actual, str):
            return False
        return re.search(expected, actual, re.IGNORECASE if ignore_case else 0) is not None

    if ignore_case:
        actual, expected = _fold(actual), _fold(expected)

    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "not_in":
        return actual not in expected
    if op == "contains":
        return isinstance(actual, (str, tuple)) and expected in actual
    if op == "contains_any":
        return isinstance(actual, (str, tuple)) and any(needle in actual for needle in expected)
    if op == "startswith":
        return isinstance(actual, str) and actual.startswith(expected)
    if op == "endswith":
        return isinstance(actual, str) and actual.endswith(expected)
    if op == "gt":
        return actual > expected
    if op == "ge":
        return actual >= expected
    if op == "lt":
        return actual < expected
    if op == "le":
        return actual <= expected

    raise ValueError(f"Unknown operator: {op}")


def _fold(value: Any) -> Any:
    if isinstance(value, str):
        return value.casefold()
    if isinstance(value, (list, tuple)):
        return tuple(_fold(v) for v in value)
    return value


def _resolve(path: str, scope: str) -> str:
    if path.startswith("."):
        return scope + path if scope else path[1:]
    return path


def _collect(results) -> list[str] | None:
    held = False
    locations: list[str] = []
    for found in results:
        if found is not None:
            held = True
            locations.extend(found)
    return _dedupe(locations) if held else None


def _dedupe(locations: list[str]) -> list[str]:
    return list(dict.fromkeys(locations))
