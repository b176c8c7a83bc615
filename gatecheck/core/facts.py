"""Fact model: a flat, read-only view of the artifact under evaluation.

Nested documents are flattened into dotted paths:

    {"from": [{"base_image": "python:3.12"}], "ports": [80, 443]}

becomes

    from[0].base_image = "python:3.12"
    ports              = (80, 443)

Lists of scalars are kept whole as tuples; lists holding mappings or lists
are addressed element by element. Documents that are already flat
(``{"from[0].base_image": ...}``) pass through unchanged.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from functools import lru_cache
from typing import Any

from .errors import CyclicInputError, MalformedInputError

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32

_SCALAR_TYPES = (str, bool, int, float)
_MISSING = object()
_TRAILING_INDEX = re.compile(r"(.+)\[(\d+|\*)\]")


class FactModel(Mapping):
    """Immutable, ordered mapping of fact paths to values."""

    def __init__(self, entries: Mapping[str, Any] | None = None, warnings: list[str] | None = None) -> None:
        self._entries: dict[str, Any] = dict(entries or {})
        self.warnings: tuple[str, ...] = tuple(warnings or ())

    def __getitem__(self, path: str) -> Any:
        try:
            return self._entries[path]
        except KeyError:
            value = self._element(path)
            if value is _MISSING:
                raise
            return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"FactModel({self._entries!r})"

    def match(self, pattern: str) -> list[str]:
        """Return the concrete paths matching pattern, in fact order.

        ``[*]`` in a pattern matches any list index. A trailing index also
        reaches into a list of scalars, so ``ports[0]`` and ``ports[*]``
        address the elements of ``ports = (80, 443)``.
        """
        if "[*]" not in pattern:
            if pattern in self._entries or self._element(pattern) is not _MISSING:
                return [pattern]
            return []
        regex = _compile_pattern(pattern, prefix=False)
        tail = _TRAILING_INDEX.fullmatch(pattern)
        base = _compile_pattern(tail.group(1), prefix=False) if tail else None
        paths: list[str] = []
        for path, value in self._entries.items():
            if regex.fullmatch(path):
                paths.append(path)
            elif base is not None and isinstance(value, tuple) and base.fullmatch(path):
                index = tail.group(2)
                if index == "*":
                    paths.extend(f"{path}[{i}]" for i in range(len(value)))
                elif int(index) < len(value):
                    paths.append(f"{path}[{index}]")
        return paths

    def prefixes(self, pattern: str) -> list[str]:
        """Return the distinct element prefixes matching pattern, in first-seen order.

        ``prefixes("env[*]")`` over ``env[0].key, env[0].value, env[1].key``
        gives ``["env[0]", "env[1]"]``.
        """
        regex = _compile_pattern(pattern, prefix=True)
        seen: dict[str, None] = {}
        for path in self._entries:
            m = regex.match(path)
            if m:
                seen.setdefault(m.group(0), None)
        return list(seen)

    def _element(self, path: str) -> Any:
        """Element of a scalar list addressed as ``name[i]``, or _MISSING."""
        m = _TRAILING_INDEX.fullmatch(path)
        if not m or m.group(2) == "*":
            return _MISSING
        value = self._entries.get(m.group(1))
        index = int(m.group(2))
        if isinstance(value, tuple) and index < len(value):
            return value[index]
        return _MISSING


@lru_cache(maxsize=256)
def _compile_pattern(pattern: str, prefix: bool) -> re.Pattern:
    source = re.escape(pattern).replace(r"\[\*\]", r"\[\d+\]")
    if prefix:
        # Stop only at a segment boundary so "env" never matches "environment".
        source += r"(?=$|[.\[])"
    return re.compile(source)


def build_fact_model(document: Any, max_depth: int = DEFAULT_MAX_DEPTH) -> FactModel:
    """Flatten a nested mapping into a FactModel.

    Raises MalformedInputError on type conflicts, unsupported values or
    excessive nesting, and CyclicInputError when a container contains itself.
    """
    if isinstance(document, FactModel):
        return document
    if not isinstance(document, Mapping):
        raise MalformedInputError(f"expected a mapping at top level, got {type(document).__name__}")

    flattener = _Flattener(max_depth)
    flattener.walk(document, "", 0)
    return FactModel(flattener.entries, flattener.warnings)


class _Flattener:
    def __init__(self, max_depth: int) -> None:
        self.max_depth = max_depth
        self.entries: dict[str, Any] = {}
        self.warnings: list[str] = []
        self._active: set[int] = set()
        self._containers: set[str] = set()

    def walk(self, node: Any, path: str, depth: int) -> None:
        if node is None:
            return
        if isinstance(node, Mapping):
            self._enter(node, path, depth)
            try:
                for key, child in node.items():
                    if not isinstance(key, str) or not key:
                        raise MalformedInputError(f"invalid key {key!r}", path)
                    self.walk(child, f"{path}.{key}" if path else key, depth + 1)
            finally:
                self._active.discard(id(node))
        elif isinstance(node, (list, tuple)):
            if all(_is_scalar(item) for item in node):
                self._add(path, tuple(node))
                return
            self._enter(node, path, depth)
            try:
                for i, child in enumerate(node):
                    self.walk(child, f"{path}[{i}]", depth + 1)
            finally:
                self._active.discard(id(node))
        elif _is_scalar(node):
            self._add(path, node)
        else:
            raise MalformedInputError(f"unsupported value type {type(node).__name__}", path)

    def _enter(self, node: Any, path: str, depth: int) -> None:
        if id(node) in self._active:
            raise CyclicInputError("cycle detected in input document", path)
        if depth > self.max_depth:
            raise MalformedInputError(f"nesting exceeds maximum depth of {self.max_depth}", path)
        self._active.add(id(node))

    def _add(self, path: str, value: Any) -> None:
        if path in self._containers:
            raise MalformedInputError(f"conflicting values (container and {_kind(value)})", path)
        parents = _parents(path)
        for parent in parents:
            if parent in self.entries:
                raise MalformedInputError(
                    f"conflicting values ({_kind(self.entries[parent])} and container)", parent
                )
        existing = self.entries.get(path, _MISSING)
        if existing is not _MISSING:
            old_kind, new_kind = _kind(existing), _kind(value)
            if old_kind != new_kind:
                raise MalformedInputError(f"conflicting values ({old_kind} and {new_kind})", path)
            msg = f"fact '{path}' set more than once, using last value"
            logger.warning(msg)
            self.warnings.append(msg)
        self.entries[path] = value
        self._containers.update(parents)


def _parents(path: str) -> list[str]:
    """Every enclosing path: ``a.b[0].c`` gives ``a``, ``a.b``, ``a.b[0]``."""
    return [path[:i] for i, ch in enumerate(path) if ch in ".[" and i > 0]


def _is_scalar(value: Any) -> bool:
    return isinstance(value, _SCALAR_TYPES)


def _kind(value: Any) -> str:
    if isinstance(value, tuple):
        return "list"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    return "string"
