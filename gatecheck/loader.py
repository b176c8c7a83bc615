from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import yaml

from .core.errors import MalformedInputError


def load_document(source: str) -> Any:
    """Load an input document from a path (or "-" for stdin), auto-detecting JSON vs YAML."""
    name = "<stdin>" if source == "-" else source
    try:
        text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise MalformedInputError(f"input is not valid UTF-8: {e.reason} at byte {e.start}", name) from None
    except OSError as e:
        raise MalformedInputError(f"cannot read input: {e.strerror or e}", name) from None

    try:
        return _parse(text, json_only=source.endswith(".json"), name=name)
    except RecursionError:
        raise MalformedInputError("input nesting too deep to parse", name) from None


def _parse(text: str, *, json_only: bool, name: str) -> Any:
    if json_only:
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedInputError(f"invalid JSON: {e}", name) from None

    # Try JSON first (handles stdin and files that happen to be JSON)
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        pass

    # Fall back to YAML
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise MalformedInputError(f"invalid YAML: {e}", name) from None
    return {} if document is None else document
