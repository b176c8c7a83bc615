"""Rules, rule sets and time-bounded rule exceptions.

A rule set is loaded wholesale from a YAML policy document and is never
mutated afterwards. Exceptions carry an expiry; whether one is active is
decided per run by ``resolve_exceptions`` against the run's own clock.
"""
from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from .condition import evaluate_condition, validate_condition
from .errors import PolicyLoadError
from .models import Severity

logger = logging.getLogger(__name__)

_REQUIRED_RULE_KEYS = {"id", "title", "severity", "message", "condition"}
_REQUIRED_EXCEPTION_KEYS = {"rule_id", "justification", "expires"}
_SEVERITIES = {s.value for s in Severity}


@dataclass(frozen=True)
class Rule:
    id: str
    title: str
    severity: Severity
    message: str
    condition: dict = field(hash=False)
    description: str = ""

    def __post_init__(self) -> None:
        # Detach from the caller's mapping so a registered rule never changes.
        object.__setattr__(self, "condition", copy.deepcopy(self.condition))

    def evaluate(self, facts: Mapping[str, Any]) -> list[str]:
        """Return the locations this rule matched; empty when it does not fire."""
        return evaluate_condition(self.condition, facts) or []


@dataclass(frozen=True)
class RuleException:
    rule_id: str
    justification: str
    expires: datetime

    def is_active(self, now: datetime) -> bool:
        return as_utc(now) < self.expires


@dataclass(frozen=True)
class RuleSet:
    version: str
    rules: tuple[Rule, ...] = ()
    exceptions: Mapping[str, RuleException] = field(default_factory=dict)
    source: str = "<memory>"

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "exceptions", MappingProxyType(dict(self.exceptions)))
        seen: set[str] = set()
        for rule in self.rules:
            if rule.id in seen:
                raise PolicyLoadError(f"duplicate rule id '{rule.id}'")
            seen.add(rule.id)

    @property
    def rule_ids(self) -> list[str]:
        return [r.id for r in self.rules]


def load_rule_set(
    source: Path | str | Mapping,
    *,
    exceptions: list | None = None,
    severity_overrides: Mapping[str, str] | None = None,
) -> RuleSet:
    """Load and validate a rule set.

    source is a path to a YAML policy file or an already-parsed mapping.
    exceptions are merged with any declared in the policy itself.
    All validation errors are reported together in one PolicyLoadError.
    """
    if isinstance(source, Mapping):
        policy: Any = source
        origin = "<memory>"
    else:
        origin = str(source)
        policy = _read_yaml(Path(source))

    if not isinstance(policy, Mapping):
        raise PolicyLoadError(f"{origin}: expected a YAML mapping at top level")

    rules = policy.get("rules") or []
    if not isinstance(rules, list):
        raise PolicyLoadError(f"{origin}: 'rules' must be a list")
    declared = policy.get("exceptions") or []
    if not isinstance(declared, list):
        raise PolicyLoadError(f"{origin}: 'exceptions' must be a list")

    errors: list[str] = []
    version = policy.get("version")
    if version is None or not str(version).strip():
        errors.append("missing 'version'")

    errors.extend(_validate_rules(rules))
    rule_ids = {r["id"] for r in rules if isinstance(r, dict) and isinstance(r.get("id"), str)}

    overrides = dict(severity_overrides or {})
    for rule_id, level in overrides.items():
        if rule_id not in rule_ids:
            errors.append(f"severity override for unknown rule '{rule_id}'")
        if level not in _SEVERITIES:
            errors.append(f"severity override for '{rule_id}': invalid severity '{level}'")

    parsed_exceptions = _parse_exceptions([*declared, *(exceptions or [])], rule_ids, errors)

    if errors:
        joined = "\n  ".join(errors)
        raise PolicyLoadError(f"{origin}: policy validation failed:\n  {joined}")

    return RuleSet(
        version=str(version),
        rules=tuple(
            Rule(
                id=r["id"],
                title=str(r["title"]),
                severity=Severity(overrides.get(r["id"], r["severity"])),
                message=str(r["message"]),
                condition=r["condition"],
                description=str(r.get("description", "")),
            )
            for r in rules
        ),
        exceptions=parsed_exceptions,
        source=origin,
    )


def load_exceptions(path: Path | str) -> list:
    """Read an exception list file: a YAML list, or a mapping with an 'exceptions' key."""
    document = _read_yaml(Path(path), kind="exception file")
    if isinstance(document, Mapping):
        document = document.get("exceptions") or []
    if not isinstance(document, list):
        raise PolicyLoadError(f"{path}: expected a list of exceptions")
    return document


def resolve_exceptions(rule_set: RuleSet, now: datetime) -> dict[str, bool]:
    """Map each excepted rule id to whether its exception is active at ``now``."""
    now = as_utc(now)
    active = {rule_id: exc.is_active(now) for rule_id, exc in rule_set.exceptions.items()}
    for rule_id, is_active in active.items():
        if not is_active:
            logger.debug("exception for '%s' expired at %s", rule_id, rule_set.exceptions[rule_id].expires.isoformat())
    return active


def parse_timestamp(value: Any) -> datetime:
    """Parse an expiry value into an aware UTC datetime. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise ValueError(f"unparseable timestamp {value!r}")


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _read_yaml(path: Path, kind: str = "policy file") -> Any:
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise PolicyLoadError(f"{kind} not found: {path}") from None
    except OSError as e:
        raise PolicyLoadError(f"{path}: cannot read {kind}: {e}") from None
    except yaml.YAMLError as e:
        raise PolicyLoadError(f"{path}: invalid YAML: {e}") from None


def _validate_rules(rules: list) -> list[str]:
    """Validate required keys, severities, conditions and id uniqueness."""
    errors: list[str] = []
    first_seen: dict[str, int] = {}
    for i, rule in enumerate(rules):
        if not isinstance(rule, dict):
            errors.append(f"rules[{i}]: expected dict, got {type(rule).__name__}")
            continue
        label = f"rules[{i}] (id={rule.get('id', '?')})"
        missing = _REQUIRED_RULE_KEYS - rule.keys()
        if missing:
            errors.append(f"{label}: missing keys: {sorted(missing)}")

        rule_id = rule.get("id")
        if "id" in rule:
            if not isinstance(rule_id, str) or not rule_id:
                errors.append(f"{label}: 'id' must be a non-empty string")
            elif rule_id in first_seen:
                errors.append(f"{label}: duplicate rule id (first defined at rules[{first_seen[rule_id]}])")
            else:
                first_seen[rule_id] = i

        if "severity" in rule and rule["severity"] not in _SEVERITIES:
            errors.append(f"{label}: invalid severity '{rule['severity']}' (valid: {sorted(_SEVERITIES)})")
        if "condition" in rule:
            for err in validate_condition(rule["condition"]):
                errors.append(f"{label}: {err}")
    return errors


def _parse_exceptions(entries: list, rule_ids: set[str], errors: list[str]) -> dict[str, RuleException]:
    parsed: dict[str, RuleException] = {}
    for i, entry in enumerate(entries):
        where = f"exceptions[{i}]"
        if not isinstance(entry, dict):
            errors.append(f"{where}: expected dict, got {type(entry).__name__}")
            continue
        missing = _REQUIRED_EXCEPTION_KEYS - entry.keys()
        if missing:
            errors.append(f"{where}: missing keys: {sorted(missing)}")
            continue

        rule_id = str(entry["rule_id"])
        where = f"{where} (rule_id={rule_id})"
        justification = entry["justification"]
        if not isinstance(justification, str) or not justification.strip():
            errors.append(f"{where}: 'justification' must be a non-empty string")
            continue
        try:
            expires = parse_timestamp(entry["expires"])
        except ValueError as e:
            errors.append(f"{where}: {e}")
            continue
        if rule_id in parsed:
            errors.append(f"{where}: more than one exception for the same rule")
            continue
        if rule_id not in rule_ids:
            logger.warning("exception for unknown rule '%s' has no effect", rule_id)

        parsed[rule_id] = RuleException(rule_id=rule_id, justification=justification, expires=expires)
    return parsed
