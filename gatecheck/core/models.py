from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Severity(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    INFO = "info"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class Origin(str, Enum):
    """Who produced a finding: the policy itself, or the engine on a broken rule."""

    POLICY = "policy"
    ENGINE = "engine"


@dataclass(frozen=True)
class Finding:
    rule_id: str
    title: str
    severity: Severity
    message: str
    path: str | None
    origin: Origin = Origin.POLICY

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "title": self.title,
            "severity": self.severity.value,
            "message": self.message,
            "path": self.path,
            "origin": self.origin.value,
        }
