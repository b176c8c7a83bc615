from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from .. import __version__
from .models import Finding, Origin, Severity, Verdict
from .ruleset import RuleException

SCHEMA_VERSION = "1.0"

EXIT_PASS = 0
EXIT_FAIL = 1
EXIT_ERROR = 2


@dataclass(frozen=True)
class Report:
    """Outcome of one evaluation run. Field names are part of the public JSON schema."""

    verdict: Verdict
    findings: tuple[Finding, ...]
    suppressed: tuple[Finding, ...]
    counts: Mapping[str, int]
    rule_set_version: str
    evaluated_at: datetime
    policy: str = "<memory>"
    exceptions: tuple[RuleException, ...] = field(default_factory=tuple)

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS

    @property
    def exit_code(self) -> int:
        return EXIT_PASS if self.passed else EXIT_FAIL

    def to_dict(self) -> dict:
        return {
            "meta": {
                "schema_version": SCHEMA_VERSION,
                "tool_version": __version__,
                "rule_set_version": self.rule_set_version,
                "evaluated_at": self.evaluated_at.isoformat(),
                "policy": self.policy,
            },
            "verdict": self.verdict.value,
            "counts": dict(self.counts),
            "findings": [f.to_dict() for f in self.findings],
            "suppressed": [f.to_dict() for f in self.suppressed],
            "exceptions": [
                {
                    "rule_id": e.rule_id,
                    "justification": e.justification,
                    "expires": e.expires.isoformat(),
                }
                for e in self.exceptions
            ],
        }


def count_by_severity(findings: tuple[Finding, ...] | list[Finding]) -> dict[str, int]:
    counts = {s.value: 0 for s in Severity}
    for f in findings:
        counts[f.severity.value] += 1
    return counts


def format_text(report: Report) -> str:
    """Render a report for humans: findings grouped by severity, then suppressed ones."""
    lines: list[str] = []

    for severity in Severity:
        group = [f for f in report.findings if f.severity is severity]
        if not group:
            continue
        lines.append(f"{severity.value.upper()} ({len(group)})")
        for f in group:
            marker = " [engine]" if f.origin is Origin.ENGINE else ""
            lines.append(f"  {f.rule_id}{marker}: {f.message}")
            if f.path:
                lines.append(f"    at {f.path}")
        lines.append("")

    if report.suppressed:
        by_rule = {e.rule_id: e for e in report.exceptions}
        lines.append(f"SUPPRESSED ({len(report.suppressed)})")
        for f in report.suppressed:
            lines.append(f"  {f.rule_id}: {f.message}")
            exc = by_rule.get(f.rule_id)
            if exc is not None:
                lines.append(f"    excepted until {exc.expires.isoformat()}: {exc.justification}")
        lines.append("")

    if not report.findings and not report.suppressed:
        lines.append("No findings for the rules evaluated.")

    counts = ", ".join(f"{n} {name}" for name, n in report.counts.items())
    lines.append(f"Verdict: {report.verdict.value.upper()} ({counts}; rule set {report.rule_set_version})")
    return "\n".join(lines)
