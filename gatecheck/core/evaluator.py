"""Evaluate a rule set against a fact model and build the report.

Rules are pure, so they may run on a thread pool. Results are kept per rule
index and merged in rule-set order; completion order never leaks into the
report.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any

from .errors import Cancelled, RuleEvaluationError
from .facts import DEFAULT_MAX_DEPTH, FactModel, build_fact_model
from .models import Finding, Origin, Severity, Verdict
from .report import Report, count_by_severity
from .ruleset import Rule, RuleSet, as_utc, resolve_exceptions

logger = logging.getLogger(__name__)

MISSING_VALUE = "<missing>"

_PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
_POLL_INTERVAL = 0.05
_UNSET = object()


class CancelToken:
    """Cooperative cancellation flag with an optional deadline (seconds from now)."""

    def __init__(self, timeout: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self._expired()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled("evaluation cancelled")
        if self._expired():
            raise Cancelled("evaluation deadline exceeded")

    def _expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline


def evaluate(
    facts: FactModel | Mapping[str, Any],
    rule_set: RuleSet,
    now: datetime,
    *,
    workers: int = 1,
    token: CancelToken | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Report:
    """Run every rule against facts and return the report.

    Raises MalformedInputError before any rule runs if facts is a raw
    document that cannot be flattened, and Cancelled if token fires.
    A rule that raises becomes a block finding instead of aborting the run.
    """
    if workers < 1:
        raise ValueError(f"workers must be >= 1, got {workers}")
    facts = build_fact_model(facts, max_depth)
    token = token or CancelToken()
    token.raise_if_cancelled()

    if workers > 1 and len(rule_set.rules) > 1:
        per_rule = _run_parallel(rule_set.rules, facts, workers, token)
    else:
        per_rule = _run_sequential(rule_set.rules, facts, token)

    active = resolve_exceptions(rule_set, now)
    retained: list[Finding] = []
    suppressed: list[Finding] = []
    for findings in per_rule:
        for finding in findings:
            if active.get(finding.rule_id, False):
                suppressed.append(finding)
            else:
                retained.append(finding)

    counts = count_by_severity(retained)
    verdict = Verdict.FAIL if counts[Severity.BLOCK.value] else Verdict.PASS
    logger.debug(
        "rule set %s: %d rule(s), %d finding(s), %d suppressed, verdict %s",
        rule_set.version, len(rule_set.rules), len(retained), len(suppressed), verdict.value,
    )

    return Report(
        verdict=verdict,
        findings=tuple(retained),
        suppressed=tuple(suppressed),
        counts=counts,
        rule_set_version=rule_set.version,
        evaluated_at=as_utc(now),
        policy=rule_set.source,
        exceptions=tuple(e for rule_id, e in rule_set.exceptions.items() if active[rule_id]),
    )


def _run_sequential(rules: Sequence[Rule], facts: FactModel, token: CancelToken) -> list[list[Finding]]:
    results: list[list[Finding]] = []
    for rule in rules:
        token.raise_if_cancelled()
        results.append(_run_rule(rule, facts))
    return results


def _run_parallel(rules: Sequence[Rule], facts: FactModel, workers: int, token: CancelToken) -> list[list[Finding]]:
    results: list[list[Finding]] = [[] for _ in rules]
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="gatecheck")
    try:
        futures = {}
        for index, rule in enumerate(rules):
            token.raise_if_cancelled()
            futures[pool.submit(_run_rule, rule, facts)] = index
        pending = set(futures)
        while pending:
            token.raise_if_cancelled()
            done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
            for future in done:
                results[futures[future]] = future.result()
    finally:
        pool.shutdown(wait=True, cancel_futures=True)
    return results


def _run_rule(rule: Rule, facts: FactModel) -> list[Finding]:
    logger.debug("evaluating rule '%s'", rule.id)
    try:
        return [
            Finding(
                rule_id=rule.id,
                title=rule.title,
                severity=rule.severity,
                message=render_message(rule.message, facts, location, rule.id),
                path=location,
            )
            for location in rule.evaluate(facts)
        ]
    except Exception as e:
        error = RuleEvaluationError(rule.id, e)
        logger.warning("%s", error)
        return [Finding(
            rule_id=rule.id,
            title=rule.title,
            severity=Severity.BLOCK,
            message=f"RuleEvaluationError: {error}",
            path=None,
            origin=Origin.ENGINE,
        )]


def render_message(template: str, facts: Mapping[str, Any], location: str, rule_id: str = "") -> str:
    """Fill ``{placeholders}`` in a message template.

    ``{path}`` and ``{rule_id}`` are the match location and rule id;
    ``{value}`` is the fact at the location; ``{.name}`` is a child of the
    location (an ``each`` element) or else its sibling; anything else is an
    absolute fact path. Unknown facts render as ``<missing>``.
    """

    def substitute(m: re.Match) -> str:
        name = m.group(1).strip()
        if name == "path":
            return location
        if name == "rule_id":
            return rule_id
        if name == "value":
            key = location
        elif name.startswith("."):
            key = location + name
            if key not in facts:
                parent = location.rsplit(".", 1)[0] if "." in location else ""
                key = parent + name if parent else name[1:]
        else:
            key = name
        value = facts.get(key, _UNSET)
        return MISSING_VALUE if value is _UNSET else _format_value(value)

    return _PLACEHOLDER.sub(substitute, template)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, tuple):
        return ", ".join(_format_value(v) for v in value)
    return str(value)
