"""Parallel evaluation must produce exactly the sequential report."""
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from gatecheck.core.errors import Cancelled
from gatecheck.core.evaluator import CancelToken, evaluate
from gatecheck.core.models import Severity
from gatecheck.core.ruleset import Rule, RuleSet, load_rule_set

POLICIES = Path(__file__).parent.parent / "gatecheck" / "policies"
FIXTURES = Path(__file__).parent / "fixtures"
NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class SlowRule(Rule):
    """Earlier rules sleep longer so they complete last."""

    def evaluate(self, facts):
        time.sleep(float(self.description))
        return super().evaluate(facts)


def _slow_rules(count: int) -> RuleSet:
    return RuleSet(
        version="1",
        rules=tuple(
            SlowRule(
                id=f"rule-{i}",
                title=f"rule {i}",
                severity=Severity.WARN if i % 2 else Severity.BLOCK,
                message="{rule_id} matched {path}",
                condition={"path": "items[*].name", "op": "present"},
                description=str(0.01 * (count - i)),
            )
            for i in range(count)
        ),
    )


def test_parallel_report_matches_sequential_despite_completion_order():
    rule_set = _slow_rules(8)
    facts = {"items": [{"name": "a"}, {"name": "b"}]}

    sequential = evaluate(facts, rule_set, NOW)
    parallel = evaluate(facts, rule_set, NOW, workers=4)

    assert parallel == sequential
    assert [f.rule_id for f in parallel.findings][:4] == ["rule-0", "rule-0", "rule-1", "rule-1"]


def test_parallel_bundled_policy_matches_sequential():
    import json

    rule_set = load_rule_set(POLICIES / "terraform.yaml")
    plan = json.loads((FIXTURES / "terraform_plan.json").read_text())
    assert evaluate(plan, rule_set, NOW, workers=3) == evaluate(plan, rule_set, NOW)


def test_parallel_broken_rule_keeps_its_position():
    class Exploding(Rule):
        def evaluate(self, facts):
            raise KeyError("boom")

    good = Rule(id="good", title="t", severity=Severity.INFO, message="m", condition={"path": "x", "op": "present"})
    bad = Exploding(id="bad", title="t", severity=Severity.INFO, message="m", condition={})
    rule_set = RuleSet(version="1", rules=(good, bad, Rule(**{**good.__dict__, "id": "good-2"})))

    report = evaluate({"x": 1}, rule_set, NOW, workers=2)
    assert [f.rule_id for f in report.findings] == ["good", "bad", "good-2"]


def test_parallel_cancellation_raises_and_returns_no_report():
    token = CancelToken()
    started = threading.Event()

    class Blocking(Rule):
        def evaluate(self, facts):
            started.set()
            time.sleep(0.2)
            return []

    rules = tuple(
        Blocking(id=f"r{i}", title="t", severity=Severity.INFO, message="m", condition={})
        for i in range(6)
    )
    canceller = threading.Thread(target=lambda: started.wait(1) and token.cancel())
    canceller.start()
    try:
        with pytest.raises(Cancelled):
            evaluate({}, RuleSet(version="1", rules=rules), NOW, workers=2, token=token)
    finally:
        canceller.join()


def test_parallel_deadline_raises_cancelled():
    rule_set = _slow_rules(10)
    with pytest.raises(Cancelled, match="deadline"):
        evaluate({"items": [{"name": "a"}]}, rule_set, NOW, workers=2, token=CancelToken(timeout=0.02))
