from __future__ import annotations


class GateCheckError(Exception):
    """Base class for every error raised by gatecheck."""


class MalformedInputError(GateCheckError):
    """Raised when an input document cannot be turned into a fact model."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class CyclicInputError(MalformedInputError):
    """Raised when the input document contains a reference cycle."""


class PolicyLoadError(GateCheckError):
    """Raised when a policy or exception list is malformed."""


class RuleEvaluationError(GateCheckError):
    """A single rule failed while evaluating. Never propagated out of the evaluator."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        self.rule_id = rule_id
        self.cause = cause
        super().__init__(f"rule '{rule_id}' failed: {type(cause).__name__}: {cause}")


class Cancelled(GateCheckError):
    """Raised when an evaluation is cancelled or its deadline passes."""

    def __init__(self, reason: str = "cancelled") -> None:
        self.reason = reason
        super().__init__(reason)
