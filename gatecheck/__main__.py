"""Entry point: python -m gatecheck [--json] [--policy P] [--exceptions F] <input>"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone

from . import __version__
from .config import PolicyLocator, resolve_exceptions_path
from .core.errors import Cancelled, MalformedInputError, PolicyLoadError
from .core.evaluator import CancelToken, evaluate
from .core.facts import DEFAULT_MAX_DEPTH
from .core.report import EXIT_ERROR, format_text
from .core.ruleset import load_exceptions, load_rule_set, parse_timestamp
from .loader import load_document


def main() -> int:
    parser = argparse.ArgumentParser(
        prog="gatecheck",
        description="Policy admission gate for build and deploy artifacts",
    )
    parser.add_argument("input", help="Normalized artifact document (JSON or YAML), or - for stdin")
    parser.add_argument("--json", action="store_true", dest="json_output", help="Output the report as JSON")
    parser.add_argument("--policy", help="Policy YAML path or bundled policy name (default: dockerfile)")
    parser.add_argument("--exceptions", help="YAML file with rule exceptions")
    parser.add_argument(
        "--severity",
        action="append",
        default=[],
        metavar="RULE=LEVEL",
        help="Override a rule's severity (repeatable)",
    )
    parser.add_argument("--now", help="Evaluation time as ISO-8601 (default: current UTC time)")
    parser.add_argument("--workers", type=int, default=1, help="Evaluate rules on N threads (default: 1)")
    parser.add_argument("--timeout", type=float, help="Abort the evaluation after SECONDS")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum input nesting depth")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log rule-by-rule progress to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    if args.workers < 1:
        parser.error("--workers must be at least 1")
    try:
        now = parse_timestamp(args.now) if args.now else datetime.now(timezone.utc)
    except ValueError as e:
        parser.error(f"--now: {e}")
    overrides: dict[str, str] = {}
    for item in args.severity:
        rule_id, sep, level = item.partition("=")
        if not sep or not rule_id or not level:
            parser.error(f"--severity expects RULE=LEVEL, got {item!r}")
        overrides[rule_id] = level

    # Load policy
    locator = PolicyLocator(args.policy)
    policy_path = locator.resolve()
    exceptions_path = resolve_exceptions_path(args.exceptions)
    try:
        extra = load_exceptions(exceptions_path) if exceptions_path else []
        rule_set = load_rule_set(policy_path, exceptions=extra, severity_overrides=overrides)
    except PolicyLoadError as e:
        print(f"error: {e}", file=sys.stderr)
        if not policy_path.exists():
            print(f"  searched: {', '.join(locator.searched_locations())}", file=sys.stderr)
        return EXIT_ERROR

    # Evaluate
    token = CancelToken(timeout=args.timeout)
    previous = _install_sigterm(token)
    try:
        document = load_document(args.input)
        report = evaluate(document, rule_set, now, workers=args.workers, token=token, max_depth=args.max_depth)
    except (MalformedInputError, Cancelled) as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("error: evaluation cancelled", file=sys.stderr)
        return EXIT_ERROR
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    # Output
    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_text(report))
    return report.exit_code


def _install_sigterm(token: CancelToken):
    """Route SIGTERM (CI job abort) to the cancel token. Returns the previous handler."""
    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGTERM, lambda signum, frame: token.cancel())


if __name__ == "__main__":
    sys.exit(main())
