"""Manual scenario runner for the fundwise pipeline.

Run from repo root:

python -m src.fundwise.agents.manual_eval
python -m src.fundwise.agents.manual_eval --quick
python -m src.fundwise.agents.manual_eval --query "Where should I park my emergency fund?"
python -m src.fundwise.agents.manual_eval --query "Which index fund?" --stream
python -m src.fundwise.agents.manual_eval --query "Write a haiku" --free-chat
python -m src.fundwise.agents.manual_eval --save reports/fundwise-manual-eval.json
"""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..config.settings import setup_logging
from ..streaming.sinks import CallableSink
from .context import DEFAULT_PROFILE
from .orchestrator import Orchestrator
from .streaming_orchestrator import StreamingOrchestrator

DEFAULT_SCENARIOS: list[dict[str, str]] = [
    {
        "name": "new_sip",
        "query": "Which mutual fund should I start a SIP in?",
        "expect": "success",
    },
    {
        "name": "conceptual",
        "query": "What is an expense ratio and why does it matter?",
        "expect": "success",
    },
    {
        "name": "tax_saving",
        "query": "How can I save tax under 80C with ELSS?",
        "expect": "success",
    },
    {
        "name": "emergency_fund",
        "query": "Where should I park my emergency fund?",
        "expect": "success",
    },
    {
        "name": "out_of_domain",
        "query": "What's the weather in Mumbai tomorrow?",
        "expect": "rejection",
    },
]

QUICK_SCENARIOS = DEFAULT_SCENARIOS[:2]


def _issue(condition: bool, message: str, issues: list[str]) -> None:
    if condition:
        issues.append(message)


def _detect_issues(result: dict[str, Any], expect: str | None) -> list[str]:
    issues: list[str] = []
    kind = result.get("type")
    _issue(expect is not None and kind != expect, f"Expected {expect}, got {kind}", issues)

    if kind == "success":
        artifact = result.get("artifact", {}) or {}
        narrative = str(artifact.get("narrative", "") or "")
        _issue(len(narrative.strip()) < 80, "Narrative is unexpectedly short", issues)
        _issue(
            "financial advisor" not in narrative.lower(),
            "Narrative is missing the advisor disclaimer",
            issues,
        )
        _issue(result.get("repairAttempts", 1) > 1, "Needed repair attempts", issues)
        grounding = result.get("grounding") or {}
        _issue(bool(grounding.get("fallback_used")), "Grounding fell back to static funds", issues)
    elif kind == "error":
        _issue(True, f"Pipeline error at {result.get('stage')}: {result.get('error')}", issues)

    return issues


def _run_one(orch: Orchestrator, scenario: dict[str, str]) -> dict[str, Any]:
    name = scenario["name"]
    query = scenario["query"]

    print(f"\n=== Scenario: {name} ===")
    print(f"Query: {query}")

    try:
        result = orch.run(query, DEFAULT_PROFILE).to_dict()
    except Exception as exc:
        print(f"Error: {exc}")
        return {
            "scenario": name,
            "query": query,
            "ok": False,
            "issues": [f"Runtime error: {exc}"],
            "result": None,
        }

    issues = _detect_issues(result, scenario.get("expect"))
    print(f"Outcome: {result.get('type')}")
    if issues:
        print("Issues:")
        for issue in issues:
            print(f"  - {issue}")
    else:
        print("Issues: none")

    return {
        "scenario": name,
        "query": query,
        "ok": not issues,
        "issues": issues,
        "result": result,
    }


def _stream_one(query: str, free_chat: bool) -> int:
    orch = StreamingOrchestrator()
    sink = CallableSink(lambda frame: print(frame, end="", flush=True))
    if free_chat:
        response = orch.run_free_chat(query, sink)
    else:
        response = orch.run(query, DEFAULT_PROFILE, sink)
    if response is None:
        print("Stream aborted")
        return 1
    return 1 if response.type == "error" else 0


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manual fundwise scenario run")
    parser.add_argument("--quick", action="store_true", help="Run fewer scenarios")
    parser.add_argument(
        "--query",
        default="",
        help="Run a single custom query instead of preset scenarios",
    )
    parser.add_argument(
        "--stream", action="store_true", help="Print the SSE frames of a --query run",
    )
    parser.add_argument(
        "--free-chat", action="store_true", help="Stream --query through free chat",
    )
    parser.add_argument(
        "--save",
        default="",
        help="Optional path to save full JSON report",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging()

    if args.query and (args.stream or args.free_chat):
        return _stream_one(args.query, args.free_chat)

    if args.query:
        scenarios = [{"name": "custom", "query": args.query}]
    elif args.quick:
        scenarios = QUICK_SCENARIOS
    else:
        scenarios = DEFAULT_SCENARIOS

    orch = Orchestrator()
    rows = [_run_one(orch, s) for s in scenarios]

    failures = [r for r in rows if not r["ok"]]
    print("\n=== Summary ===")
    print(f"Scenarios: {len(rows)}")
    print(f"Passed: {len(rows) - len(failures)}")
    print(f"Failed: {len(failures)}")

    if args.save:
        report = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "total": len(rows),
            "passed": len(rows) - len(failures),
            "failed": len(failures),
            "items": rows,
        }
        target = Path(args.save)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")
        print(f"Saved report to: {target}")

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
