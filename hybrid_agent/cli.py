from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import List, Optional

from .orchestrator import Orchestrator
from .router import RoutingStats
from .types import AgentContext, classification_as_dict, orchestration_result_as_dict, plan_as_dict


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hybrid-agent")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    classify_parser = subparsers.add_parser("classify", help="Classify a query without executing it")
    classify_parser.add_argument("--query", required=True, help="User request")

    plan_parser = subparsers.add_parser("plan", help="Classify and plan a query without executing it")
    plan_parser.add_argument("--query", required=True, help="User request")

    run_parser = subparsers.add_parser("run", help="Process a query end-to-end")
    run_parser.add_argument("--query", required=True, help="User request")
    run_parser.add_argument("--user-id", default=None, help="Optional user id")
    run_parser.add_argument("--thread-id", default=None, help="Reuse an existing worker thread")
    return parser


def main(argv: Optional[List[str]] = None, orchestrator: Optional[Orchestrator] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    orchestrator = orchestrator or Orchestrator()

    if args.command == "classify":
        classification = orchestrator.classify_only(args.query)
        print(json.dumps(classification_as_dict(classification), indent=2))
        return 0

    if args.command == "plan":
        classification, plan = orchestrator.plan_only(args.query)
        out = {"classification": classification_as_dict(classification), "plan": plan_as_dict(plan)}
        print(json.dumps(out, indent=2))
        return 0

    if args.command == "run":
        stats = RoutingStats()
        context = AgentContext(user_id=args.user_id, thread_id=args.thread_id)
        result = orchestrator.process_query(args.query, context, stats=stats)
        out = orchestration_result_as_dict(result)
        out["thread_id"] = context.thread_id
        out["stats"] = stats.as_dict()
        print(json.dumps(out, indent=2))
        return 0 if result.success else 1

    return 1


if __name__ == "__main__":
    sys.exit(main())
