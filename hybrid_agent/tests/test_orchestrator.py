import logging
from typing import Dict, List, Optional, Tuple

from hybrid_agent.orchestrator import Orchestrator
from hybrid_agent.planner import HeuristicPlanner
from hybrid_agent.router import RoutingStats
from hybrid_agent.types import (
    AgentContext,
    Complexity,
    Domain,
    ExecutionPlan,
    Fallback,
    Planned,
    QueryClassification,
    TaskStep,
)
from hybrid_agent.worker import WorkerPool


class EchoWorker:
    def __init__(self, name: str) -> None:
        self.name = name
        self.calls: List[Tuple[str, str]] = []

    def create_session(self, history: Optional[List[Dict[str, str]]] = None) -> str:
        return f"thread-{self.name}"

    def invoke(self, session_id: str, prompt: str, user_id: Optional[str] = None) -> str:
        self.calls.append((session_id, prompt))
        return f"{self.name} handled: {prompt.splitlines()[-1]}"


class StaticPlanner:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.calls = 0

    def plan_with_outcome(self, query: str, classification: QueryClassification):
        self.calls += 1
        return self.outcome

    def plan(self, query: str, classification: QueryClassification) -> ExecutionPlan:
        return self.plan_with_outcome(query, classification).plan


def _orchestrator(planner=None, stats: Optional[RoutingStats] = None) -> Tuple[Orchestrator, EchoWorker]:
    document = EchoWorker("document")
    pool = WorkerPool({Domain.DOCUMENT: document, Domain.EVENT: EchoWorker("event")})
    return Orchestrator(workers=pool, planner=planner or HeuristicPlanner(), stats=stats), document


def test_simple_query_skips_planner() -> None:
    planner = StaticPlanner(None)
    orchestrator, document = _orchestrator(planner=planner)

    result = orchestrator.process_query("what's today's weather")

    assert result.route == "simple"
    assert result.success
    assert result.final_response == "document handled: what's today's weather"
    assert planner.calls == 0
    assert document.calls == [("thread-document", "what's today's weather")]


def test_workflow_query_is_planned_and_chained() -> None:
    orchestrator, document = _orchestrator()
    context = AgentContext(user_id="u1")

    result = orchestrator.process_query("find my revenue report, open it, and tell me what it's about", context)

    assert result.route == "complex"
    assert result.plan is not None
    assert [step.step_id for step in result.steps] == ["step-1", "step-2", "step-3"]
    assert len(document.calls) == 3
    assert document.calls[1][1].startswith("Previous step (step-1): ")
    assert document.calls[1][1].endswith("\n\nNow: open it")
    assert result.final_response.startswith("Step 1: document handled: find my revenue report")
    assert context.thread_id == "thread-document"


def test_invalid_plan_falls_back_to_simple_path(caplog) -> None:
    bad_plan = ExecutionPlan(
        steps=[
            TaskStep(id="a", domain=Domain.EVENT, action="x", description="one"),
            TaskStep(id="a", domain=Domain.EVENT, action="x", description="two"),
        ],
        complexity=Complexity.COMPLEX,
        requires_orchestration=True,
        estimated_steps=2,
    )
    orchestrator, document = _orchestrator(planner=StaticPlanner(Planned(plan=bad_plan, reasoning="dup")))

    with caplog.at_level(logging.WARNING, logger="hybrid_agent.orchestrator"):
        result = orchestrator.process_query("find the photos from the offsite")

    assert result.route == "simple"
    assert result.final_response == "document handled: find the photos from the offsite"
    assert "Duplicate step id: a" in caplog.text


def test_fallback_plan_is_executed_and_logged(caplog) -> None:
    plan = ExecutionPlan(
        steps=[TaskStep(id="step-1", domain=Domain.EVENT, action="execute", description="python vs javascript")],
        complexity=Complexity.SIMPLE,
        requires_orchestration=False,
        estimated_steps=1,
    )
    orchestrator, _ = _orchestrator(planner=StaticPlanner(Fallback(plan=plan, reason="planner offline")))

    with caplog.at_level(logging.WARNING, logger="hybrid_agent.orchestrator"):
        result = orchestrator.process_query("python vs javascript")

    assert result.route == "complex"
    assert result.final_response == "event handled: python vs javascript"
    assert "planner offline" in caplog.text


def test_stats_are_recorded_per_request() -> None:
    shared = RoutingStats()
    orchestrator, _ = _orchestrator(stats=shared)

    orchestrator.process_query("what's today's weather")
    orchestrator.process_query("find the photos from the offsite")

    assert shared.total == 2
    assert shared.simple == 1
    assert shared.complex == 1

    override = RoutingStats()
    orchestrator.process_query("show me my calendar", stats=override)
    assert override.total == 1
    assert shared.total == 2


def test_classify_and_plan_only_do_not_execute() -> None:
    orchestrator, document = _orchestrator()

    classification = orchestrator.classify_only("show me my calendar")
    _, plan = orchestrator.plan_only("find the photos from the offsite")

    assert classification.domains == [Domain.EVENT]
    assert [step.domain for step in plan.steps] == [Domain.DOCUMENT, Domain.MEDIA]
    assert document.calls == []
