from __future__ import annotations

import logging
from typing import Optional, Tuple

from .classifier import classify
from .config import ExecutorConfig, PlannerConfig, WorkerConfig
from .executor import Executor
from .planner import Planner, select_planner, validate_plan
from .router import RoutingStats, get_primary_domain, should_orchestrate
from .types import AgentContext, ExecutionPlan, Fallback, OrchestrationResult, QueryClassification
from .worker import WorkerPool

logger = logging.getLogger(__name__)


class Orchestrator:
    """Classifier -> Router -> Planner -> Executor for one query at a time.

    ``process_query`` does not raise for domain failures: planning errors
    become single-step plans, invalid plans fall back to the simple path and
    failed steps are reported inside the returned ``OrchestrationResult``.
    """

    def __init__(
        self,
        workers: Optional[WorkerPool] = None,
        planner: Optional[Planner] = None,
        stats: Optional[RoutingStats] = None,
        executor_config: Optional[ExecutorConfig] = None,
        worker_config: Optional[WorkerConfig] = None,
        planner_config: Optional[PlannerConfig] = None,
    ) -> None:
        self._workers = workers or WorkerPool.from_config(worker_config)
        self._planner = planner or select_planner(planner_config)
        self._executor = Executor(self._workers, executor_config)
        self.stats = stats

    def process_query(
        self,
        query: str,
        context: Optional[AgentContext] = None,
        stats: Optional[RoutingStats] = None,
    ) -> OrchestrationResult:
        context = context if context is not None else AgentContext()
        classification = classify(query)
        orchestrate = should_orchestrate(classification)
        logger.info(
            "Classified %r as %s (%s); route=%s",
            query,
            classification.complexity.value,
            classification.reasoning,
            "complex" if orchestrate else "simple",
        )

        if orchestrate:
            result = self._run_complex(query, classification, context)
        else:
            result = self._executor.execute_simple(query, get_primary_domain(classification), context)

        accumulator = stats if stats is not None else self.stats
        if accumulator is not None:
            accumulator.record(classification, orchestrated=orchestrate)
        return result

    def classify_only(self, query: str) -> QueryClassification:
        return classify(query)

    def plan_only(self, query: str) -> Tuple[QueryClassification, ExecutionPlan]:
        classification = classify(query)
        return classification, self._planner.plan(query, classification)

    def _run_complex(
        self, query: str, classification: QueryClassification, context: AgentContext
    ) -> OrchestrationResult:
        outcome = self._planner.plan_with_outcome(query, classification)
        if isinstance(outcome, Fallback):
            logger.warning("Using fallback plan: %s", outcome.reason)

        errors = validate_plan(outcome.plan)
        if errors:
            logger.warning("Discarding invalid plan (%s); running simple path", "; ".join(errors))
            return self._executor.execute_simple(query, get_primary_domain(classification), context)

        return self._executor.execute_plan(outcome.plan, query, context)
