from __future__ import annotations

import json
import logging
import time
from typing import Dict, List, Optional, Tuple

from .config import ExecutorConfig
from .types import (
    AgentContext,
    Domain,
    ExecutionPlan,
    OrchestrationResult,
    StepResult,
    StepState,
    TaskStep,
)
from .worker import Worker, WorkerPool

logger = logging.getLogger(__name__)

SIMPLE_STEP_ID = "simple-1"
FAILURE_HEADER = "I encountered errors while processing your request:"

_TRANSITIONS = {
    StepState.PENDING: {StepState.RUNNING, StepState.FAILED},
    StepState.RUNNING: {StepState.SUCCEEDED, StepState.RETRYING, StepState.FAILED},
    StepState.RETRYING: {StepState.RUNNING, StepState.FAILED},
    StepState.SUCCEEDED: set(),
    StepState.FAILED: set(),
}


class StepRun:
    """Attempt bookkeeping for one step.

    pending -> running(1) -> succeeded | retrying | failed
    retrying -> running(n + 1), until ``max_attempts`` calls have been made.
    """

    def __init__(self, step_id: str, max_attempts: int) -> None:
        self.step_id = step_id
        self.max_attempts = max(1, max_attempts)
        self.state = StepState.PENDING
        self.attempt = 0

    @property
    def done(self) -> bool:
        return self.state in (StepState.SUCCEEDED, StepState.FAILED)

    def start_attempt(self) -> None:
        self._move(StepState.RUNNING)
        self.attempt += 1

    def record_reply(self, text: str) -> StepState:
        if text and text.strip():
            self._move(StepState.SUCCEEDED)
        elif self.attempt < self.max_attempts:
            self._move(StepState.RETRYING)
        else:
            self._move(StepState.FAILED)
        return self.state

    def fail(self) -> None:
        self._move(StepState.FAILED)

    def _move(self, target: StepState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Step {self.step_id}: illegal transition {self.state.value} -> {target.value}")
        self.state = target


def get_execution_order(plan: ExecutionPlan) -> List[TaskStep]:
    """Order steps so each runs after its dependencies.

    Ready steps keep their original relative order. If a pass finds no
    ready step (a cycle or a dangling reference), the remaining steps are
    appended as they are so execution always terminates.
    """
    ordered: List[TaskStep] = []
    placed = set()
    remaining = list(plan.steps)

    while remaining:
        ready = [step for step in remaining if all(dep in placed for dep in step.dependencies)]
        if not ready:
            logger.warning(
                "Unresolvable dependencies among %s; running them in plan order",
                [step.id for step in remaining],
            )
            ordered.extend(remaining)
            break
        ordered.extend(ready)
        placed.update(step.id for step in ready)
        remaining = [step for step in remaining if step.id not in placed]
    return ordered


def build_step_prompt(step: TaskStep, previous_results: Dict[str, str], digest_chars: int = 200) -> str:
    context_parts = [
        f"Previous step ({dep}): {json.dumps(previous_results[dep], ensure_ascii=False)[:digest_chars]}"
        for dep in step.dependencies
        if previous_results.get(dep)
    ]
    if not context_parts:
        return step.description
    return "\n".join(context_parts) + f"\n\nNow: {step.description}"


def aggregate(results: List[StepResult]) -> Tuple[bool, str]:
    successful = [result for result in results if result.success]
    if not successful:
        lines = [FAILURE_HEADER] + [f"- {result.error}" for result in results]
        return False, "\n".join(lines)
    if len(successful) == 1:
        return True, successful[0].output or ""
    return True, "\n\n".join(f"Step {i + 1}: {result.output}" for i, result in enumerate(successful))


class Executor:
    def __init__(self, workers: WorkerPool, config: Optional[ExecutorConfig] = None) -> None:
        self._workers = workers
        self._config = config or ExecutorConfig()

    def execute_plan(self, plan: ExecutionPlan, query: str, context: AgentContext) -> OrchestrationResult:
        started = time.perf_counter()
        logger.info("Starting orchestration of %d steps for: %r", len(plan.steps), query)

        results: List[StepResult] = []
        previous_results: Dict[str, str] = {}
        for step in get_execution_order(plan):
            result = self.execute_step(step, context, previous_results)
            results.append(result)
            if result.success and result.output is not None:
                previous_results[step.id] = result.output
            # Failed steps do not stop the run; dependents just lose their context.

        success, final_response = aggregate(results)
        total_latency_ms = _elapsed_ms(started)
        logger.info(
            "Orchestration finished in %dms: %d/%d steps succeeded",
            total_latency_ms,
            sum(1 for result in results if result.success),
            len(results),
        )
        return OrchestrationResult(
            success=success,
            final_response=final_response,
            steps=results,
            total_latency_ms=total_latency_ms,
            tools_called=[tool for result in results for tool in result.tools_called],
            route="complex",
            plan=plan,
        )

    def execute_step(
        self, step: TaskStep, context: AgentContext, previous_results: Dict[str, str]
    ) -> StepResult:
        started = time.perf_counter()
        logger.info("Executing step %s (%s): %s", step.id, step.domain.value, step.description)
        prompt = build_step_prompt(step, previous_results, self._config.digest_chars)
        result, _ = self._run(step.id, self._workers.get(step.domain), prompt, context, started)
        return result

    def execute_simple(self, query: str, domain: Domain, context: AgentContext) -> OrchestrationResult:
        started = time.perf_counter()
        logger.info("Executing simple query with %s worker: %r", domain.value, query)
        result, raised = self._run(SIMPLE_STEP_ID, self._workers.get(domain), query, context, started)

        if raised:
            final_response = f"Error: {result.error}"
        else:
            _, final_response = aggregate([result])

        return OrchestrationResult(
            success=result.success,
            final_response=final_response,
            steps=[result],
            total_latency_ms=_elapsed_ms(started),
            tools_called=list(result.tools_called),
            route="simple",
        )

    def _run(
        self, step_id: str, worker: Worker, prompt: str, context: AgentContext, started: float
    ) -> Tuple[StepResult, bool]:
        """Run one worker call with retries; the flag is True when the worker raised."""
        run = StepRun(step_id, self._config.max_attempts)
        try:
            session_id = self._ensure_session(worker, context)
            output = self._invoke_with_retry(worker, session_id, prompt, run, context.user_id)
        except Exception as exc:
            if not run.done:
                run.fail()
            logger.error("Step %s failed: %s", step_id, exc)
            result = StepResult(
                step_id=step_id,
                success=False,
                output=None,
                latency_ms=_elapsed_ms(started),
                error=str(exc) or exc.__class__.__name__,
            )
            return result, True

        latency_ms = _elapsed_ms(started)
        if output is None:
            result = StepResult(
                step_id=step_id,
                success=False,
                output=None,
                latency_ms=latency_ms,
                error=f"No response after {run.attempt} attempts",
            )
            return result, False
        logger.info("Step %s completed in %dms: %s", step_id, latency_ms, output[:200])
        return StepResult(step_id=step_id, success=True, output=output, latency_ms=latency_ms), False

    def _ensure_session(self, worker: Worker, context: AgentContext) -> str:
        if context.thread_id:
            return context.thread_id
        thread_id = worker.create_session(context.history or None)
        context.thread_id = thread_id
        return thread_id

    def _invoke_with_retry(
        self, worker: Worker, session_id: str, prompt: str, run: StepRun, user_id: Optional[str] = None
    ) -> Optional[str]:
        while not run.done:
            run.start_attempt()
            text = worker.invoke(session_id, prompt, user_id=user_id)
            state = run.record_reply(text)
            if state is StepState.SUCCEEDED:
                logger.info("Step %s got a response on attempt %d", run.step_id, run.attempt)
                return text
            if state is StepState.RETRYING:
                logger.info("Step %s attempt %d returned no text, retrying", run.step_id, run.attempt)
        logger.warning("Step %s got no response after %d attempts", run.step_id, run.attempt)
        return None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
