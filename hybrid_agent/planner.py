from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .classifier import detect_domains, split_clauses
from .config import PlannerConfig
from .router import get_primary_domain
from .types import (
    Complexity,
    Domain,
    ExecutionPlan,
    Fallback,
    Planned,
    PlannerOutcome,
    QueryClassification,
    TaskStep,
)

try:
    from openai import OpenAI  # type: ignore
except Exception:  # pragma: no cover - optional dependency at runtime
    OpenAI = None

try:
    from google import genai  # type: ignore
except ImportError:
    genai = None

try:
    import anthropic
except ImportError:
    anthropic = None

logger = logging.getLogger(__name__)


class PlanningError(ValueError):
    """Raised when a generation backend cannot produce a usable plan."""


PLAN_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["steps", "reasoning"],
    "properties": {
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "domain", "action", "description", "dependencies"],
                "properties": {
                    "id": {"type": "string"},
                    "domain": {"type": "string", "enum": [d.value for d in Domain if d is not Domain.GENERAL]},
                    "action": {"type": "string"},
                    "description": {"type": "string"},
                    "dependencies": {"type": "array", "items": {"type": "string"}},
                    "args": {"type": "object"},
                },
            },
        },
        "reasoning": {"type": "string"},
    },
}

PLANNER_SYSTEM_PROMPT = "\n".join(
    [
        "You are the Orchestrator planner. Break the user's request into atomic steps.",
        "Each step is handled by exactly one specialist domain:",
        "- document: find, read, create, edit and summarize documents and files",
        "- media: search and analyze images, videos and audio",
        "- task: create, update and list tasks, todos and reminders",
        "- event: manage calendar events, meetings and schedules",
        "- web: search the web, news, SEC filings and company information",
        "Rules:",
        "1. One domain and one action per step; never combine domains in a step.",
        "2. Give every step a unique id (step-1, step-2, ...).",
        "3. List the ids a step needs in its dependencies; never depend on the step itself.",
        "4. Write each description as a self-contained instruction for the specialist.",
        "5. Use as few steps as the request allows.",
    ]
)


class StructuredGenerator(Protocol):
    def generate_structured(self, system: str, user: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        ...


class Planner(Protocol):
    def plan_with_outcome(self, query: str, classification: QueryClassification) -> PlannerOutcome:
        ...

    def plan(self, query: str, classification: QueryClassification) -> ExecutionPlan:
        ...


class OpenAIGenerator:
    def __init__(self, model: str, timeout_secs: float = 60.0, temperature: float = 0.2) -> None:
        if OpenAI is None:
            raise RuntimeError("openai package not available")
        self._client = OpenAI(timeout=timeout_secs)
        self._model = model
        self._temperature = temperature

    def generate_structured(self, system: str, user: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            response_format={
                "type": "json_schema",
                "json_schema": {"name": "execution_plan", "schema": schema},
            },
            temperature=self._temperature,
        )
        content = resp.choices[0].message.content or ""
        return _parse_json_object(content)


class GeminiGenerator:
    def __init__(self, model: str, temperature: float = 0.2) -> None:
        if genai is None:
            raise RuntimeError("google-genai package not available")
        # Reads GOOGLE_API_KEY from the environment.
        self._client = genai.Client()
        self._model = model.replace("models/", "")
        self._temperature = temperature

    def generate_structured(self, system: str, user: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        response = self._client.models.generate_content(
            model=self._model,
            contents=[user],
            config={
                "system_instruction": _with_schema(system, schema),
                "response_mime_type": "application/json",
                "temperature": self._temperature,
            },
        )
        return _parse_json_object(response.text or "")


class AnthropicGenerator:
    def __init__(self, model: str, timeout_secs: float = 60.0, temperature: float = 0.2) -> None:
        if anthropic is None:
            raise RuntimeError("anthropic package not available")
        self._client = anthropic.Anthropic(timeout=timeout_secs)
        self._model = model
        self._temperature = temperature

    def generate_structured(self, system: str, user: str, schema: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._client.messages.create(
            model=self._model,
            max_tokens=4096,
            system=_with_schema(system, schema),
            messages=[{"role": "user", "content": user}],
            temperature=self._temperature,
        )
        content = resp.content[0].text if resp.content else ""
        return _parse_json_object(content)


class LLMPlanner:
    """Decomposes a query through a structured-generation backend.

    Any failure of the backend (exception, timeout, unparsable or
    schema-violating output) is converted into a single-step ``Fallback``
    plan; ``plan_with_outcome`` never raises.
    """

    def __init__(self, generator: StructuredGenerator, max_steps: int = 16) -> None:
        self._generator = generator
        self._max_steps = max_steps

    def plan_with_outcome(self, query: str, classification: QueryClassification) -> PlannerOutcome:
        try:
            payload = self._generator.generate_structured(
                PLANNER_SYSTEM_PROMPT,
                build_user_instruction(query, classification),
                PLAN_SCHEMA,
            )
            plan, reasoning = _plan_from_payload(payload, classification, self._max_steps)
        except Exception as exc:
            reason = f"{exc.__class__.__name__}: {exc}"
            logger.warning("Planner falling back to a single step: %s", reason)
            return Fallback(plan=fallback_plan(query, classification), reason=reason)

        logger.info("Planned %d steps: %s", len(plan.steps), reasoning)
        return Planned(plan=plan, reasoning=reasoning)

    def plan(self, query: str, classification: QueryClassification) -> ExecutionPlan:
        return self.plan_with_outcome(query, classification).plan


class HeuristicPlanner:
    """Offline planner: one step per clause, each chained on the previous one.

    A single-clause query spanning several domains fans out into one
    independent step per domain instead.
    """

    def __init__(self, max_steps: int = 16) -> None:
        self._max_steps = max_steps

    def plan_with_outcome(self, query: str, classification: QueryClassification) -> PlannerOutcome:
        clauses = split_clauses(query)
        if not clauses:
            return Fallback(plan=fallback_plan(query, classification), reason="empty query")

        domains = [d for d in classification.domains if d is not Domain.GENERAL]
        if len(clauses) == 1 and len(domains) > 1:
            steps = [
                TaskStep(id=f"step-{i + 1}", domain=domain, action="lookup", description=query)
                for i, domain in enumerate(domains[: self._max_steps])
            ]
            reasoning = "one step per domain"
        else:
            steps = []
            current = get_primary_domain(classification)
            for i, clause in enumerate(clauses[: self._max_steps]):
                matched = detect_domains(clause)
                if matched:
                    current = matched[0]
                steps.append(
                    TaskStep(
                        id=f"step-{i + 1}",
                        domain=current,
                        action=clause.split()[0].lower(),
                        description=clause,
                        dependencies=[steps[-1].id] if steps else [],
                    )
                )
            reasoning = "one step per clause"

        plan = ExecutionPlan(
            steps=steps,
            complexity=classification.complexity,
            requires_orchestration=len(steps) > 1,
            estimated_steps=len(steps),
        )
        return Planned(plan=plan, reasoning=reasoning)

    def plan(self, query: str, classification: QueryClassification) -> ExecutionPlan:
        return self.plan_with_outcome(query, classification).plan


def build_user_instruction(query: str, classification: QueryClassification) -> str:
    return "\n".join(
        [
            f"Request: {query}",
            "",
            "Classification:",
            f"- complexity: {classification.complexity.value}",
            f"- domains: {', '.join(d.value for d in classification.domains)}",
            f"- requires workflow: {'yes' if classification.requires_workflow else 'no'}",
            f"- requires multiple tools: {'yes' if classification.requires_multiple_tools else 'no'}",
            f"- estimated steps: {classification.estimated_steps}",
        ]
    )


def fallback_plan(query: str, classification: QueryClassification) -> ExecutionPlan:
    step = TaskStep(
        id="step-1",
        domain=get_primary_domain(classification),
        action="execute",
        description=query,
    )
    return ExecutionPlan(
        steps=[step],
        complexity=Complexity.SIMPLE,
        requires_orchestration=False,
        estimated_steps=1,
    )


def validate_plan(plan: ExecutionPlan) -> List[str]:
    """Return human-readable structural errors; an empty list means valid."""
    errors: List[str] = []
    if not plan.steps:
        errors.append("Plan has no steps")

    seen = set()
    for step in plan.steps:
        if step.id in seen:
            errors.append(f"Duplicate step id: {step.id}")
        seen.add(step.id)

    for step in plan.steps:
        for dep in step.dependencies:
            if dep == step.id:
                errors.append(f"Step {step.id} depends on itself")
            elif dep not in seen:
                errors.append(f"Step {step.id} depends on unknown step {dep}")
    return errors


def select_planner(config: Optional[PlannerConfig] = None) -> Planner:
    config = config or PlannerConfig()
    try:
        generator = _select_generator(config)
    except RuntimeError as exc:
        logger.warning("Planner provider %s unavailable (%s); using heuristic planner", config.provider, exc)
        generator = None
    if generator is None:
        return HeuristicPlanner(max_steps=config.max_steps)
    return LLMPlanner(generator, max_steps=config.max_steps)


def _select_generator(config: PlannerConfig) -> Optional[StructuredGenerator]:
    if config.provider == "openai" and os.getenv("OPENAI_API_KEY"):
        return OpenAIGenerator(model=config.model, timeout_secs=config.timeout_secs, temperature=config.temperature)

    if config.provider == "gemini" and os.getenv("GOOGLE_API_KEY"):
        return GeminiGenerator(model=config.model, temperature=config.temperature)

    if config.provider == "anthropic" and os.getenv("ANTHROPIC_API_KEY"):
        return AnthropicGenerator(model=config.model, timeout_secs=config.timeout_secs, temperature=config.temperature)

    return None


def _plan_from_payload(
    payload: Dict[str, Any], classification: QueryClassification, max_steps: int
) -> Tuple[ExecutionPlan, str]:
    if not isinstance(payload, dict):
        raise PlanningError("response is not a JSON object")
    raw_steps = payload.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanningError("response has no steps")
    reasoning = payload.get("reasoning")
    if not isinstance(reasoning, str):
        raise PlanningError("response reasoning must be a string")

    steps: List[TaskStep] = []
    for index, raw in enumerate(raw_steps[:max_steps]):
        if not isinstance(raw, dict):
            raise PlanningError(f"step {index + 1} is not an object")
        description = str(raw.get("description") or "").strip()
        if not description:
            raise PlanningError(f"step {index + 1} has no description")
        dependencies = raw.get("dependencies") or []
        if not isinstance(dependencies, list):
            raise PlanningError(f"step {index + 1} dependencies must be a list")
        args = raw.get("args")
        steps.append(
            TaskStep(
                id=str(raw.get("id") or f"step-{index + 1}"),
                domain=Domain.parse(raw.get("domain")),
                action=str(raw.get("action") or "execute"),
                description=description,
                dependencies=[str(dep) for dep in dependencies],
                args=args if isinstance(args, dict) else {},
            )
        )

    plan = ExecutionPlan(
        steps=steps,
        complexity=classification.complexity,
        requires_orchestration=len(steps) > 1,
        estimated_steps=len(steps),
    )
    return plan, reasoning


def _with_schema(system: str, schema: Dict[str, Any]) -> str:
    return "\n".join([system, "Return ONLY valid JSON in this schema:", json.dumps(schema)])


def _parse_json_object(content: str) -> Dict[str, Any]:
    cleaned = _strip_code_fence(content)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise PlanningError(f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise PlanningError("response is not a JSON object")
    return parsed


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```") and text.endswith("```"):
        lines = text.splitlines()
        if len(lines) >= 3:
            return "\n".join(lines[1:-1]).strip()
    return text
