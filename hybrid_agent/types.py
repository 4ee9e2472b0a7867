from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Domain(str, Enum):
    DOCUMENT = "document"
    MEDIA = "media"
    TASK = "task"
    EVENT = "event"
    WEB = "web"
    GENERAL = "general"

    @classmethod
    def parse(cls, value: Any) -> "Domain":
        """Map a free-form tag onto a Domain, defaulting to GENERAL."""
        if isinstance(value, Domain):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        return cls.GENERAL


class Complexity(str, Enum):
    SIMPLE = "simple"
    COMPLEX = "complex"


class StepState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class QueryClassification:
    complexity: Complexity
    domains: List[Domain]
    requires_multiple_tools: bool
    requires_workflow: bool
    estimated_steps: int
    reasoning: str


@dataclass
class TaskStep:
    id: str
    domain: Domain
    action: str
    description: str
    dependencies: List[str] = field(default_factory=list)
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionPlan:
    steps: List[TaskStep]
    complexity: Complexity
    requires_orchestration: bool
    estimated_steps: int


@dataclass
class StepResult:
    step_id: str
    success: bool
    output: Optional[str]
    latency_ms: int
    error: Optional[str] = None
    tools_called: List[str] = field(default_factory=list)


@dataclass
class OrchestrationResult:
    success: bool
    final_response: str
    steps: List[StepResult]
    total_latency_ms: int
    tools_called: List[str] = field(default_factory=list)
    route: str = "complex"
    plan: Optional[ExecutionPlan] = None


@dataclass
class AgentContext:
    user_id: Optional[str] = None
    thread_id: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)


@dataclass(frozen=True)
class Planned:
    plan: ExecutionPlan
    reasoning: str = ""

    @property
    def is_fallback(self) -> bool:
        return False


@dataclass(frozen=True)
class Fallback:
    plan: ExecutionPlan
    reason: str

    @property
    def is_fallback(self) -> bool:
        return True


PlannerOutcome = Union[Planned, Fallback]


def classification_as_dict(classification: QueryClassification) -> Dict[str, Any]:
    return {
        "complexity": classification.complexity.value,
        "domains": [domain.value for domain in classification.domains],
        "requires_multiple_tools": classification.requires_multiple_tools,
        "requires_workflow": classification.requires_workflow,
        "estimated_steps": classification.estimated_steps,
        "reasoning": classification.reasoning,
    }


def plan_as_dict(plan: ExecutionPlan) -> Dict[str, Any]:
    return {
        "complexity": plan.complexity.value,
        "requires_orchestration": plan.requires_orchestration,
        "estimated_steps": plan.estimated_steps,
        "steps": [
            {
                "id": step.id,
                "domain": step.domain.value,
                "action": step.action,
                "description": step.description,
                "dependencies": list(step.dependencies),
                "args": dict(step.args),
            }
            for step in plan.steps
        ],
    }


def orchestration_result_as_dict(result: OrchestrationResult) -> Dict[str, Any]:
    return {
        "success": result.success,
        "route": result.route,
        "final_response": result.final_response,
        "steps": [asdict(step) for step in result.steps],
        "total_latency_ms": result.total_latency_ms,
        "tools_called": list(result.tools_called),
        "plan": plan_as_dict(result.plan) if result.plan is not None else None,
    }
