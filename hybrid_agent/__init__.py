"""Hybrid query orchestrator: classify, route, plan and execute user requests."""

from .classifier import classify
from .orchestrator import Orchestrator
from .router import RoutingStats, get_primary_domain, should_orchestrate
from .types import (
    AgentContext,
    Complexity,
    Domain,
    ExecutionPlan,
    OrchestrationResult,
    QueryClassification,
    StepResult,
    TaskStep,
)

__all__ = [
    "AgentContext",
    "Complexity",
    "Domain",
    "ExecutionPlan",
    "OrchestrationResult",
    "Orchestrator",
    "QueryClassification",
    "RoutingStats",
    "StepResult",
    "TaskStep",
    "classify",
    "get_primary_domain",
    "should_orchestrate",
]
