from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict

from .types import Complexity, Domain, QueryClassification


def should_orchestrate(classification: QueryClassification) -> bool:
    # Any one signal is enough, even when complexity says simple.
    return (
        classification.complexity is Complexity.COMPLEX
        or classification.requires_workflow
        or classification.requires_multiple_tools
        or classification.estimated_steps > 1
    )


def get_primary_domain(classification: QueryClassification) -> Domain:
    if classification.domains:
        return classification.domains[0]
    return Domain.GENERAL


@dataclass
class RoutingStats:
    """Advisory routing counters owned by whoever runs the orchestrator.

    One instance may be shared by concurrent requests; updates and
    snapshots are serialized on an instance lock.
    """

    total: int = 0
    simple: int = 0
    complex: int = 0
    average_steps: float = 0.0
    domains: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    def record(self, classification: QueryClassification, orchestrated: bool) -> None:
        with self._lock:
            self.total += 1
            if orchestrated:
                self.complex += 1
            else:
                self.simple += 1
            self.average_steps += (classification.estimated_steps - self.average_steps) / self.total
            for domain in classification.domains:
                self.domains[domain.value] = self.domains.get(domain.value, 0) + 1

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "total": self.total,
                "simple": self.simple,
                "complex": self.complex,
                "average_steps": round(self.average_steps, 3),
                "domains": dict(self.domains),
            }
