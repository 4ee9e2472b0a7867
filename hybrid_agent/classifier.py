"""Keyword classifier deciding whether a query needs orchestration.

The classifier is a rule table: an ordered tuple of ``Rule`` entries, each
pairing a predicate over the lower-cased query with either a ``Domain`` or
a ``Signal``. Domain rules appear in priority order (document, media, task,
event, web), so the order of ``QueryClassification.domains`` follows the
table. ``classify`` then applies a fixed precedence:

1. workflow signal -> complex, one step per clause (at least 2)
2. multi-tool signal, or more than one domain -> complex
3. no domain -> simple, ``general``
4. one domain -> simple
5. hard-complex patterns upgrade the result to complex, never downgrade

``classify`` is pure and total: it never raises and always returns at least
one domain.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Tuple, Union

from .types import Complexity, Domain, QueryClassification


class Signal(str, Enum):
    WORKFLOW = "workflow"
    MULTI_TOOL = "multi_tool"
    HARD_COMPLEX = "hard_complex"


Predicate = Callable[[str], bool]


@dataclass(frozen=True)
class Rule:
    name: str
    target: Union[Domain, Signal]
    predicate: Predicate

    def matches(self, text: str) -> bool:
        return self.predicate(text)


def _pattern(regex: str) -> Predicate:
    compiled = re.compile(regex)
    return lambda text: compiled.search(text) is not None


def _min_clauses(count: int) -> Predicate:
    return lambda text: len([part for part in text.split(",") if part.strip()]) >= count


def _min_conjunctions(count: int) -> Predicate:
    return lambda text: len(re.findall(r"\band\b", text)) >= count


RULES: Tuple[Rule, ...] = (
    # Domains, in priority order.
    Rule(
        "document-keywords",
        Domain.DOCUMENT,
        _pattern(
            r"\b(documents?|docs?|files?|reports?|notes?|memos?|spreadsheets?|find|search for"
            r"|summar(?:y|ies|ize|ise)|edit|rewrite|draft|open)\b"
        ),
    ),
    Rule(
        "media-keywords",
        Domain.MEDIA,
        _pattern(r"\b(images?|photos?|pictures?|videos?|media|youtube|audio|podcasts?|screenshots?|gallery)\b"),
    ),
    Rule(
        "task-keywords",
        Domain.TASK,
        _pattern(r"\b(tasks?|todos?|to-dos?|reminders?|remind me|deadlines?|checklist|assign(?:ed)?)\b"),
    ),
    Rule(
        "event-keywords",
        Domain.EVENT,
        _pattern(r"\b(events?|calendar|meetings?|schedule[ds]?|appointments?|agenda|invites?)\b"),
    ),
    Rule(
        "web-keywords",
        Domain.WEB,
        _pattern(
            r"\b(web|online|internet|google|news|look up|sec|filings?|10-k|stock price"
            r"|company info(?:rmation)?)\b"
        ),
    ),
    # Multi-step intent.
    Rule("sequencing", Signal.WORKFLOW, _pattern(r"\b(and then|after that|next|finally|followed by)\b")),
    Rule("enumeration", Signal.WORKFLOW, _min_clauses(3)),
    Rule("find-open-analyze", Signal.WORKFLOW, _pattern(r"\bfind\b.*\bopen\b.*\banaly[sz]e\b")),
    Rule("create-update", Signal.WORKFLOW, _pattern(r"\bcreate\b.*\bupdate\b")),
    Rule(
        "chained-action",
        Signal.WORKFLOW,
        _pattern(r"\band\s+(?:then\s+)?(?:tell|show|send|share|email|explain)\b"),
    ),
    # Several tools for one answer.
    Rule(
        "comparison",
        Signal.MULTI_TOOL,
        _pattern(r"\b(compare|comparing|comparison|contrast|cross[- ]reference|differences? between|side by side)\b"),
    ),
    Rule("conjunctions", Signal.MULTI_TOOL, _min_conjunctions(2)),
    # Escalate regardless of the base decision.
    Rule("orchestration-words", Signal.HARD_COMPLEX, _pattern(r"\b(workflow|pipeline|multi[- ]step|step[- ]by[- ]step)\b")),
    Rule("versus", Signal.HARD_COMPLEX, _pattern(r"\b(versus|vs)\b")),
    Rule("analyze-and-summarize", Signal.HARD_COMPLEX, _pattern(r"\banaly[sz]e and summari[sz]e\b")),
)

_CLAUSE_SPLIT = re.compile(r",|;|\b(?:and then|after that|next|finally|followed by)\b", re.IGNORECASE)
_LEADING_JOINER = re.compile(r"^(?:and|then|also)\s+", re.IGNORECASE)


def split_clauses(query: str) -> List[str]:
    """Split a query on workflow separators, dropping empty pieces."""
    clauses = []
    for part in _CLAUSE_SPLIT.split(query or ""):
        clause = part.strip()
        while True:
            stripped = _LEADING_JOINER.sub("", clause).strip()
            if stripped == clause:
                break
            clause = stripped
        if clause:
            clauses.append(clause)
    return clauses


def detect_domains(query: str, rules: Iterable[Rule] = RULES) -> List[Domain]:
    text = (query or "").lower()
    return _unique(rule.target for rule in rules if isinstance(rule.target, Domain) and rule.matches(text))


def classify(query: str, rules: Iterable[Rule] = RULES) -> QueryClassification:
    text = (query or "").lower()
    matched = [rule for rule in rules if rule.matches(text)]

    domains = _unique(rule.target for rule in matched if isinstance(rule.target, Domain))
    fired: Dict[Signal, List[str]] = {}
    for rule in matched:
        if isinstance(rule.target, Signal):
            fired.setdefault(rule.target, []).append(rule.name)

    requires_workflow = Signal.WORKFLOW in fired
    requires_multiple_tools = Signal.MULTI_TOOL in fired or len(domains) > 1

    if requires_workflow:
        complexity = Complexity.COMPLEX
        estimated_steps = max(2, len(split_clauses(text)))
        reasoning = f"workflow: {', '.join(fired[Signal.WORKFLOW])}"
    elif requires_multiple_tools:
        complexity = Complexity.COMPLEX
        estimated_steps = max(2, len(domains))
        names = fired.get(Signal.MULTI_TOOL) or ["multiple-domains"]
        reasoning = f"multi-tool: {', '.join(names)}"
    elif not domains:
        complexity = Complexity.SIMPLE
        estimated_steps = 1
        reasoning = "general: no domain keywords matched"
    else:
        complexity = Complexity.SIMPLE
        estimated_steps = 1
        reasoning = f"single-domain: {domains[0].value}"

    if Signal.HARD_COMPLEX in fired:
        names = ", ".join(fired[Signal.HARD_COMPLEX])
        if complexity is Complexity.SIMPLE:
            reasoning = f"hard-override: {names}"
        else:
            reasoning = f"{reasoning}; hard-override: {names}"
        complexity = Complexity.COMPLEX
        estimated_steps = max(2, estimated_steps)

    return QueryClassification(
        complexity=complexity,
        domains=domains or [Domain.GENERAL],
        requires_multiple_tools=requires_multiple_tools,
        requires_workflow=requires_workflow,
        estimated_steps=estimated_steps,
        reasoning=reasoning,
    )


def _unique(domains: Iterable[Domain]) -> List[Domain]:
    ordered: List[Domain] = []
    for domain in domains:
        if domain not in ordered:
            ordered.append(domain)
    return ordered
