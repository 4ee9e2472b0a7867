import json
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from hybrid_agent.orchestrator import Orchestrator
from hybrid_agent.planner import HeuristicPlanner
from hybrid_agent.router import RoutingStats
from hybrid_agent.server import _extract_request, create_app
from hybrid_agent.types import Domain
from hybrid_agent.worker import WorkerPool


class CannedWorker:
    def __init__(self) -> None:
        self.prompts: List[str] = []
        self.user_ids: List[Optional[str]] = []

    def create_session(self, history: Optional[List[Dict[str, str]]] = None) -> str:
        return "thread-canned"

    def invoke(self, session_id: str, prompt: str, user_id: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        self.user_ids.append(user_id)
        return f"answer {len(self.prompts)}"


@pytest.fixture
def worker() -> CannedWorker:
    return CannedWorker()


@pytest.fixture
def stats() -> RoutingStats:
    return RoutingStats()


@pytest.fixture
def client(worker: CannedWorker, stats: RoutingStats) -> TestClient:
    def factory() -> Orchestrator:
        return Orchestrator(workers=WorkerPool({Domain.DOCUMENT: worker}), planner=HeuristicPlanner())

    return TestClient(create_app(factory, stats=stats))


def test_models_endpoint(client: TestClient) -> None:
    resp = client.get("/v1/models")

    assert resp.status_code == 200
    assert resp.json()["data"][0]["id"] == "hybrid-agent-orchestrator"


def test_non_streaming_completion_returns_orchestration(client: TestClient, stats: RoutingStats) -> None:
    resp = client.post(
        "/v1/chat/completions",
        json={"stream": False, "messages": [{"role": "user", "content": "what's today's weather"}]},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["object"] == "chat.completion"
    assert data["choices"][0]["message"]["content"] == "answer 1"
    assert data["orchestration"]["route"] == "simple"
    assert data["orchestration"]["steps"][0]["step_id"] == "simple-1"
    assert data["thread_id"] == "thread-canned"
    assert stats.total == 1


def test_streaming_completion_renders_plan(client: TestClient) -> None:
    resp = client.post(
        "/v1/chat/completions",
        json={"messages": [{"role": "user", "content": "find my revenue report, open it, and tell me what it's about"}]},
    )

    assert resp.status_code == 200
    events = [line[len("data: "):] for line in resp.text.split("\n\n") if line.startswith("data: ")]
    assert events[-1] == "[DONE]"
    chunks = [json.loads(event) for event in events[:-1]]
    content = "".join(chunk["choices"][0]["delta"].get("content", "") for chunk in chunks)
    assert "Execution Plan" in content
    assert "**step-3** (document): tell me what it's about" in content
    assert content.endswith("Step 1: answer 1\n\nStep 2: answer 2\n\nStep 3: answer 3")
    assert chunks[-1]["choices"][0]["finish_reason"] == "stop"


def test_stats_endpoint_reflects_requests(client: TestClient) -> None:
    client.post("/v1/chat/completions", json={"stream": False, "messages": [{"role": "user", "content": "show my calendar"}]})

    data = client.get("/v1/stats").json()

    assert data["total"] == 1
    assert data["simple"] == 1
    assert data["domains"] == {"event": 1}


def test_classify_and_plan_endpoints(client: TestClient, worker: CannedWorker) -> None:
    classified = client.post("/v1/classify", json={"query": "find the photos from the offsite"}).json()
    planned = client.post("/v1/plan", json={"query": "find the photos from the offsite"}).json()

    assert classified["domains"] == ["document", "media"]
    assert classified["complexity"] == "complex"
    assert [step["domain"] for step in planned["plan"]["steps"]] == ["document", "media"]
    assert worker.prompts == []


@pytest.mark.parametrize(
    "path, kwargs",
    [
        ("/v1/chat/completions", {"content": b"not json", "headers": {"content-type": "application/json"}}),
        ("/v1/chat/completions", {"json": {"messages": [{"role": "assistant", "content": "hi"}]}}),
        ("/v1/classify", {"json": {"query": "  "}}),
        ("/v1/plan", {"json": {}}),
        ("/v1/chat/completions", {"json": {"thread_id": 7, "messages": [{"role": "user", "content": "hi"}]}}),
        ("/v1/chat/completions", {"json": {"user": ["u"], "messages": [{"role": "user", "content": "hi"}]}}),
        ("/v1/chat/completions", {"json": {"thread_id": " ", "messages": [{"role": "user", "content": "hi"}]}}),
    ],
)
def test_bad_requests_are_rejected(client: TestClient, path: str, kwargs) -> None:
    assert client.post(path, **kwargs).status_code == 400


def test_extract_request_uses_last_user_message() -> None:
    messages = [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": "second"},
    ]

    query, history = _extract_request(messages)

    assert query == "second"
    assert history == [{"role": "user", "content": "first"}, {"role": "assistant", "content": "reply"}]


def test_rejected_context_fields_do_not_reach_worker(client: TestClient, worker: CannedWorker, stats: RoutingStats) -> None:
    resp = client.post(
        "/v1/chat/completions",
        json={"stream": False, "thread_id": {"id": 1}, "messages": [{"role": "user", "content": "hello"}]},
    )

    assert resp.status_code == 400
    assert worker.prompts == []
    assert stats.total == 0


def test_user_and_thread_are_passed_through(client: TestClient, worker: CannedWorker) -> None:
    resp = client.post(
        "/v1/chat/completions",
        json={
            "stream": False,
            "user": "user-9",
            "thread_id": "thread-existing",
            "messages": [{"role": "user", "content": "hello"}],
        },
    )

    assert resp.status_code == 200
    assert resp.json()["thread_id"] == "thread-existing"
    assert worker.user_ids == ["user-9"]
