import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse

from .config import ServerConfig
from .orchestrator import Orchestrator
from .router import RoutingStats
from .types import (
    AgentContext,
    OrchestrationResult,
    classification_as_dict,
    orchestration_result_as_dict,
    plan_as_dict,
)

logger = logging.getLogger("hybrid_agent.server")

MODEL_ID = "hybrid-agent-orchestrator"


def _extract_request(messages: List[Dict[str, Any]]) -> Tuple[str, List[Dict[str, str]]]:
    """Split chat messages into the last user message and the history before it."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.get("role") == "user" and isinstance(message.get("content"), str):
            history = [
                {"role": m["role"], "content": m["content"]}
                for m in messages[:index]
                if m.get("role") in ("user", "assistant") and isinstance(m.get("content"), str)
            ]
            return message["content"], history
    return "", []


def _optional_str(body: Dict[str, Any], key: str) -> Optional[str]:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise HTTPException(status_code=400, detail=f"'{key}' must be a non-empty string")
    return value


def _render_markdown(result: OrchestrationResult) -> List[str]:
    chunks: List[str] = []
    if result.route == "complex" and result.plan is not None:
        chunks.append("### 📋 Execution Plan\n")
        for step in result.plan.steps:
            chunks.append(f"- **{step.id}** ({step.domain.value}): {step.description}\n")
        chunks.append("\n---\n### 🛠️ Execution Results\n")
        for step_result in result.steps:
            icon = "✅" if step_result.success else "❌"
            chunks.append(f"**{icon} Step {step_result.step_id}** ({step_result.latency_ms}ms)\n")
            if step_result.error:
                chunks.append(f"> *Error: {step_result.error}*\n")
        chunks.append("\n---\n")
    chunks.append(result.final_response)
    return chunks


def create_app(
    orchestrator_factory: Callable[[], Orchestrator] = Orchestrator,
    stats: Optional[RoutingStats] = None,
) -> FastAPI:
    app = FastAPI(title="Hybrid Agent Server")
    app.state.stats = stats if stats is not None else RoutingStats()
    app.state.orchestrator_factory = orchestrator_factory
    app.state.orchestrator = None

    def _orchestrator() -> Orchestrator:
        # Built lazily and shared so worker threads survive across requests.
        if app.state.orchestrator is None:
            app.state.orchestrator = app.state.orchestrator_factory()
        return app.state.orchestrator

    async def _json_body(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except Exception:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Expected a JSON object")
        return body

    def _query_from(body: Dict[str, Any]) -> str:
        query = body.get("query")
        if not isinstance(query, str) or not query.strip():
            raise HTTPException(status_code=400, detail="Missing 'query'")
        return query

    @app.get("/v1/models")
    def list_models():
        return {
            "object": "list",
            "data": [
                {
                    "id": MODEL_ID,
                    "object": "model",
                    "created": int(time.time()),
                    "owned_by": "hybrid-agent",
                    "permission": [],
                }
            ],
        }

    @app.get("/v1/stats")
    def routing_stats():
        return app.state.stats.as_dict()

    @app.post("/v1/classify")
    async def classify_query(request: Request):
        query = _query_from(await _json_body(request))
        orchestrator = _orchestrator()
        return classification_as_dict(orchestrator.classify_only(query))

    @app.post("/v1/plan")
    async def plan_query(request: Request):
        query = _query_from(await _json_body(request))
        orchestrator = _orchestrator()
        classification, plan = await asyncio.to_thread(orchestrator.plan_only, query)
        return {"classification": classification_as_dict(classification), "plan": plan_as_dict(plan)}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        body = await _json_body(request)
        messages = body.get("messages", [])
        if not isinstance(messages, list):
            raise HTTPException(status_code=400, detail="'messages' must be a list")
        query, history = _extract_request(messages)
        if not query.strip():
            raise HTTPException(status_code=400, detail="No user message found")

        context = AgentContext(
            user_id=_optional_str(body, "user"),
            thread_id=_optional_str(body, "thread_id"),
            history=history,
        )
        request_id = str(uuid.uuid4())
        created = int(time.time())

        async def run() -> OrchestrationResult:
            # The orchestrator is synchronous; keep it off the event loop.
            orchestrator = _orchestrator()
            return await asyncio.to_thread(orchestrator.process_query, query, context, app.state.stats)

        if body.get("stream") is False:
            result = await run()
            return {
                "id": f"chatcmpl-{request_id}",
                "object": "chat.completion",
                "created": created,
                "model": MODEL_ID,
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": result.final_response},
                        "finish_reason": "stop",
                    }
                ],
                "orchestration": orchestration_result_as_dict(result),
                "thread_id": context.thread_id,
            }

        return StreamingResponse(_stream(run, request_id, created), media_type="text/event-stream")

    return app


async def _stream(
    run: Callable[[], Any], request_id: str, created: int
) -> AsyncGenerator[str, None]:
    def chunk(delta: Dict[str, Any], finish_reason: Optional[str] = None) -> str:
        return "data: " + json.dumps(
            {
                "id": f"chatcmpl-{request_id}",
                "object": "chat.completion.chunk",
                "created": created,
                "model": MODEL_ID,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
        ) + "\n\n"

    try:
        result = await run()
        for text in _render_markdown(result):
            yield chunk({"content": text})
        yield chunk({}, finish_reason="stop")
    except Exception as e:
        logger.error(f"Orchestrator failed: {e}", exc_info=True)
        yield chunk({"content": f"\n❌ **Agent Error**: {str(e)}\n"})
    yield "data: [DONE]\n\n"


app = create_app()


if __name__ == "__main__":
    config = ServerConfig()
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host=config.host, port=config.port)
