from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from .config import WorkerConfig
from .types import Domain

logger = logging.getLogger(__name__)


class WorkerError(RuntimeError):
    """Raised when a worker call fails at the transport or protocol level."""


class Worker(Protocol):
    def create_session(self, history: Optional[List[Dict[str, str]]] = None) -> str:
        ...

    def invoke(self, session_id: str, prompt: str, user_id: Optional[str] = None) -> str:
        ...


DOMAIN_INSTRUCTIONS: Dict[Domain, str] = {
    Domain.DOCUMENT: "\n".join(
        [
            "You are a document specialist. Help the user find, read, create, edit and summarize documents.",
            "When asked to show, read or open a document, locate it first and then present its content.",
            "When asked to create a document, create it with a clear descriptive title.",
        ]
    ),
    Domain.MEDIA: "\n".join(
        [
            "You are a media specialist. Search for and analyze images, videos and audio.",
            "Describe what each media item contains and why it matches the request.",
        ]
    ),
    Domain.TASK: "\n".join(
        [
            "You are a task specialist. Create, update, list and complete tasks, todos and reminders.",
            "Always state the title, due date and status of every task you touch.",
        ]
    ),
    Domain.EVENT: "\n".join(
        [
            "You are a calendar specialist. Create, update and list events, meetings and appointments.",
            "Always state the date, time and title of every event you touch.",
        ]
    ),
    Domain.WEB: "\n".join(
        [
            "You are a research specialist. Search the web, news, SEC filings and company information.",
            "Cite the sources you rely on.",
        ]
    ),
}

BEST_EFFORT_RULES = "\n".join(
    [
        "Rules:",
        "1. Never ask clarifying questions first; act on the most reasonable interpretation.",
        "2. If you had to assume something, say so briefly at the end.",
        "3. Always answer with text, even when nothing was found.",
    ]
)


class SessionStore:
    """In-memory conversation history keyed by thread id.

    Holds at most ``max_sessions`` threads; the least recently used thread
    is evicted when a new one would exceed the cap.
    """

    def __init__(self, max_sessions: int = 1000) -> None:
        self.max_sessions = max(1, max_sessions)
        self._threads: "OrderedDict[str, List[Dict[str, str]]]" = OrderedDict()
        self._lock = threading.Lock()

    def create(self, history: Optional[List[Dict[str, str]]] = None) -> str:
        thread_id = f"thread-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._put(thread_id, [dict(message) for message in history or []])
        return thread_id

    def messages(self, thread_id: str) -> List[Dict[str, str]]:
        with self._lock:
            if thread_id in self._threads:
                self._threads.move_to_end(thread_id)
            return list(self._threads.get(thread_id, []))

    def append(self, thread_id: str, role: str, content: str) -> None:
        with self._lock:
            if thread_id not in self._threads:
                self._put(thread_id, [])
            self._threads.move_to_end(thread_id)
            self._threads[thread_id].append({"role": role, "content": content})

    def _put(self, thread_id: str, messages: List[Dict[str, str]]) -> None:
        self._threads[thread_id] = messages
        while len(self._threads) > self.max_sessions:
            evicted, _ = self._threads.popitem(last=False)
            logger.debug("Evicted session %s", evicted)

    def __contains__(self, thread_id: object) -> bool:
        with self._lock:
            return thread_id in self._threads

    def __len__(self) -> int:
        with self._lock:
            return len(self._threads)


class ChatWorker:
    """Domain-bound worker backed by an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        domain: Domain,
        sessions: SessionStore,
        config: Optional[WorkerConfig] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.domain = domain
        self._sessions = sessions
        self._config = config or WorkerConfig()
        self._client = client or httpx.Client(timeout=httpx.Timeout(self._config.timeout_secs))

    def create_session(self, history: Optional[List[Dict[str, str]]] = None) -> str:
        return self._sessions.create(history)

    def invoke(self, session_id: str, prompt: str, user_id: Optional[str] = None) -> str:
        messages = [{"role": "system", "content": self._system_prompt()}]
        messages.extend(self._sessions.messages(session_id))
        messages.append({"role": "user", "content": prompt})

        resp = self._post_chat(messages, user_id)
        if resp.status_code >= 400:
            raise WorkerError(f"Worker error {resp.status_code}: {resp.text}")
        content = self._extract_content(resp)

        # Empty replies are retried by the caller; keep them out of the thread.
        if content.strip():
            self._sessions.append(session_id, "user", prompt)
            self._sessions.append(session_id, "assistant", content)
        return content

    def _system_prompt(self) -> str:
        instructions = DOMAIN_INSTRUCTIONS.get(self.domain, DOMAIN_INSTRUCTIONS[Domain.DOCUMENT])
        return "\n".join([instructions, BEST_EFFORT_RULES])

    def _post_chat(self, messages: List[Dict[str, str]], user_id: Optional[str] = None) -> httpx.Response:
        payload: Dict[str, Any] = {
            "model": self._config.model,
            "messages": messages,
            "stream": False,
        }
        if self._config.temperature is not None:
            payload["temperature"] = self._config.temperature
        if user_id:
            payload["user"] = user_id
        headers = {}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        try:
            return self._client.post(
                f"{self._config.base_url.rstrip('/')}/v1/chat/completions",
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise WorkerError(f"Worker request failed: {exc}") from exc

    def _extract_content(self, resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except json.JSONDecodeError:
            return resp.text
        if not isinstance(data, dict):
            raise WorkerError("Worker returned a non-object response")
        choices = data.get("choices", [])
        if not choices:
            return ""
        message = choices[0].get("message", {}) or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""


class WorkerPool:
    """Maps domains to workers; anything unmapped goes to the document worker."""

    def __init__(self, workers: Mapping[Domain, Worker]) -> None:
        if Domain.DOCUMENT not in workers:
            raise ValueError("WorkerPool requires a document worker as the fallback")
        self._workers = dict(workers)

    @classmethod
    def from_config(cls, config: Optional[WorkerConfig] = None) -> "WorkerPool":
        config = config or WorkerConfig()
        sessions = SessionStore(max_sessions=config.max_sessions)
        client = httpx.Client(timeout=httpx.Timeout(config.timeout_secs))
        workers = {
            domain: ChatWorker(domain, sessions, config=config, client=client)
            for domain in DOMAIN_INSTRUCTIONS
        }
        return cls(workers)

    def get(self, domain: Domain) -> Worker:
        worker = self._workers.get(domain)
        if worker is None:
            logger.debug("No worker for domain %s; using document worker", domain.value)
            return self._workers[Domain.DOCUMENT]
        return worker
