from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from ledgerchat.api import dependencies
from ledgerchat.assistant.executor import ActionExecutor, QueryExecutor
from ledgerchat.assistant.llm import LLMClient
from ledgerchat.assistant.pipeline import AssistantPipeline
from ledgerchat.assistant.synthesizer import Synthesizer
from ledgerchat.assistant.types import ActionSpec, ModelResponse, PersistedObjectRef, Prompt
from ledgerchat.main import app

TEST_KEY = "test-key-0123456789"


# =========================
# Fakes
# =========================
class FakeLLM(LLMClient):
    """Replays queued replies; an exception in the queue is raised instead."""

    def __init__(self):
        self.replies: List[Any] = []
        self.prompts: List[Prompt] = []
        self.credentials: List[str] = []

    def queue(self, *replies):
        self.replies.extend(replies)

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: Prompt, credential: str) -> ModelResponse:
        self.prompts.append(prompt)
        self.credentials.append(credential)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ModelResponse(text=reply)


class FakeQueryEngine:
    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.queries: List[str] = []

    async def run(self, query: str) -> List[Dict[str, Any]]:
        self.queries.append(query)
        if self.error:
            raise self.error
        return list(self.rows)


class FakeStore:
    def __init__(self):
        self.saved: List[ActionSpec] = []
        self.prompts: List[Optional[str]] = []
        self.error: Optional[Exception] = None

    async def save(self, spec: ActionSpec, source_prompt: Optional[str] = None) -> PersistedObjectRef:
        if self.error:
            raise self.error
        self.saved.append(spec)
        self.prompts.append(source_prompt)
        query_id = len(self.saved)
        return PersistedObjectRef(
            id=str(query_id), title=spec.title, location=f"/saved-queries/{query_id}"
        )


# =========================
# Fixtures
# =========================
@pytest.fixture
def api_key():
    return TEST_KEY


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def engine():
    return FakeQueryEngine()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def pipeline(llm, engine, store):
    return AssistantPipeline(
        llm=llm,
        credential=TEST_KEY,
        synthesizer=Synthesizer(llm),
        query_executor=QueryExecutor(engine),
        action_executor=ActionExecutor(store),
    )


# Client with the LLM, query engine and saved query store replaced by fakes
@pytest_asyncio.fixture(scope="function")
async def client(llm, engine, store):
    app.dependency_overrides[dependencies.get_llm] = lambda: llm
    app.dependency_overrides[dependencies.get_credential] = lambda: TEST_KEY
    app.dependency_overrides[dependencies.get_query_engine] = lambda: engine
    app.dependency_overrides[dependencies.get_saved_query_store] = lambda: store

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
