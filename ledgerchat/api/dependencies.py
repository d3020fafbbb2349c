from typing import Annotated, AsyncIterator, Optional

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerchat.assistant.backends import (
    QueryEngine,
    SavedQueryStore,
    SqlQueryEngine,
    SqlSavedQueryStore,
)
from ledgerchat.assistant.executor import ActionExecutor, QueryExecutor
from ledgerchat.assistant.llm import GeminiClient, LLMClient
from ledgerchat.assistant.pipeline import AssistantPipeline
from ledgerchat.assistant.synthesizer import Synthesizer
from ledgerchat.core.config import settings
from ledgerchat.core.database import engine, get_db

db_dep = Annotated[AsyncSession, Depends(get_db)]


# Shared client from the lifespan; a short-lived one when the app runs without it
async def get_http_client(request: Request) -> AsyncIterator[httpx.AsyncClient]:
    client = getattr(request.app.state, "http_client", None)
    if client is not None:
        yield client
        return

    async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
        yield client


def get_credential() -> Optional[str]:
    return settings.GEMINI_API_KEY


def get_llm(http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)]) -> LLMClient:
    return GeminiClient(
        http_client,
        model=settings.GEMINI_MODEL,
        base_url=settings.GEMINI_BASE_URL,
        temperature=settings.LLM_TEMPERATURE,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        max_retries=settings.LLM_MAX_RETRIES,
        retry_backoff=settings.LLM_RETRY_BACKOFF_SECONDS,
    )


def get_query_engine(db: db_dep) -> QueryEngine:
    return SqlQueryEngine(
        db,
        fetch_limit=settings.QUERY_MAX_ROWS,
        read_only_transaction=engine.dialect.name == "postgresql",
    )


def get_saved_query_store(request: Request, db: db_dep) -> SavedQueryStore:
    def location_for(query_id: int) -> str:
        return str(request.app.url_path_for("get_saved_query", query_id=query_id))

    return SqlSavedQueryStore(db, location_for)


def get_pipeline(
    llm: Annotated[LLMClient, Depends(get_llm)],
    credential: Annotated[Optional[str], Depends(get_credential)],
    query_engine: Annotated[QueryEngine, Depends(get_query_engine)],
    store: Annotated[SavedQueryStore, Depends(get_saved_query_store)],
) -> AssistantPipeline:
    return AssistantPipeline(
        llm=llm,
        credential=credential,
        synthesizer=Synthesizer(llm, max_chars=settings.SUMMARY_MAX_CHARS),
        query_executor=QueryExecutor(query_engine, max_rows=settings.QUERY_MAX_ROWS),
        action_executor=ActionExecutor(store),
        excerpt_length=settings.ERROR_EXCERPT_LENGTH,
        max_history_turns=settings.MAX_HISTORY_TURNS,
    )


pipeline_dep = Annotated[AssistantPipeline, Depends(get_pipeline)]
