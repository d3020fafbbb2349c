"""
EXECUTORS - run a sanitized payload against its backend

Backend failures never escape raw: they become QueryExecutionError (with the
exact attempted SQL) or ActionCreationError (with the backend's reason).
"""

from itertools import islice
from typing import Any, Mapping, Optional

from pydantic import ValidationError
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from ledgerchat.assistant.backends import BackendRejectedError, QueryEngine, SavedQueryStore
from ledgerchat.assistant.errors import ActionCreationError, QueryExecutionError
from ledgerchat.assistant.types import ActionSpec, PersistedObjectRef, RowSet


def backend_reason(error: Exception) -> str:
    # DBAPIError's own str() repeats the statement and a docs link
    if isinstance(error, DBAPIError) and error.orig is not None:
        return str(error.orig).strip()
    return str(error).strip()


def describe_validation(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "payload"
        problems.append(f"{location}: {item['msg']}")
    return "; ".join(problems)


class QueryExecutor:
    def __init__(self, engine: QueryEngine, max_rows: int = 10):
        self.engine = engine
        self.max_rows = max_rows

    async def execute(self, query: str) -> RowSet:
        """
        Run the query and keep the first ``max_rows`` rows in engine order.
        """
        try:
            rows = await self.engine.run(query)
        except (BackendRejectedError, SQLAlchemyError) as error:
            raise QueryExecutionError(query, backend_reason(error)) from error

        return RowSet(query=query, rows=list(islice(rows, self.max_rows)))


class ActionExecutor:
    def __init__(self, store: SavedQueryStore):
        self.store = store

    async def execute(
        self, payload: Mapping[str, Any], source_prompt: Optional[str] = None
    ) -> PersistedObjectRef:
        try:
            spec = ActionSpec.model_validate(dict(payload))
        except ValidationError as error:
            raise ActionCreationError(describe_validation(error)) from error

        try:
            return await self.store.save(spec, source_prompt=source_prompt)
        except (BackendRejectedError, SQLAlchemyError) as error:
            raise ActionCreationError(backend_reason(error)) from error
