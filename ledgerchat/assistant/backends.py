"""
BACKENDS - the query engine and saved query store behind the executors

The executors only depend on the two protocols below. The SQL implementations
run against the application database through an AsyncSession.
"""

import logging
import re
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Union
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledgerchat.assistant.prompts import FILTER_OPERATORS
from ledgerchat.assistant.types import ActionSpec, PersistedObjectRef
from ledgerchat.core import models

logger = logging.getLogger(__name__)


class BackendRejectedError(Exception):
    """A backend refused the payload; the message is safe to show."""


class QueryRejectedError(BackendRejectedError):
    pass


class SavedQueryRejectedError(BackendRejectedError):
    pass


class QueryEngine(Protocol):
    async def run(self, query: str) -> List[Dict[str, Any]]: ...


class SavedQueryStore(Protocol):
    async def save(
        self, spec: ActionSpec, source_prompt: Optional[str] = None
    ) -> PersistedObjectRef: ...


# -----------------------------------------------------------------------------
# Query engine
# -----------------------------------------------------------------------------

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_QUOTED_IDENTIFIER = re.compile(r'"(?:[^"]|"")*"')
_LEADING_KEYWORD = re.compile(r"\s*(select|with)\b", re.IGNORECASE)
_FORBIDDEN = re.compile(
    r"\b(insert|update|delete|merge|alter|drop|truncate|create|grant|revoke"
    r"|copy|call|vacuum|lock|set|reset|into)\b",
    re.IGNORECASE,
)


def is_read_only(sql: str) -> bool:
    """
    Allow only one SELECT-like statement.

    Literal strings and quoted identifiers are blanked first so a memo
    containing "delete" does not trip the keyword check.
    """
    bare = _QUOTED_IDENTIFIER.sub('""', _STRING_LITERAL.sub("''", sql))
    bare = bare.strip().rstrip(";")
    if ";" in bare:
        return False
    return bool(_LEADING_KEYWORD.match(bare)) and not _FORBIDDEN.search(bare)


def to_scalar(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    return value


class SqlQueryEngine:
    def __init__(
        self,
        session: AsyncSession,
        fetch_limit: Optional[int] = None,
        read_only_transaction: bool = True,
    ):
        """
        Args:
            session: Request-scoped database session
            fetch_limit: Rows pulled from the cursor, None for all
            read_only_transaction: Issue SET TRANSACTION READ ONLY (PostgreSQL)
        """
        self.session = session
        self.fetch_limit = fetch_limit
        self.read_only_transaction = read_only_transaction

    async def run(self, query: str) -> List[Dict[str, Any]]:
        statement = query.strip().rstrip(";").strip()
        if not is_read_only(statement):
            raise QueryRejectedError("only a single read-only SELECT statement is allowed")

        # Nothing a generated statement does is ever kept
        try:
            if self.read_only_transaction:
                await self.session.execute(text("SET TRANSACTION READ ONLY"))

            result = await self.session.execute(text(statement))
            mappings = result.mappings()
            if self.fetch_limit is None:
                rows = mappings.all()
            else:
                rows = mappings.fetchmany(self.fetch_limit)

            return [{key: to_scalar(value) for key, value in row.items()} for row in rows]
        finally:
            await self.session.rollback()


# -----------------------------------------------------------------------------
# Saved query store
# -----------------------------------------------------------------------------

_LOGICAL_JOINS = {"AND", "OR"}
_SCALAR_TYPES = (str, int, float, bool)


def _check_condition(condition: List[Any], fields: Set[str]) -> None:
    if len(condition) < 2:
        raise SavedQueryRejectedError(f"Condition {condition!r} needs a field and an operator")

    field, operator, values = condition[0], condition[1], condition[2:]
    if not isinstance(field, str) or field not in fields:
        raise SavedQueryRejectedError(f"Unknown filter field {field!r}")
    if not isinstance(operator, str) or operator.lower() not in FILTER_OPERATORS:
        raise SavedQueryRejectedError(f"Unsupported filter operator {operator!r}")

    arity = FILTER_OPERATORS[operator.lower()]
    if arity is None and not values:
        raise SavedQueryRejectedError(f"Operator '{operator}' needs at least one value")
    if arity is not None and len(values) != arity:
        raise SavedQueryRejectedError(
            f"Operator '{operator}' takes {arity} value(s), got {len(values)}"
        )

    for value in values:
        if not isinstance(value, _SCALAR_TYPES):
            raise SavedQueryRejectedError(f"Filter value {value!r} is not a plain value")


def check_filters(filters: List[Any], fields: Set[str]) -> None:
    """
    Validate a filter expression.

    Conditions alternate with AND/OR; NOT may precede a condition; a list
    whose first element is itself a list is a parenthesised group.
    """
    expect_condition = True

    for index, item in enumerate(filters):
        if isinstance(item, str):
            word = item.upper()
            if word == "NOT" and expect_condition:
                continue
            if word in _LOGICAL_JOINS and not expect_condition:
                expect_condition = True
                continue
            raise SavedQueryRejectedError(f"Unexpected '{item}' at filter position {index}")

        if not expect_condition:
            raise SavedQueryRejectedError(
                f"Filter position {index} must be joined with AND or OR"
            )
        if not isinstance(item, list) or not item:
            raise SavedQueryRejectedError(f"Filter position {index} is not a condition")

        if isinstance(item[0], list):
            check_filters(item, fields)
        else:
            _check_condition(item, fields)
        expect_condition = False

    if filters and expect_condition:
        raise SavedQueryRejectedError("Filter expression ends with a dangling operator")


def column_name(column: Union[str, Dict[str, Any]]) -> Any:
    if isinstance(column, dict):
        return column.get("name")
    return column


class SqlSavedQueryStore:
    def __init__(self, session: AsyncSession, location_for: Callable[[int], str]):
        """
        Args:
            session: Request-scoped database session
            location_for: Maps a saved query id to its host-relative path
        """
        self.session = session
        self.location_for = location_for

    async def save(
        self, spec: ActionSpec, source_prompt: Optional[str] = None
    ) -> PersistedObjectRef:
        model = models.QUERYABLE_MODELS.get(spec.record_type)
        if model is None:
            known = ", ".join(models.QUERYABLE_MODELS)
            raise SavedQueryRejectedError(
                f"Unknown record type '{spec.record_type}' (expected one of: {known})"
            )

        fields = set(model.__table__.columns.keys())
        for column in spec.columns:
            name = column_name(column)
            if name not in fields:
                raise SavedQueryRejectedError(f"Unknown column {name!r} for '{spec.record_type}'")
        check_filters(spec.filters, fields)

        saved = models.SavedQuery(
            title=spec.title,
            record_type=spec.record_type,
            filters=spec.filters,
            columns=spec.columns,
            source_prompt=source_prompt,
        )

        try:
            self.session.add(saved)
            await self.session.commit()
            await self.session.refresh(saved)
        except SQLAlchemyError as error:
            await self.session.rollback()
            logger.error(f"Failed to save query '{spec.title}': {error}")
            raise

        return PersistedObjectRef(
            id=str(saved.id),
            title=saved.title,
            location=self.location_for(saved.id),
        )
