"""
PROMPTS - fixed instructions handed to the model for each flow

The query and persist contracts both demand a bare payload (no prose, no
markdown). Models do not always comply, which is why every payload still goes
through the sanitizer.
"""

import json
from typing import Any, Dict, List

from ledgerchat.assistant.types import TITLE_PREFIX
from ledgerchat.core.models import QUERYABLE_MODELS

# Operators accepted in a saved query condition: [field, operator, value, ...]
FILTER_OPERATORS = {
    "is": 1,
    "isnot": 1,
    "anyof": None,  # one or more values
    "noneof": None,
    "equalto": 1,
    "notequalto": 1,
    "greaterthan": 1,
    "greaterthanorequalto": 1,
    "lessthan": 1,
    "lessthanorequalto": 1,
    "between": 2,
    "contains": 1,
    "startswith": 1,
    "on": 1,
    "before": 1,
    "after": 1,
    "onorbefore": 1,
    "onorafter": 1,
    "isempty": 0,
    "isnotempty": 0,
}


def describe_schema() -> str:
    """
    Render the queryable tables as ``table (col type, ...)`` lines.

    Built from the SQLAlchemy metadata so the model sees the real schema.
    """
    lines = []
    for model in QUERYABLE_MODELS.values():
        table = model.__table__
        columns = []
        for column in table.columns:
            entry = f"{column.name} {column.type}"
            for fk in column.foreign_keys:
                entry += f" -> {fk.target_fullname}"
            columns.append(entry)
        lines.append(f"{table.name} ({', '.join(columns)})")
    return "\n".join(lines)


def query_instructions() -> str:
    return (
        "You are a PostgreSQL expert. Translate the user request into a single "
        "read-only SQL SELECT statement. Return ONLY the raw SQL. No explanations. "
        "No markdown. Join customers to transactions on transactions.customer_id = "
        "customers.id when names are needed.\n"
        f"Tables:\n{describe_schema()}"
    )


def action_instructions() -> str:
    record_types = ", ".join(f"'{name}'" for name in QUERYABLE_MODELS)
    operators = ", ".join(FILTER_OPERATORS)
    return (
        "You are a saved search helper. Convert the user request into a JSON object "
        "describing a saved query. Include 'type', 'filters', 'columns', and a 'title'. "
        f"'type' is one of {record_types}. "
        "'filters' is a list of conditions [field, operator, value...] joined by "
        "\"AND\" or \"OR\" strings, a condition may be preceded by \"NOT\". "
        f"Operators: {operators}. "
        "'columns' lists field names of that record type. "
        f"The 'title' must start with '{TITLE_PREFIX}'. "
        "Return ONLY the raw JSON object. NO markdown (no ```json).\n"
        f"Tables:\n{describe_schema()}"
    )


# Persona for the advice flow: guidance only, nothing is executed or saved
ADVICE_INSTRUCTIONS = (
    "You are an expert on this customer and transaction ledger. "
    "Your goal is to help the user design saved queries. "
    "When the user asks a question, explain which record type, filters and "
    "columns fulfil the request and show the saved query definition as JSON. "
    "If the request is unclear, ask clarifying questions about record types or criteria."
)


def summary_request(rows_json: str, user_text: str) -> str:
    return (
        f"Based on this ledger data: {rows_json}\n"
        f"Summarize it to answer: {user_text}\n"
        "Use HTML for formatting (bold, lists). Keep it concise."
    )


def compact_rows(rows: List[Dict[str, Any]]) -> str:
    return json.dumps(rows, separators=(",", ":"), default=str)
