"""
SYNTHESIZER - turn an execution result into the user-facing answer

Only non-empty row sets cost a second model call; the zero-row and
saved-query answers are fixed templates.
"""

import html
import logging
from typing import List, Dict, Any, Tuple

from ledgerchat.assistant import prompts
from ledgerchat.assistant.errors import EmptyResultError, LLMError, SynthesisError
from ledgerchat.assistant.llm import LLMClient
from ledgerchat.assistant.types import ExecutionResult, PersistedObjectRef, Prompt, RowSet

logger = logging.getLogger(__name__)

NO_RECORDS_TEMPLATE = (
    "I couldn't find any records for that request. (Query used: <code>{query}</code>)"
)
SAVED_TEMPLATE = (
    "Success! I saved the search <b>{title}</b>.<br>"
    "<a href='{location}' target='_blank' class='search-link'>Click here to open it</a>"
)


def bounded_rows_json(rows: List[Dict[str, Any]], max_chars: int) -> Tuple[str, int]:
    """
    Serialize as many leading rows as fit in ``max_chars``.

    Returns the JSON text and the number of rows it holds. A single row that
    is already too long is cut at the limit.
    """
    for count in range(len(rows), 0, -1):
        text = prompts.compact_rows(rows[:count])
        if len(text) <= max_chars:
            return text, count
    return prompts.compact_rows(rows[:1])[:max_chars], 1


class Synthesizer:
    def __init__(self, llm: LLMClient, max_chars: int = 8000):
        self.llm = llm
        self.max_chars = max_chars

    async def summarize(self, result: ExecutionResult, user_text: str, credential: str) -> str:
        if isinstance(result, PersistedObjectRef):
            return SAVED_TEMPLATE.format(
                title=html.escape(result.title),
                location=html.escape(result.location),
            )

        if isinstance(result, RowSet) and not result.rows:
            return NO_RECORDS_TEMPLATE.format(query=html.escape(result.query, quote=False))

        rows_json, included = bounded_rows_json(result.rows, self.max_chars)
        if included < len(result.rows):
            logger.info(f"Summary prompt holds {included} of {len(result.rows)} rows")

        prompt = Prompt(user_text=prompts.summary_request(rows_json, user_text))
        try:
            response = await self.llm.generate(prompt, credential)
        except LLMError as error:
            raise SynthesisError(error) from error

        answer = response.text.strip()
        if not answer:
            raise SynthesisError(EmptyResultError("blank summary"))
        return answer
