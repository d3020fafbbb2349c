"""
SANITIZER - strip formatting artifacts from model output

Models are told to return raw SQL or a raw JSON object and still wrap the
payload in markdown fences, prefix it with a language tag or spread it over
several lines. This module recovers the payload text. It never validates it:
bad SQL is the executor's problem, bad JSON the orchestrator's.
"""

import re
from enum import Enum


class PayloadKind(str, Enum):
    QUERY = "query"
    JSON = "json"


# ```  ```sql  ```SQL SELECT ...  ```python<newline>
# A known tag is dropped anywhere; any other word only when it ends the fence line.
_FENCE = re.compile(
    r"```(?:(?:sql|suiteql|json)\b|[A-Za-z][\w+-]*(?=[ \t]*(?:\r?\n|$)))?",
    re.IGNORECASE,
)

# A bare tag line left over when the model forgot the backticks: "sql\nSELECT ..."
_TAG_LINE = re.compile(r"^[ \t]*(?:sql|suiteql|json)[ \t]*(?:\r?\n|$)", re.IGNORECASE)

_LINE_BREAKS = re.compile(r"[\r\n]+")
_FORMAT_WORD = re.compile(r"\bJSON\b")


def _clean_once(text: str, kind: PayloadKind) -> str:
    text = _FENCE.sub("", text).strip()
    text = _TAG_LINE.sub("", text, count=1)

    if kind is PayloadKind.QUERY:
        text = _LINE_BREAKS.sub(" ", text)
    else:
        text = _FORMAT_WORD.sub("", text)

    return text.strip()


def sanitize(raw: str, kind: PayloadKind) -> str:
    """
    Clean raw model output into a parseable payload.

    The cleanup pass is repeated until nothing changes, so removing one
    artifact can never leave a new one behind (e.g. ``"``JSON`"`` collapsing
    into a fence) and ``sanitize(sanitize(x, k), k) == sanitize(x, k)``.

    Example:
        sanitize("```sql\\nSELECT 1\\n```", PayloadKind.QUERY) -> "SELECT 1"
    """
    text = raw
    while True:
        cleaned = _clean_once(text, kind)
        if cleaned == text:
            return cleaned
        text = cleaned
