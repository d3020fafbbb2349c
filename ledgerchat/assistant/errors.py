"""Error taxonomy of the assistant pipeline.

Every error carries a client-safe ``message`` (what ends up in the answer
envelope) and an optional ``detail`` that is only ever written to the server
log.
"""

from typing import Optional

REDACTED = "[REDACTED]"


def redact(text: Optional[str], secret: Optional[str]) -> Optional[str]:
    """Remove every occurrence of ``secret`` from ``text``."""
    if not text or not secret:
        return text
    return text.replace(secret, REDACTED)


class AssistantError(Exception):
    """Base exception for every failure the pipeline knows how to report."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ConfigurationError(AssistantError):
    """The LLM credential is missing. Fatal for the request, never retried."""


# -----------------------------------------------------------------------------
# LLM client
# -----------------------------------------------------------------------------


class LLMError(AssistantError):
    """Base class for failures of a generation call."""


class TransportError(LLMError):
    """The backend answered with a non-success status or could not be reached."""

    def __init__(self, status_code: Optional[int], body: str = ""):
        if status_code is None:
            message = "Gemini API unreachable"
        else:
            message = f"Gemini API Error ({status_code})"
        super().__init__(message, detail=body)
        self.status_code = status_code
        self.body = body

    @property
    def retriable(self) -> bool:
        # Network failures, throttling and server-side errors may succeed on a second try
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class MalformedResponseError(LLMError):
    """The backend body is not the expected JSON envelope."""

    def __init__(self, body: str):
        super().__init__("Could not parse Gemini response. See logs.", detail=body)
        self.body = body


class EmptyResultError(LLMError):
    """The envelope parsed but holds no candidate text (safety filter, quota)."""

    def __init__(self, reason: Optional[str] = None):
        super().__init__(
            "Gemini returned an empty result. Check Safety Filters or Quota.",
            detail=reason,
        )
        self.reason = reason


# -----------------------------------------------------------------------------
# Payload / executor
# -----------------------------------------------------------------------------


class ActionSpecParseError(AssistantError):
    """The generate-and-persist payload is not a JSON object."""

    def __init__(self, raw_text: str, excerpt_length: int = 50, detail: Optional[str] = None):
        excerpt = raw_text[:excerpt_length]
        super().__init__(f"AI returned invalid JSON. Raw response: {excerpt}...", detail=detail)
        self.excerpt = excerpt


class QueryExecutionError(AssistantError):
    """The query engine rejected the generated SQL."""

    def __init__(self, query: str, reason: str):
        super().__init__(f"Query Error. Gemini suggested: {query} | Details: {reason}")
        self.query = query
        self.reason = reason


class ActionCreationError(AssistantError):
    """The persistence backend rejected the saved query definition."""

    def __init__(self, reason: str):
        super().__init__(f"The datastore rejected the search criteria: {reason}")
        self.reason = reason


class SynthesisError(AssistantError):
    """The summary call failed after the query itself succeeded."""

    def __init__(self, cause: AssistantError):
        super().__init__(
            f"The query ran but the summary could not be generated: {cause.message}",
            detail=cause.detail,
        )
        self.cause = cause
