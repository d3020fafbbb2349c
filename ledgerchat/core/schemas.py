from datetime import datetime
from typing import Optional, List, Dict, Any, Union
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_PROMPT_LENGTH = 4000


# =========================
# Enums
# =========================
class ChatRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Flow(str, Enum):
    QUERY = "query"  # query-and-summarize
    ACTION = "action"  # generate-and-persist
    ADVICE = "advice"  # single-call conversational guidance


# =========================
# ASSISTANT REQUESTS
# =========================
class AskRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=MAX_PROMPT_LENGTH)

    model_config = ConfigDict(str_strip_whitespace=True)


class ChatTurn(BaseModel):
    role: ChatRole
    text: str

    model_config = ConfigDict(frozen=True)


class AdviceRequest(AskRequest):
    # Rebuilt by the caller from its own storage on every turn, oldest first
    history: List[ChatTurn] = []


# =========================
# ASSISTANT RESPONSE
# =========================
class AnswerEnvelope(BaseModel):
    """
    The single response shape of every assistant call.

    Exactly one of `answer` (may hold light HTML) or `error` is populated.
    `diagnostic` carries the executed SQL or the saved query location.
    """

    answer: Optional[str] = None
    diagnostic: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def answer_xor_error(self) -> "AnswerEnvelope":
        if bool(self.answer) == bool(self.error):
            raise ValueError("exactly one of answer or error must be set")
        if self.error and self.diagnostic:
            raise ValueError("diagnostic is only reported with an answer")
        return self

    @classmethod
    def success(cls, answer: str, diagnostic: Optional[str] = None) -> "AnswerEnvelope":
        return cls(answer=answer, diagnostic=diagnostic)

    @classmethod
    def failure(cls, error: str) -> "AnswerEnvelope":
        return cls(error=error)


# =========================
# SAVED QUERIES
# =========================
class SavedQueryResponse(BaseModel):
    id: int
    title: str
    record_type: str
    filters: List[Union[str, List[Any]]]
    columns: List[Union[str, Dict[str, Any]]]
    source_prompt: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
