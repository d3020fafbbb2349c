"""Request-scoped values that flow between the pipeline stages."""

from typing import Any, Dict, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledgerchat.core.schemas import ChatTurn

TITLE_PREFIX = "AI Generated: "


class Prompt(BaseModel):
    system_instructions: str = ""
    user_text: str
    prior_turns: Tuple[ChatTurn, ...] = ()

    model_config = ConfigDict(frozen=True)

    def render(self) -> str:
        """Text of the current turn: the fixed contract followed by the request."""
        if not self.system_instructions:
            return self.user_text
        return f"{self.system_instructions}\n\nRequest: {self.user_text}"


class ModelResponse(BaseModel):
    text: str = Field(min_length=1)


class ActionSpec(BaseModel):
    """
    Saved query definition produced by the generate-and-persist flow.

    Filters use the expression form ``[field, operator, value, ...]`` joined
    by ``"AND"``/``"OR"`` strings; columns are field names or
    ``{"name": ...}`` objects.
    """

    record_type: str = Field(alias="type", min_length=1)
    filters: List[Union[str, List[Any]]]
    columns: List[Union[str, Dict[str, Any]]] = Field(min_length=1)
    title: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    @field_validator("record_type")
    @classmethod
    def normalize_record_type(cls, value: str) -> str:
        return value.lower()

    @field_validator("title")
    @classmethod
    def ensure_prefix(cls, value: str) -> str:
        if value.startswith(TITLE_PREFIX):
            return value
        return TITLE_PREFIX + value


class RowSet(BaseModel):
    query: str
    rows: List[Dict[str, Any]]


class PersistedObjectRef(BaseModel):
    id: str
    title: str
    location: str

    @field_validator("location")
    @classmethod
    def host_relative(cls, value: str) -> str:
        if not value.startswith("/") or value.startswith("//"):
            raise ValueError(f"location must be a host-relative path, got {value!r}")
        return value


RawQueryText = str
SanitizedPayload = Union[RawQueryText, ActionSpec]
ExecutionResult = Union[RowSet, PersistedObjectRef]
