"""
PIPELINE - orchestrate one assistant request

Flow:
1. START             check the credential (no model call without one)
2. GENERATE_PAYLOAD  ask the model for SQL / a saved query JSON / advice
3. SANITIZE          strip fences, tags and line breaks
4. PARSE             JSON payloads only
5. EXECUTE           run the SQL or persist the saved query
6. SYNTHESIZE        summarize rows or template the answer
7. RESPOND           build the AnswerEnvelope

Every stage returns a StageResult. The first failed one moves the run to ERROR
and becomes the envelope's error; nothing is retried at this level.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ledgerchat.assistant import prompts
from ledgerchat.assistant.errors import (
    ActionSpecParseError,
    AssistantError,
    ConfigurationError,
    EmptyResultError,
    redact,
)
from ledgerchat.assistant.executor import ActionExecutor, QueryExecutor
from ledgerchat.assistant.llm import LLMClient
from ledgerchat.assistant.sanitizer import PayloadKind, sanitize
from ledgerchat.assistant.synthesizer import Synthesizer
from ledgerchat.assistant.types import ExecutionResult, PersistedObjectRef, Prompt, RowSet
from ledgerchat.core.schemas import AnswerEnvelope, ChatTurn, Flow

logger = logging.getLogger(__name__)

UNEXPECTED_ERROR = "Unexpected error while handling the request. See server logs."


class PipelineStage(Enum):
    """Pipeline states."""

    START = "start"
    GENERATE_PAYLOAD = "generate_payload"
    SANITIZE = "sanitize"
    PARSE = "parse"
    EXECUTE = "execute"
    SYNTHESIZE = "synthesize"
    RESPOND = "respond"
    ERROR = "error"


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage: a value or the error that stopped the run."""

    stage: PipelineStage
    value: Any = None
    error: Optional[AssistantError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def completed(cls, stage: PipelineStage, value: Any) -> "StageResult":
        return cls(stage=stage, value=value)

    @classmethod
    def failed(cls, stage: PipelineStage, error: AssistantError) -> "StageResult":
        return cls(stage=stage, error=error)


@dataclass(frozen=True)
class FlowConfig:
    """What differs between flows. Everything else is the same pipeline."""

    flow: Flow
    instructions: Callable[[], str]
    payload_kind: Optional[PayloadKind]  # None: the model text is the answer
    parse_json: bool = False


FLOWS: Dict[Flow, FlowConfig] = {
    Flow.QUERY: FlowConfig(Flow.QUERY, prompts.query_instructions, PayloadKind.QUERY),
    Flow.ACTION: FlowConfig(
        Flow.ACTION, prompts.action_instructions, PayloadKind.JSON, parse_json=True
    ),
    Flow.ADVICE: FlowConfig(Flow.ADVICE, lambda: prompts.ADVICE_INSTRUCTIONS, None),
}


class PipelineLogger:
    """Stage log of a single assistant run."""

    def __init__(self, flow: Flow, request_id: Optional[str] = None):
        """
        Args:
            flow: Flow being run
            request_id: Correlation id, generated when omitted
        """
        self.flow = flow
        self.request_id = request_id or uuid.uuid4().hex[:12]
        self.start_time = datetime.now()
        self.logs: List[Dict[str, Any]] = []

    def log(self, stage: PipelineStage, message: str, level: str = "info"):
        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "stage": stage.value,
            "message": message,
            "level": level,
            "elapsed_seconds": (datetime.now() - self.start_time).total_seconds(),
        }
        self.logs.append(log_entry)

        line = f"[{self.flow.value} {self.request_id}] {stage.value}: {message}"
        if level == "error":
            logger.error(line)
        elif level == "warning":
            logger.warning(line)
        else:
            logger.info(line)

    def get_summary(self) -> Dict[str, Any]:
        end_time = datetime.now()
        return {
            "request_id": self.request_id,
            "flow": self.flow.value,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
            "total_logs": len(self.logs),
            "logs": self.logs,
        }

    def finish(self, outcome: str) -> Dict[str, Any]:
        """Log the run total once and return the summary."""
        summary = self.get_summary()
        logger.info(
            f"[{self.flow.value} {self.request_id}] finished ({outcome}) in "
            f"{summary['duration_seconds']:.3f}s after {summary['total_logs']} stage log(s)"
        )
        return summary


@dataclass
class _Run:
    config: FlowConfig
    user_text: str
    history: Tuple[ChatTurn, ...]
    log: PipelineLogger


Step = Callable[[_Run, Any], Awaitable[Any]]


class AssistantPipeline:
    def __init__(
        self,
        llm: LLMClient,
        credential: Optional[str],
        synthesizer: Synthesizer,
        query_executor: Optional[QueryExecutor] = None,
        action_executor: Optional[ActionExecutor] = None,
        excerpt_length: int = 50,
        max_history_turns: int = 20,
    ):
        """
        Args:
            llm: Client used for payload generation (the synthesizer has its own)
            credential: LLM API key, None or blank when not configured
            synthesizer: Builds the answer from an execution result
            query_executor: Required by the query flow
            action_executor: Required by the saved query flow
            excerpt_length: Characters of raw output shown for unparseable JSON
            max_history_turns: Most recent prior turns sent with the advice flow
        """
        self.llm = llm
        self.credential = (credential or "").strip() or None
        self.synthesizer = synthesizer
        self.query_executor = query_executor
        self.action_executor = action_executor
        self.excerpt_length = excerpt_length
        self.max_history_turns = max_history_turns

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def answer_question(self, user_text: str) -> AnswerEnvelope:
        """Query-and-summarize flow."""
        return await self.run(Flow.QUERY, user_text)

    async def create_saved_query(self, user_text: str) -> AnswerEnvelope:
        """Generate-and-persist flow."""
        return await self.run(Flow.ACTION, user_text)

    async def advise(self, user_text: str, history: Sequence[ChatTurn] = ()) -> AnswerEnvelope:
        return await self.run(Flow.ADVICE, user_text, history)

    async def run(
        self, flow: Flow, user_text: str, history: Sequence[ChatTurn] = ()
    ) -> AnswerEnvelope:
        config = FLOWS[flow]
        turns = tuple(history)[-self.max_history_turns:] if self.max_history_turns > 0 else ()

        run = _Run(config=config, user_text=user_text, history=turns, log=PipelineLogger(flow))
        run.log.log(PipelineStage.START, f"request received ({len(user_text)} chars)")

        value: Any = None
        for stage, step in self._steps(config):
            result = await self._attempt(stage, step, run, value)
            if not result.ok:
                return self._fail(run, result)
            value = result.value

        answer, diagnostic = value
        run.log.log(PipelineStage.RESPOND, "answer ready")
        run.log.finish("answer")
        return AnswerEnvelope.success(answer, diagnostic)

    # ------------------------------------------------------------------
    # Run loop helpers
    # ------------------------------------------------------------------

    def _steps(self, config: FlowConfig) -> List[Tuple[PipelineStage, Step]]:
        steps: List[Tuple[PipelineStage, Step]] = [
            (PipelineStage.START, self._start),
            (PipelineStage.GENERATE_PAYLOAD, self._generate),
        ]
        if config.payload_kind is None:
            steps.append((PipelineStage.RESPOND, self._reply))
            return steps

        steps.append((PipelineStage.SANITIZE, self._sanitize))
        if config.parse_json:
            steps.append((PipelineStage.PARSE, self._parse))
        steps.append((PipelineStage.EXECUTE, self._execute))
        steps.append((PipelineStage.SYNTHESIZE, self._synthesize))
        return steps

    async def _attempt(self, stage: PipelineStage, step: Step, run: _Run, value: Any) -> StageResult:
        try:
            return StageResult.completed(stage, await step(run, value))
        except AssistantError as error:
            return StageResult.failed(stage, error)
        except Exception as error:
            # Boundary of the request: anything unforeseen still becomes one envelope
            logger.exception(f"[{run.config.flow.value} {run.log.request_id}] {stage.value} crashed")
            return StageResult.failed(stage, AssistantError(UNEXPECTED_ERROR, detail=repr(error)))

    def _fail(self, run: _Run, result: StageResult) -> AnswerEnvelope:
        error = result.error
        detail = f" | detail: {error.detail}" if error.detail else ""
        run.log.log(
            PipelineStage.ERROR,
            redact(f"{result.stage.value} failed: {error.message}{detail}", self.credential),
            level="error",
        )
        run.log.finish("error")
        return AnswerEnvelope.failure(redact(error.message, self.credential))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _start(self, run: _Run, _: Any) -> None:
        if not self.credential:
            raise ConfigurationError("Missing API Key (GEMINI_API_KEY) in configuration.")
        if run.config.flow is Flow.QUERY and self.query_executor is None:
            raise ConfigurationError("No query engine configured.")
        if run.config.flow is Flow.ACTION and self.action_executor is None:
            raise ConfigurationError("No saved query store configured.")

    async def _generate(self, run: _Run, _: Any) -> str:
        prompt = Prompt(
            system_instructions=run.config.instructions(),
            user_text=run.user_text,
            prior_turns=run.history,
        )
        response = await self.llm.generate(prompt, self.credential)
        run.log.log(PipelineStage.GENERATE_PAYLOAD, f"model returned {len(response.text)} chars")
        return response.text

    async def _sanitize(self, run: _Run, raw: str) -> str:
        payload = sanitize(raw, run.config.payload_kind)
        run.log.log(PipelineStage.SANITIZE, f"payload: {payload}")
        return payload

    async def _parse(self, run: _Run, payload: str) -> Dict[str, Any]:
        try:
            parsed = json.loads(payload)
        except ValueError as error:
            raise ActionSpecParseError(payload, self.excerpt_length, detail=str(error)) from error

        if not isinstance(parsed, dict):
            raise ActionSpecParseError(
                payload, self.excerpt_length, detail=f"expected an object, got {type(parsed).__name__}"
            )
        return parsed

    async def _execute(self, run: _Run, payload: Any) -> ExecutionResult:
        if run.config.flow is Flow.QUERY:
            result = await self.query_executor.execute(payload)
            run.log.log(PipelineStage.EXECUTE, f"{len(result.rows)} row(s)")
        else:
            result = await self.action_executor.execute(payload, source_prompt=run.user_text)
            run.log.log(PipelineStage.EXECUTE, f"saved query {result.id} at {result.location}")
        return result

    async def _synthesize(self, run: _Run, result: Any) -> Tuple[str, Optional[str]]:
        answer = await self.synthesizer.summarize(result, run.user_text, self.credential)

        diagnostic = None
        if isinstance(result, RowSet):
            diagnostic = result.query
        elif isinstance(result, PersistedObjectRef):
            diagnostic = result.location
        return answer, diagnostic

    async def _reply(self, run: _Run, text: str) -> Tuple[str, Optional[str]]:
        answer = text.strip()
        if not answer:
            raise EmptyResultError("blank advice")
        return answer, None
