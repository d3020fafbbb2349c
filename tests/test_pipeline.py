import logging

import pytest
from pydantic import ValidationError

from ledgerchat.assistant.backends import QueryRejectedError, SavedQueryRejectedError
from ledgerchat.assistant.errors import MalformedResponseError, TransportError
from ledgerchat.assistant.executor import ActionExecutor, QueryExecutor
from ledgerchat.assistant.pipeline import (
    UNEXPECTED_ERROR,
    AssistantPipeline,
    PipelineLogger,
    PipelineStage,
)
from ledgerchat.assistant.synthesizer import Synthesizer
from ledgerchat.core.schemas import AnswerEnvelope, ChatRole, ChatTurn, Flow


def assert_single_outcome(envelope: AnswerEnvelope):
    assert bool(envelope.answer) != bool(envelope.error)


# =========================
# Query-and-summarize
# =========================
@pytest.mark.asyncio
async def test_question_is_answered_from_rows(pipeline, llm, engine):
    llm.queue(
        "```sql\nSELECT company_name, balance\nFROM customers\nORDER BY balance DESC\n```",
        "<b>Acme</b> has the highest balance.",
    )
    engine.rows = [{"company_name": "Acme", "balance": 900.0}]

    envelope = await pipeline.answer_question("Who owes us the most?")

    sql = "SELECT company_name, balance FROM customers ORDER BY balance DESC"
    assert envelope.answer == "<b>Acme</b> has the highest balance."
    assert envelope.diagnostic == sql
    assert envelope.error is None
    assert engine.queries == [sql]
    assert llm.calls == 2
    assert llm.prompts[0].user_text == "Who owes us the most?"
    assert "customers" in llm.prompts[0].system_instructions


@pytest.mark.asyncio
async def test_california_customers_are_listed(pipeline, llm, engine):
    llm.queue(
        "```sql\nSELECT company_name, state\nFROM customers\nWHERE state = 'CA'\n```",
        "You have <b>3</b> customers in California: Acme, Globex and Initech.",
    )
    engine.rows = [
        {"company_name": "Acme", "state": "CA"},
        {"company_name": "Globex", "state": "CA"},
        {"company_name": "Initech", "state": "CA"},
    ]

    envelope = await pipeline.answer_question("list customers in California")

    sql = "SELECT company_name, state FROM customers WHERE state = 'CA'"
    assert envelope.answer == "You have <b>3</b> customers in California: Acme, Globex and Initech."
    assert envelope.diagnostic == sql
    assert envelope.error is None
    assert engine.queries == [sql]
    assert llm.calls == 2
    summary_request = llm.prompts[1].render()
    assert '{"company_name":"Initech","state":"CA"}' in summary_request
    assert "Summarize it to answer: list customers in California" in summary_request


@pytest.mark.asyncio
async def test_zero_rows_answer_costs_one_model_call(pipeline, llm, engine):
    llm.queue("SELECT * FROM transactions WHERE total > 1000000")

    envelope = await pipeline.answer_question("Any huge invoices?")

    assert envelope.answer.startswith("I couldn't find any records for that request.")
    assert "total &gt; 1000000" in envelope.answer
    assert envelope.diagnostic == "SELECT * FROM transactions WHERE total > 1000000"
    assert llm.calls == 1


@pytest.mark.asyncio
async def test_rejected_query_reports_attempted_sql(pipeline, llm, engine):
    llm.queue("SELECT nope FROM customers")
    engine.error = QueryRejectedError('column "nope" does not exist')

    envelope = await pipeline.answer_question("show nope")

    assert envelope.answer is None
    assert envelope.diagnostic is None
    assert envelope.error == (
        'Query Error. Gemini suggested: SELECT nope FROM customers | Details: column "nope" does not exist'
    )


@pytest.mark.asyncio
async def test_summary_failure_is_not_swallowed(pipeline, llm, engine):
    llm.queue("SELECT 1 AS n", TransportError(500, "internal"))
    engine.rows = [{"n": 1}]

    envelope = await pipeline.answer_question("one?")

    assert envelope.error == (
        "The query ran but the summary could not be generated: Gemini API Error (500)"
    )
    assert envelope.answer is None


@pytest.mark.asyncio
async def test_generation_failure_stops_before_execution(pipeline, llm, engine):
    llm.queue(MalformedResponseError("<html>"))

    envelope = await pipeline.answer_question("anything")

    assert envelope.error == "Could not parse Gemini response. See logs."
    assert engine.queries == []


# =========================
# Generate-and-persist
# =========================
@pytest.mark.asyncio
async def test_saved_query_is_created_and_linked(pipeline, llm, store):
    llm.queue(
        '```json\n{"type": "transaction", "filters": [["status", "is", "open"]], '
        '"columns": ["tran_id", "total"], "title": "Open transactions"}\n```'
    )

    envelope = await pipeline.create_saved_query("Save a search of open transactions")

    assert store.saved[0].title == "AI Generated: Open transactions"
    assert store.prompts == ["Save a search of open transactions"]
    assert envelope.diagnostic == "/saved-queries/1"
    assert "<b>AI Generated: Open transactions</b>" in envelope.answer
    assert "href='/saved-queries/1'" in envelope.answer
    assert llm.calls == 1


@pytest.mark.asyncio
async def test_unparseable_json_shows_bounded_excerpt(pipeline, llm, store):
    raw = "Sure! Here is the search you asked for, with filters on status and a nice title " * 3
    llm.queue(raw)

    envelope = await pipeline.create_saved_query("save something")

    prefix = "AI returned invalid JSON. Raw response: "
    assert envelope.error.startswith(prefix)
    assert envelope.error.endswith("...")
    excerpt = envelope.error[len(prefix):-3]
    assert len(excerpt) == 50
    assert excerpt == raw.strip()[:50]
    assert store.saved == []


@pytest.mark.asyncio
async def test_json_array_is_not_a_saved_query(pipeline, llm, store):
    llm.queue('["customer"]')

    envelope = await pipeline.create_saved_query("save customers")

    assert envelope.error == 'AI returned invalid JSON. Raw response: ["customer"]...'
    assert store.saved == []


@pytest.mark.asyncio
async def test_store_rejection_becomes_error(pipeline, llm, store):
    llm.queue('{"type": "vendor", "filters": [], "columns": ["id"], "title": "Vendors"}')
    store.error = SavedQueryRejectedError("Unknown record type 'vendor'")

    envelope = await pipeline.create_saved_query("save vendors")

    assert envelope.error == "The datastore rejected the search criteria: Unknown record type 'vendor'"


# =========================
# Advice
# =========================
@pytest.mark.asyncio
async def test_advice_sends_recent_history(llm, engine, store):
    pipeline = AssistantPipeline(
        llm=llm,
        credential="key",
        synthesizer=Synthesizer(llm),
        query_executor=QueryExecutor(engine),
        action_executor=ActionExecutor(store),
        max_history_turns=2,
    )
    history = [
        ChatTurn(role=ChatRole.USER, text="first question"),
        ChatTurn(role=ChatRole.ASSISTANT, text="first answer"),
        ChatTurn(role=ChatRole.USER, text="second question"),
        ChatTurn(role=ChatRole.ASSISTANT, text="second answer"),
    ]
    llm.queue("  Use the transaction record type filtered on status.  ")

    envelope = await pipeline.advise("and for open ones?", history)

    assert envelope.answer == "Use the transaction record type filtered on status."
    assert envelope.diagnostic is None
    assert [turn.text for turn in llm.prompts[0].prior_turns] == ["second question", "second answer"]
    assert engine.queries == []
    assert store.saved == []


# =========================
# Credential handling
# =========================
@pytest.mark.asyncio
@pytest.mark.parametrize("credential", [None, "", "   "])
@pytest.mark.parametrize("flow", list(Flow))
async def test_missing_credential_makes_no_model_call(llm, engine, store, credential, flow):
    pipeline = AssistantPipeline(
        llm=llm,
        credential=credential,
        synthesizer=Synthesizer(llm),
        query_executor=QueryExecutor(engine),
        action_executor=ActionExecutor(store),
    )

    envelope = await pipeline.run(flow, "hello")

    assert envelope.error == "Missing API Key (GEMINI_API_KEY) in configuration."
    assert llm.calls == 0


@pytest.mark.asyncio
async def test_credential_is_redacted_from_errors(pipeline, llm, engine, api_key):
    llm.queue("SELECT 1")
    engine.error = QueryRejectedError(f"driver echoed key={api_key}")

    envelope = await pipeline.answer_question("one")

    assert api_key not in envelope.error
    assert "key=[REDACTED]" in envelope.error


@pytest.mark.asyncio
async def test_unexpected_failure_still_returns_envelope(pipeline, llm, engine):
    llm.queue("SELECT 1")
    engine.error = RuntimeError("driver crashed")

    envelope = await pipeline.answer_question("one")

    assert envelope.error == UNEXPECTED_ERROR
    assert "driver crashed" not in envelope.error


@pytest.mark.asyncio
async def test_every_outcome_has_exactly_one_of_answer_or_error(pipeline, llm, engine):
    llm.queue("SELECT 1", "one row", "SELECT 1", TransportError(429, "slow down"))
    engine.rows = [{"n": 1}]

    assert_single_outcome(await pipeline.answer_question("first"))
    assert_single_outcome(await pipeline.answer_question("second"))


def test_envelope_rejects_answer_and_error_together():
    with pytest.raises(ValidationError):
        AnswerEnvelope(answer="yes", error="no")
    with pytest.raises(ValidationError):
        AnswerEnvelope()
    with pytest.raises(ValidationError):
        AnswerEnvelope(error="failed", diagnostic="SELECT 1")


def test_pipeline_logger_summarizes_run(caplog):
    run_log = PipelineLogger(Flow.QUERY, request_id="abc")
    run_log.log(PipelineStage.START, "request received")
    run_log.log(PipelineStage.ERROR, "boom", level="error")

    with caplog.at_level(logging.INFO, logger="ledgerchat"):
        summary = run_log.finish("error")

    assert "[query abc] finished (error)" in caplog.text
    assert "after 2 stage log(s)" in caplog.text
    assert summary["total_logs"] == 2
    assert summary["request_id"] == "abc"
    assert summary["flow"] == "query"
    assert [entry["stage"] for entry in summary["logs"]] == ["start", "error"]
    assert summary["logs"][1]["level"] == "error"


@pytest.mark.asyncio
async def test_each_run_logs_one_summary_line(pipeline, llm, caplog):
    llm.queue("SELECT 1", MalformedResponseError("<html>"))

    with caplog.at_level(logging.INFO, logger="ledgerchat"):
        await pipeline.answer_question("no rows")
        await pipeline.answer_question("broken model")

    finished = [r.getMessage() for r in caplog.records if "] finished (" in r.getMessage()]
    assert len(finished) == 2
    assert "finished (answer)" in finished[0]
    assert "finished (error)" in finished[1]
