from fastapi import APIRouter, status

from ledgerchat.api.dependencies import pipeline_dep
from ledgerchat.core import schemas

router = APIRouter(prefix="/assistant", tags=["Assistant"])


# Available flows (no credential needed)
@router.get("", status_code=status.HTTP_200_OK)
async def list_flows():
    return {
        "flows": [
            {
                "flow": schemas.Flow.QUERY.value,
                "path": "/assistant/query",
                "description": "Answer a question from the ledger data",
            },
            {
                "flow": schemas.Flow.ACTION.value,
                "path": "/assistant/saved-queries",
                "description": "Create and save a query definition",
            },
            {
                "flow": schemas.Flow.ADVICE.value,
                "path": "/assistant/advise",
                "description": "Get help designing a saved query",
            },
        ]
    }


# Query-and-summarize
@router.post(
    "/query",
    response_model=schemas.AnswerEnvelope,
    status_code=status.HTTP_200_OK,
)
async def ask_question(request: schemas.AskRequest, pipeline: pipeline_dep):
    return await pipeline.answer_question(request.prompt)


# Generate-and-persist
@router.post(
    "/saved-queries",
    response_model=schemas.AnswerEnvelope,
    status_code=status.HTTP_200_OK,
)
async def create_saved_query(request: schemas.AskRequest, pipeline: pipeline_dep):
    return await pipeline.create_saved_query(request.prompt)


# Conversational guidance; the caller sends the whole history every turn
@router.post(
    "/advise",
    response_model=schemas.AnswerEnvelope,
    status_code=status.HTTP_200_OK,
)
async def advise(request: schemas.AdviceRequest, pipeline: pipeline_dep):
    return await pipeline.advise(request.prompt, request.history)
