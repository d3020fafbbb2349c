from fastapi import APIRouter
from ledgerchat.api.endpoints import assistant, saved_queries

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(assistant.router)
api_router.include_router(saved_queries.router)
