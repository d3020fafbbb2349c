from typing import List

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import select

from ledgerchat.api.dependencies import db_dep
from ledgerchat.core import models, schemas

router = APIRouter(prefix="/saved-queries", tags=["Saved queries"])


@router.get(
    "",
    response_model=List[schemas.SavedQueryResponse],
    status_code=status.HTTP_200_OK,
)
async def list_saved_queries(db: db_dep, limit: int = Query(50, ge=1, le=200)):
    query = (
        select(models.SavedQuery)
        .order_by(models.SavedQuery.created_at.desc(), models.SavedQuery.id.desc())
        .limit(limit)
    )
    result = await db.execute(query)
    return result.scalars().all()


# Target of the links produced by the generate-and-persist flow
@router.get(
    "/{query_id}",
    response_model=schemas.SavedQueryResponse,
    status_code=status.HTTP_200_OK,
    name="get_saved_query",
)
async def get_saved_query(query_id: int, db: db_dep):
    saved = await db.get(models.SavedQuery, query_id)
    if not saved:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Saved query not found")
    return saved
