# app/api/routes/internal.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.ingestion import get_ingestion_state
from app.api.dependencies.internal_auth import verify_internal_api_key
from app.db.session import get_db
from app.schemas.attention import OverallStats
from app.services.attention_ingestion import IngestionStateTable
from app.services.stats_reconciler import reconcile_meeting_stats

router = APIRouter(
    prefix="/internal",
    tags=["Internal"],
    dependencies=[Depends(verify_internal_api_key)],
)


@router.post(
    "/meetings/{meeting_id}/reconcile",
    response_model=OverallStats,
    status_code=HTTPStatus.OK,
    summary="Force a stats reconciliation for a meeting",
    description=(
        "Recomputes OverallStats from the current participant data and "
        "persists the sanitized, drift-corrected buckets.\n\n"
        "Intended for schedulers and operators; protected via the "
        "`X-Internal-Api-Key` header when configured."
    ),
    responses={
        401: {"description": "Missing or invalid internal API key (if configured)."},
        404: {"description": "No meeting exists with the given ID."},
        503: {"description": "The meeting could not be read from storage."},
    },
)
async def trigger_reconciliation(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    db: AsyncSession = Depends(get_db),
) -> OverallStats:
    try:
        stats = await reconcile_meeting_stats(db, meeting_id)
    except LookupError:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail=f"Meeting with id {meeting_id} not found.",
        )
    if stats is None:
        raise HTTPException(
            status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            detail=f"Statistics for meeting {meeting_id} are temporarily unavailable.",
        )
    return stats


@router.delete(
    "/meetings/{meeting_id}/ingestion-state",
    status_code=HTTPStatus.NO_CONTENT,
    summary="Discard the in-memory ingestion state of a meeting",
    description=(
        "Drops the last-known-state map of a meeting, so the next signal "
        "from every participant is recorded as a transition."
    ),
)
async def discard_ingestion_state(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    state_table: IngestionStateTable = Depends(get_ingestion_state),
) -> None:
    state_table.discard(meeting_id)
