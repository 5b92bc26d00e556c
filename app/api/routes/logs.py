# app/api/routes/logs.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db
from app.schemas.attention_log import AttentionLogCreate, AttentionLogCreated, MeetingAnalytics
from app.services.log_analytics import compute_meeting_analytics, record_attention_log

router = APIRouter(prefix="/logs", tags=["Attention Logs"])


@router.post(
    "/attention",
    response_model=AttentionLogCreated,
    status_code=HTTPStatus.CREATED,
    summary="Store one raw attention event",
    description=(
        "Append a detector event to the raw attention log used for ad-hoc "
        "analytics. This log is independent of the meeting aggregate and "
        "does not affect reconciled statistics."
    ),
    responses={
        400: {"description": "Attention state is not a recognized state."},
        404: {"description": "Referenced meeting does not exist."},
    },
)
async def store_attention_log(
    payload: AttentionLogCreate,
    db: AsyncSession = Depends(get_db),
) -> AttentionLogCreated:
    try:
        await record_attention_log(db, payload)
    except LookupError as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc))

    return AttentionLogCreated(success=True, message="Log stored successfully")


@router.get(
    "/meetings/{meeting_id}/analytics",
    response_model=MeetingAnalytics,
    summary="Analytics computed from the raw attention log",
    description=(
        "Overview, per-participant data and a per-minute time series built "
        "from every logged event of the meeting.\n\n"
        "- State counts are numbers of events, not seconds.\n"
        "- Time series values are the share (%) of events per state in each minute."
    ),
    responses={404: {"description": "No meeting exists with the given ID."}},
)
async def meeting_log_analytics(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    db: AsyncSession = Depends(get_db),
) -> MeetingAnalytics:
    try:
        return await compute_meeting_analytics(db, meeting_id)
    except LookupError as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))
