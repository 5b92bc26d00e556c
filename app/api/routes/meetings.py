# app/api/routes/meetings.py
from http import HTTPStatus

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.ingestion import get_ingestion_service, get_ingestion_state
from app.db.session import get_db
from app.schemas.attention import (
    AttentionIngestRequest,
    AttentionIngestResponse,
    MeetingCreate,
    MeetingEnd,
    MeetingRead,
    OverallStats,
    ParticipantLeave,
    ParticipantRead,
)
from app.services.attention_ingestion import AttentionIngestionService, IngestionStateTable
from app.services.meeting_lifecycle import (
    build_meeting_read,
    create_meeting,
    end_meeting,
    get_meeting,
    record_participant_leave,
)
from app.services.stats_reconciler import STATE_KEYS, reconcile_meeting_stats

router = APIRouter(prefix="/meetings", tags=["Meetings"])


def _not_found(meeting_id: int) -> HTTPException:
    return HTTPException(
        status_code=HTTPStatus.NOT_FOUND,
        detail=f"Meeting with id {meeting_id} not found.",
    )


def _stats_unavailable(meeting_id: int) -> HTTPException:
    return HTTPException(
        status_code=HTTPStatus.SERVICE_UNAVAILABLE,
        detail=f"Statistics for meeting {meeting_id} are temporarily unavailable.",
    )


@router.post(
    "",
    response_model=MeetingRead,
    status_code=HTTPStatus.CREATED,
    summary="Start a new monitored meeting",
    description=(
        "Create the aggregate for a live session. Participants are registered "
        "lazily by the first valid attention signal carrying their user id.\n\n"
        "`room_id` must be unique."
    ),
    responses={
        400: {
            "description": "A meeting with the same room_id already exists.",
            "content": {
                "application/json": {
                    "example": {"detail": "Meeting with room_id 'room-42' already exists."}
                }
            },
        },
    },
)
async def start_meeting(
    payload: MeetingCreate,
    db: AsyncSession = Depends(get_db),
) -> MeetingRead:
    try:
        meeting = await create_meeting(db, payload)
    except ValueError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc))
    return await build_meeting_read(db, meeting)


@router.get(
    "/{meeting_id}",
    response_model=MeetingRead,
    summary="Get a meeting with participants and stored statistics",
    description=(
        "Return the meeting, each participant's accumulated seconds per "
        "attention state and their recent transitions, and the statistics "
        "computed by the last reconciliation (not recomputed here)."
    ),
    responses={404: {"description": "No meeting exists with the given ID."}},
)
async def read_meeting(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    db: AsyncSession = Depends(get_db),
) -> MeetingRead:
    try:
        meeting = await get_meeting(db, meeting_id)
    except LookupError:
        raise _not_found(meeting_id)
    return await build_meeting_read(db, meeting)


@router.post(
    "/{meeting_id}/attention",
    response_model=AttentionIngestResponse,
    status_code=HTTPStatus.OK,
    summary="Ingest one batch of attention signals",
    description=(
        "Accepts a mapping of userId to raw attention signal for one meeting.\n\n"
        "The call never fails with an HTTP error: `success=false` means the "
        "sample was dropped (memory backpressure, unknown meeting or storage "
        "failure) and the caller should simply continue with the next sample. "
        "Unrecognized per-user signals are skipped silently."
    ),
    responses={
        200: {
            "description": "Sample processed or dropped.",
            "content": {"application/json": {"example": {"success": True}}},
        },
    },
)
async def ingest_attention(
    payload: AttentionIngestRequest,
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    db: AsyncSession = Depends(get_db),
    service: AttentionIngestionService = Depends(get_ingestion_service),
) -> AttentionIngestResponse:
    success = await service.ingest(
        db,
        meeting_id=meeting_id,
        signals=payload.signals,
        timestamp=payload.timestamp,
    )
    return AttentionIngestResponse(success=success)


@router.get(
    "/{meeting_id}/stats",
    response_model=OverallStats,
    summary="Recompute and return meeting statistics",
    description=(
        "Runs a full reconciliation from the current participant data "
        "(concurrency peak, duration, per-state totals, drift correction) "
        "and returns the result. If reconciliation fails internally, the "
        "previously stored statistics are returned unchanged."
    ),
    responses={
        404: {"description": "No meeting exists with the given ID."},
        503: {"description": "The meeting could not be read from storage."},
    },
)
async def meeting_stats(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    db: AsyncSession = Depends(get_db),
) -> OverallStats:
    try:
        stats = await reconcile_meeting_stats(db, meeting_id)
    except LookupError:
        raise _not_found(meeting_id)
    if stats is None:
        raise _stats_unavailable(meeting_id)
    return stats


@router.post(
    "/{meeting_id}/end",
    response_model=MeetingRead,
    summary="End a meeting",
    description=(
        "Sets the end time (first call only), clears the active flag, "
        "discards the meeting's in-memory ingestion state and runs a final "
        "reconciliation. Late signals are still accepted afterwards."
    ),
    responses={404: {"description": "No meeting exists with the given ID."}},
)
async def finish_meeting(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    payload: MeetingEnd | None = None,
    db: AsyncSession = Depends(get_db),
    state_table: IngestionStateTable = Depends(get_ingestion_state),
) -> MeetingRead:
    try:
        meeting, _ = await end_meeting(
            db,
            meeting_id,
            state_table,
            end_time=payload.end_time if payload else None,
        )
    except LookupError:
        raise _not_found(meeting_id)
    return await build_meeting_read(db, meeting)


@router.post(
    "/{meeting_id}/participants/{user_id}/leave",
    response_model=ParticipantRead,
    summary="Record that a participant left",
    description="Leave times feed the concurrency peak computed by reconciliation.",
    responses={404: {"description": "Unknown meeting or participant."}},
)
async def participant_leave(
    meeting_id: int = Path(..., description="Numeric ID of the meeting.", ge=1, example=1),
    user_id: str = Path(..., description="Participant user id.", example="socket-7f3a"),
    payload: ParticipantLeave | None = None,
    db: AsyncSession = Depends(get_db),
) -> ParticipantRead:
    try:
        participant = await record_participant_leave(
            db,
            meeting_id,
            user_id,
            leave_time=payload.leave_time if payload else None,
        )
    except LookupError as exc:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail=str(exc))

    return ParticipantRead(
        user_id=participant.user_id,
        name=participant.name,
        role=participant.role,
        join_time=participant.join_time,
        leave_time=participant.leave_time,
        attention_data={key: getattr(participant, key) or 0 for key in STATE_KEYS},
    )
