from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import get_app_settings, get_session, unit_of_work
from ..domain.services import ScopeKey
from ..infrastructure.repositories import SqlAlchemyRegistrationRepository
from ..schemas import BatchCheckRequest, BatchCheckResponse, SlotAvailability
from ..usecases import slots as slot_usecase
from ..utils.time import parse_calendar_date

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("", response_model=SlotAvailability)
async def get_availability(
    event: str = Query(..., min_length=1, description="Workshop / carnival name"),
    batch: str = Query(..., min_length=1),
    date_: str = Query(..., alias="date", description="YYYY-MM-DD"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> SlotAvailability:
    try:
        session_date: date = parse_calendar_date(date_)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="date must be YYYY-MM-DD") from exc

    reg_repo = SqlAlchemyRegistrationRepository(session)
    async with unit_of_work(session):
        snapshot = await slot_usecase.get_availability(
            reg_repo,
            scope=ScopeKey(event_name=event.strip(), batch=batch.strip(), session_date=session_date),
            settings=settings,
        )
    return SlotAvailability.from_snapshot(snapshot)


@router.post("/batch-check", response_model=BatchCheckResponse)
async def batch_check(
    payload: BatchCheckRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> BatchCheckResponse:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    async with unit_of_work(session):
        snapshots = await slot_usecase.batch_availability(
            reg_repo,
            event_name=payload.event_name.strip(),
            session_date=payload.session_date,
            batches=[batch.strip() for batch in payload.batches],
            settings=settings,
        )
    items = [SlotAvailability.from_snapshot(s) for s in snapshots]
    open_items = [item for item in items if not item.is_full]
    return BatchCheckResponse(
        event_name=payload.event_name,
        session_date=payload.session_date,
        batches=items,
        has_available_slots=bool(open_items),
        available_batch_count=len(open_items),
        total_remaining=sum(item.remaining for item in items if not item.is_unlimited),
    )
