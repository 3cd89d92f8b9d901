import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import get_app_settings, get_current_admin, get_session, unit_of_work
from ..domain.errors import DomainError
from ..domain.repositories import RegistrationFilter
from ..infrastructure.repositories import SqlAlchemyPaymentLogRepository, SqlAlchemyRegistrationRepository
from ..models import PaymentStatus, RegistrationStatus
from ..schemas import (
    AdminRegistrationRead,
    ExpireResult,
    RegistrationCodeRequest,
    RegistrationPage,
    SweepResult,
)
from ..usecases import admin as admin_usecase
from ..usecases import registrations as registration_usecase
from .errors import to_http

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(get_current_admin)])


@router.post("/sweep", response_model=SweepResult)
async def run_sweep(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> SweepResult:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    async with unit_of_work(session):
        deleted = await admin_usecase.run_sweep(reg_repo, settings=settings)
    return SweepResult(
        deleted_count=len(deleted),
        deleted_codes=[r.registration_code for r in deleted],
    )


@router.post("/expire", response_model=ExpireResult)
async def expire_registration(
    payload: RegistrationCodeRequest,
    session: AsyncSession = Depends(get_session),
    operator: str = Depends(get_current_admin),
) -> ExpireResult:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    try:
        async with unit_of_work(session):
            previous = await registration_usecase.expire_registration(reg_repo, code=payload.registration_code.strip())
    except DomainError as exc:
        raise to_http(exc) from exc
    logger.info("%s expired %s", operator, previous.registration_code)
    return ExpireResult(
        registration_code=previous.registration_code,
        previous_status=previous.status,
        previous_payment_status=previous.payment_status,
    )


@router.get("/registrations", response_model=RegistrationPage)
async def list_registrations(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=admin_usecase.MAX_PAGE_SIZE),
    event: Optional[str] = Query(default=None),
    status_: Optional[RegistrationStatus] = Query(default=None, alias="status"),
    payment_status: Optional[PaymentStatus] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=255),
    session: AsyncSession = Depends(get_session),
) -> RegistrationPage:
    if (start_date is None) != (end_date is None):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_date and end_date go together")
    reg_repo = SqlAlchemyRegistrationRepository(session)
    result = await admin_usecase.list_registrations(
        reg_repo,
        filters=RegistrationFilter(
            event_name=event,
            status=status_,
            payment_status=payment_status,
            start_date=start_date,
            end_date=end_date,
            search=search,
        ),
        page=page,
        limit=limit,
    )
    return RegistrationPage(
        **{**result, "items": [AdminRegistrationRead.from_admin(r) for r in result["items"]]},
    )


@router.get("/registrations/{registration_code}", response_model=AdminRegistrationRead)
async def get_registration(
    registration_code: str = Path(..., min_length=1, max_length=32),
    session: AsyncSession = Depends(get_session),
) -> AdminRegistrationRead:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    log_repo = SqlAlchemyPaymentLogRepository(session)
    try:
        registration, logs = await admin_usecase.get_registration_detail(reg_repo, log_repo, code=registration_code)
    except DomainError as exc:
        raise to_http(exc) from exc
    return AdminRegistrationRead.from_admin(registration, logs)


@router.get("/statistics")
async def system_statistics(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    return await admin_usecase.system_statistics(reg_repo, settings=settings)


@router.get("/statistics/{event_name}")
async def event_statistics(
    event_name: str = Path(..., min_length=1),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    async with unit_of_work(session):
        return await admin_usecase.event_statistics(reg_repo, event_name=event_name, settings=settings)
