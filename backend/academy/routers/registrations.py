from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..deps import client_ip, get_app_settings, get_session, unit_of_work
from ..domain.errors import DomainError
from ..domain.repositories import RegistrationDraft
from ..domain.services import ScopeKey, extract_batch_time, normalize_phone
from ..infrastructure.repositories import SqlAlchemyRegistrationRepository
from ..schemas import (
    DuplicateCheckRequest,
    DuplicateCheckResponse,
    RegistrationCodeRequest,
    RegistrationCreate,
    RegistrationCreated,
    RegistrationRead,
    RegistrationStatusRead,
)
from ..usecases import registrations as registration_usecase
from ..usecases.payments import fee_for
from ..utils.audit_log import emit_audit_log
from ..utils.time import format_long_date
from .errors import to_http

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.post("", response_model=RegistrationCreated, status_code=status.HTTP_201_CREATED)
async def create_registration(
    payload: RegistrationCreate,
    request: Request,
    user_agent: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> RegistrationCreated:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    draft = RegistrationDraft(
        scope=ScopeKey(
            event_name=payload.event_name.strip(),
            batch=payload.batch.strip(),
            session_date=payload.session_date,
        ),
        batch_time=extract_batch_time(payload.batch.strip()),
        parent_name=payload.parent_name.strip(),
        email=payload.email.strip().lower(),
        phone=normalize_phone(payload.phone),
        child_name=payload.child_name.strip(),
        child_age=payload.child_age.strip(),
        material_type=payload.material_type,
        ip_address=client_ip(request),
        user_agent=user_agent[:512] if user_agent else None,
    )
    try:
        async with unit_of_work(session):
            registration, snapshot, remaining_after = await registration_usecase.create_registration(
                reg_repo,
                draft=draft,
                settings=settings,
                available_dates=payload.available_dates,
            )
            emit_audit_log(
                action="registration.created",
                initiator="user",
                registration_code=registration.registration_code,
                event_name=registration.event_name,
                batch=registration.batch,
                session_date=registration.session_date.isoformat(),
                status_from=None,
                status_to=registration.status,
                payment_status=registration.payment_status,
            )
    except DomainError as exc:
        raise to_http(exc) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="failed to record registration") from exc

    return RegistrationCreated(
        registration_code=registration.registration_code,
        status=registration.status,
        payment_status=registration.payment_status,
        event_name=registration.event_name,
        batch=registration.batch,
        batch_time=registration.batch_time,
        session_date=registration.session_date,
        formatted_date=format_long_date(registration.session_date),
        fee=fee_for(registration, settings),
        currency=settings.currency,
        created_at=registration.created_at,
        payment_expires_at=registration.payment_expires_at,
        expires_in_minutes=settings.hold_display_minutes,
        delete_after_minutes=settings.hold_delete_minutes,
        remaining_after_hold=remaining_after,
        registered_after_hold=snapshot.occupied + 1,
        capacity=snapshot.capacity,
    )


@router.post("/duplicate-check", response_model=DuplicateCheckResponse)
async def check_duplicate(
    payload: DuplicateCheckRequest,
    session: AsyncSession = Depends(get_session),
) -> DuplicateCheckResponse:
    if not payload.email and not payload.phone:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="email or phone is required")
    reg_repo = SqlAlchemyRegistrationRepository(session)
    existing = await registration_usecase.check_duplicate(
        reg_repo,
        event_name=payload.event_name.strip(),
        session_date=payload.session_date,
        child_name=payload.child_name,
        email=payload.email,
        phone=normalize_phone(payload.phone) if payload.phone else "",
    )
    if existing is None:
        return DuplicateCheckResponse(is_duplicate=False)
    return DuplicateCheckResponse(is_duplicate=True, existing=registration_usecase.duplicate_pointer(existing))


@router.post("/status", response_model=RegistrationStatusRead)
async def registration_status(
    payload: RegistrationCodeRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> RegistrationStatusRead:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    try:
        async with unit_of_work(session):
            result = await registration_usecase.get_registration_status(
                reg_repo,
                code=payload.registration_code.strip(),
                settings=settings,
            )
    except DomainError as exc:
        raise to_http(exc) from exc
    return RegistrationStatusRead.from_status(result)


@router.get("/{registration_code}", response_model=RegistrationRead)
async def get_registration(
    registration_code: str = Path(..., min_length=1, max_length=32),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
) -> RegistrationRead:
    reg_repo = SqlAlchemyRegistrationRepository(session)
    try:
        async with unit_of_work(session):
            registration = await registration_usecase.get_registration_details(
                reg_repo,
                code=registration_code,
                settings=settings,
            )
    except DomainError as exc:
        raise to_http(exc) from exc
    return RegistrationRead.from_db(registration)
