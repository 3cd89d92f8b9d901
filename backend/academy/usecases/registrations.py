import logging
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from ..config import Settings
from ..domain.errors import (
    DuplicateRegistrationError,
    ExpiredReservationError,
    InvalidReservationStateError,
    NotFoundError,
)
from ..domain.repositories import RegistrationDraft, RegistrationRepository
from ..domain.services import (
    ScopeKey,
    SlotSnapshot,
    ensure_can_hold,
    is_hold_stale,
    next_registration_code,
    validate_participant,
    validate_session_date,
)
from ..models import Registration, RegistrationStatus
from ..utils.audit_log import AuditInitiator, emit_audit_log
from ..utils.time import elapsed, minutes_seconds, remaining, utc_naive_to_ist, utc_now_naive
from . import slots as slot_usecase

logger = logging.getLogger(__name__)


def _delete_after(settings: Settings) -> timedelta:
    return timedelta(minutes=settings.hold_delete_minutes)


def _audit_deleted(registration: Registration, *, initiator: AuditInitiator, reason: str) -> None:
    try:
        emit_audit_log(
            action="registration.deleted",
            initiator=initiator,
            registration_code=registration.registration_code,
            event_name=registration.event_name,
            batch=registration.batch,
            session_date=registration.session_date.isoformat(),
            status_from=registration.status,
            status_to=None,
            payment_status=registration.payment_status,
            message=reason,
        )
    except RuntimeError:
        logger.exception("audit log failed for %s", registration.registration_code)


async def evict_if_expired(
    reg_repo: RegistrationRepository,
    registration: Registration,
    *,
    settings: Settings,
    now: Optional[datetime] = None,
    initiator: AuditInitiator = "system",
) -> Registration:
    """Delete a hold that outlived the deletion threshold and raise ExpiredReservationError.

    Every lookup and payment path funnels through here, so the threshold is
    compared in exactly one place. Returns the registration untouched when it
    is still valid.
    """
    now = now or utc_now_naive()
    delete_after = _delete_after(settings)
    if not is_hold_stale(registration, now=now, delete_after=delete_after):
        return registration

    age_minutes, age_seconds = minutes_seconds(elapsed(registration.created_at, now))
    await reg_repo.delete(registration.registration_code)
    logger.info(
        "hold %s is %dm %ds old, deleted",
        registration.registration_code,
        age_minutes,
        age_seconds,
    )
    _audit_deleted(registration, initiator=initiator, reason="hold expired")
    raise ExpiredReservationError(
        "registration expired and was deleted, please register again",
        data={
            "registration_code": registration.registration_code,
            "age_minutes": age_minutes,
            "age_seconds": age_seconds,
            "delete_threshold_minutes": settings.hold_delete_minutes,
        },
    )


async def load_live(
    reg_repo: RegistrationRepository,
    *,
    code: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Registration:
    registration = await reg_repo.get_by_code(code)
    if registration is None:
        raise NotFoundError("registration not found", data={"registration_code": code})
    return await evict_if_expired(reg_repo, registration, settings=settings, now=now)


async def check_duplicate(
    reg_repo: RegistrationRepository,
    *,
    event_name: str,
    session_date: date,
    child_name: str,
    email: str,
    phone: str,
) -> Optional[Registration]:
    """Only a registered and paid row counts; pending or expired holds never block a new attempt."""
    return await reg_repo.find_paid_duplicate(
        event_name=event_name,
        session_date=session_date,
        child_name=child_name,
        email=email,
        phone=phone,
    )


def duplicate_pointer(registration: Registration) -> dict[str, Any]:
    return {
        "registration_code": registration.registration_code,
        "batch": registration.batch,
        "session_date": registration.session_date.isoformat(),
    }


async def create_registration(
    reg_repo: RegistrationRepository,
    *,
    draft: RegistrationDraft,
    settings: Settings,
    available_dates: Iterable[str] = (),
    now: Optional[datetime] = None,
) -> tuple[Registration, SlotSnapshot, int]:
    """Place a hold on one slot of the draft's scope.

    Availability is re-read right before the insert but not locked; two
    concurrent creates that both see one free slot can both succeed. That
    bounded over-book is accepted rather than serialised.
    Returns the registration, the snapshot taken before the insert and the
    remaining slot count after this hold.
    """
    now = now or utc_now_naive()
    scope = draft.scope
    validate_participant(
        parent_name=draft.parent_name,
        email=draft.email,
        phone=draft.phone,
        child_name=draft.child_name,
        child_age=draft.child_age,
        batch=scope.batch,
    )
    validate_session_date(scope.session_date, today=utc_naive_to_ist(now).date(), available_dates=available_dates)

    duplicate = await check_duplicate(
        reg_repo,
        event_name=scope.event_name,
        session_date=scope.session_date,
        child_name=draft.child_name,
        email=draft.email,
        phone=draft.phone,
    )
    if duplicate is not None:
        raise DuplicateRegistrationError(
            "this child is already registered for this workshop on the selected date",
            data={"existing": duplicate_pointer(duplicate)},
        )

    snapshot = await slot_usecase.get_availability(reg_repo, scope=scope, settings=settings, now=now)
    remaining_after = ensure_can_hold(snapshot)

    code = next_registration_code(settings.registration_prefix, await reg_repo.latest_code(settings.registration_prefix))
    registration = await reg_repo.create(
        draft,
        code=code,
        now=now,
        payment_expires_at=now + timedelta(minutes=settings.hold_display_minutes),
    )
    logger.info(
        "hold %s created for %s / %s / %s, %d left",
        code,
        scope.event_name,
        scope.batch,
        scope.session_date.isoformat(),
        remaining_after,
    )
    return registration, snapshot, remaining_after


async def get_registration_status(
    reg_repo: RegistrationRepository,
    *,
    code: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or utc_now_naive()
    registration = await load_live(reg_repo, code=code, settings=settings, now=now)

    snapshot: Optional[SlotSnapshot] = None
    slot_available = True
    is_hold = registration.status == RegistrationStatus.PENDING_PAYMENT
    if is_hold:
        snapshot = await slot_usecase.get_availability(
            reg_repo,
            scope=ScopeKey(registration.event_name, registration.batch, registration.session_date),
            settings=settings,
            now=now,
        )
        # The hold itself is part of the occupied count.
        slot_available = snapshot.unlimited or snapshot.occupied <= snapshot.capacity

    age_minutes, age_seconds = minutes_seconds(elapsed(registration.created_at, now))
    left = remaining(registration.created_at, _delete_after(settings), now) if is_hold else timedelta(0)
    left_minutes, left_seconds = minutes_seconds(left)
    return {
        "registration": registration,
        "snapshot": snapshot,
        "age_minutes": age_minutes,
        "age_seconds": age_seconds,
        "will_delete_in_minutes": left_minutes,
        "will_delete_in_seconds": left_seconds,
        "slot_available": slot_available,
        "can_proceed": is_hold and slot_available,
    }


async def get_registration_details(
    reg_repo: RegistrationRepository,
    *,
    code: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> Registration:
    return await load_live(reg_repo, code=code, settings=settings, now=now)


async def expire_registration(
    reg_repo: RegistrationRepository,
    *,
    code: str,
) -> Registration:
    """Operator-initiated deletion of a hold. Returns the registration as it was before deletion."""
    registration = await reg_repo.get_by_code(code)
    if registration is None:
        raise NotFoundError("registration not found", data={"registration_code": code})
    if registration.status != RegistrationStatus.PENDING_PAYMENT:
        raise InvalidReservationStateError(
            f"cannot expire a registration with status {registration.status.value}",
            data={"registration_code": code, "status": registration.status.value},
        )
    await reg_repo.delete(code)
    logger.info("hold %s deleted by operator", code)
    _audit_deleted(registration, initiator="admin", reason="expired by operator")
    return registration
