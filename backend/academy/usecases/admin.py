from datetime import datetime
from typing import Any, Optional

from ..config import Settings
from ..domain.errors import NotFoundError
from ..domain.repositories import PaymentLogRepository, RegistrationFilter, RegistrationRepository
from ..domain.services import ScopeKey
from ..models import PaymentLog, Registration
from ..utils.time import utc_now_naive
from . import slots as slot_usecase
from .sweeper import sweep_stale_holds

MAX_PAGE_SIZE = 100


async def list_registrations(
    reg_repo: RegistrationRepository,
    *,
    filters: RegistrationFilter,
    page: int,
    limit: int,
) -> dict[str, Any]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    rows, total = await reg_repo.list_filtered(filters, offset=(page - 1) * limit, limit=limit)
    pages = (total + limit - 1) // limit
    return {
        "items": rows,
        "total": total,
        "page": page,
        "limit": limit,
        "pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }


async def get_registration_detail(
    reg_repo: RegistrationRepository,
    log_repo: PaymentLogRepository,
    *,
    code: str,
) -> tuple[Registration, list[PaymentLog]]:
    registration = await reg_repo.get_by_code(code)
    if registration is None:
        raise NotFoundError("registration not found", data={"registration_code": code})
    logs = await log_repo.list_for_registration(code)
    return registration, logs


async def run_sweep(
    reg_repo: RegistrationRepository,
    *,
    settings: Settings,
    now: Optional[datetime] = None,
) -> list[Registration]:
    return await sweep_stale_holds(reg_repo, settings=settings, now=now)


async def system_statistics(
    reg_repo: RegistrationRepository,
    *,
    settings: Settings,
) -> dict[str, Any]:
    counts = await reg_repo.status_counts()
    return {
        "totals": counts,
        "revenue": await reg_repo.paid_revenue(),
        "currency": settings.currency,
        "events": await reg_repo.counts_by_event(),
        "hold_display_minutes": settings.hold_display_minutes,
        "hold_delete_minutes": settings.hold_delete_minutes,
        "sweep_interval_minutes": settings.sweep_interval_minutes,
    }


async def event_statistics(
    reg_repo: RegistrationRepository,
    *,
    event_name: str,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Per-date, per-batch occupancy for one event, plus its totals."""
    now = now or utc_now_naive()
    dates: dict[str, list[dict[str, Any]]] = {}
    for session_date, batch in await reg_repo.scope_keys(event_name):
        snapshot = await slot_usecase.get_availability(
            reg_repo,
            scope=ScopeKey(event_name, batch, session_date),
            settings=settings,
            now=now,
        )
        dates.setdefault(session_date.isoformat(), []).append(
            {
                "batch": batch,
                "capacity": snapshot.capacity,
                "confirmed_count": snapshot.confirmed,
                "active_hold_count": snapshot.active_holds,
                "expired_hold_count": snapshot.expired_holds,
                "remaining": snapshot.remaining,
                "status": snapshot.status,
            }
        )
    return {
        "event_name": event_name,
        "totals": await reg_repo.status_counts(event_name),
        "revenue": await reg_repo.paid_revenue(event_name),
        "dates": dates,
    }
