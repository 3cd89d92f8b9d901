import logging
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from ..config import Settings
from ..domain.repositories import RegistrationRepository
from ..domain.services import ScopeKey, SlotSnapshot, build_snapshot, hold_cutoff
from ..utils.time import utc_now_naive

logger = logging.getLogger(__name__)


async def get_availability(
    reg_repo: RegistrationRepository,
    *,
    scope: ScopeKey,
    settings: Settings,
    now: Optional[datetime] = None,
) -> SlotSnapshot:
    """Capacity snapshot for one scope key.

    Stale holds in the queried scope are deleted first, so the answer is
    correct even when the background sweep has not run yet.
    """
    now = now or utc_now_naive()
    cutoff = hold_cutoff(now, timedelta(minutes=settings.hold_delete_minutes))
    stale = await reg_repo.delete_stale_holds(cutoff, scope)
    if stale:
        logger.info(
            "deleted %d stale holds for %s / %s / %s",
            len(stale),
            scope.event_name,
            scope.batch,
            scope.session_date.isoformat(),
        )
    counts = await reg_repo.count_scope(scope, cutoff)
    return build_snapshot(
        scope,
        counts,
        batch_capacity=settings.batch_capacity,
        unlimited_dates=settings.unlimited_dates,
        unlimited_capacity=settings.unlimited_display_capacity,
        stale_deleted=len(stale),
    )


async def batch_availability(
    reg_repo: RegistrationRepository,
    *,
    event_name: str,
    session_date: date,
    batches: Iterable[str],
    settings: Settings,
    now: Optional[datetime] = None,
) -> List[SlotSnapshot]:
    now = now or utc_now_naive()
    snapshots: List[SlotSnapshot] = []
    # One session cannot run queries concurrently, so batches are checked in order.
    for batch in batches:
        scope = ScopeKey(event_name=event_name, batch=batch, session_date=session_date)
        snapshots.append(await get_availability(reg_repo, scope=scope, settings=settings, now=now))
    return snapshots
