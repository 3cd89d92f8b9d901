import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..domain.repositories import RegistrationRepository
from ..domain.services import hold_cutoff
from ..infrastructure.repositories import SqlAlchemyRegistrationRepository
from ..models import Registration
from ..utils.audit_log import emit_audit_log
from ..utils.time import utc_now_naive

logger = logging.getLogger(__name__)


async def sweep_stale_holds(
    reg_repo: RegistrationRepository,
    *,
    settings: Settings,
    now: Optional[datetime] = None,
) -> list[Registration]:
    """Delete every stale hold system-wide. No notification goes out for these."""
    now = now or utc_now_naive()
    cutoff = hold_cutoff(now, timedelta(minutes=settings.hold_delete_minutes))
    deleted = await reg_repo.delete_stale_holds(cutoff)
    for registration in deleted:
        try:
            emit_audit_log(
                action="registration.deleted",
                initiator="system",
                registration_code=registration.registration_code,
                event_name=registration.event_name,
                batch=registration.batch,
                session_date=registration.session_date.isoformat(),
                status_from=registration.status,
                status_to=None,
                payment_status=registration.payment_status,
                message="swept",
            )
        except RuntimeError:
            logger.exception("audit log failed for %s", registration.registration_code)
    if deleted:
        logger.info("sweep deleted %d stale holds older than %s", len(deleted), cutoff.isoformat())
    return deleted


class HoldSweeper:
    """Background task that periodically deletes stale holds.

    Owned by the application lifespan; `run_once` is the single cycle and can
    be awaited directly without the timer.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now_naive,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                deleted = await sweep_stale_holds(
                    SqlAlchemyRegistrationRepository(session),
                    settings=self.settings,
                    now=self.clock(),
                )
        return len(deleted)

    async def _safe_cycle(self) -> None:
        try:
            await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            # A failed cycle must not stop the next one.
            logger.exception("hold sweep cycle failed")

    async def _loop(self) -> None:
        await asyncio.sleep(self.settings.sweep_initial_delay_seconds)
        interval = self.settings.sweep_interval_minutes * 60
        while True:
            await self._safe_cycle()
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="hold-sweeper")
        logger.info(
            "hold sweeper started: every %d min, deleting holds older than %d min",
            self.settings.sweep_interval_minutes,
            self.settings.hold_delete_minutes,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("hold sweeper stopped")
