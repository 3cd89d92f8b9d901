from __future__ import annotations

import logging

from ..domain.gateways import Notifier
from ..models import Registration
from ..utils.time import format_long_date

logger = logging.getLogger(__name__)


class LoggingNotifier(Notifier):
    """Records outgoing notifications in the log.

    Template rendering and mail delivery live outside this service; swap in a
    real sender by implementing `Notifier`.
    """

    def __init__(self, admin_email: str = "") -> None:
        self.admin_email = admin_email

    async def send_registration_confirmation(self, registration: Registration) -> bool:
        logger.info(
            "confirmation for %s to %s: %s, %s on %s",
            registration.registration_code,
            registration.email,
            registration.event_name,
            registration.batch_time,
            format_long_date(registration.session_date),
        )
        return True

    async def send_admin_notification(self, registration: Registration) -> None:
        if not self.admin_email:
            return
        logger.info(
            "admin notification to %s for %s (%s)",
            self.admin_email,
            registration.registration_code,
            registration.child_name,
        )

    async def send_payment_failure(self, registration: Registration, *, reason: str | None) -> None:
        logger.info(
            "payment failure notice for %s to %s: %s",
            registration.registration_code,
            registration.email,
            reason or "unknown",
        )
