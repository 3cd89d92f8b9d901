from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from ..models import Registration


@dataclass(frozen=True)
class GatewayOrder:
    order_id: str
    amount_minor: int
    currency: str


class PaymentGateway(Protocol):
    @property
    def key_id(self) -> str: ...

    async def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> GatewayOrder: ...

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]: ...


class Notifier(Protocol):
    async def send_registration_confirmation(self, registration: Registration) -> bool: ...

    async def send_admin_notification(self, registration: Registration) -> None: ...

    async def send_payment_failure(self, registration: Registration, *, reason: str | None) -> None: ...
