from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Protocol

from ..models import PaymentLog, PaymentStatus, Registration, RegistrationStatus
from .services import ScopeCounts, ScopeKey


@dataclass(frozen=True)
class RegistrationDraft:
    scope: ScopeKey
    batch_time: str
    parent_name: str
    email: str
    phone: str
    child_name: str
    child_age: str
    material_type: bool
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: str = "website_form"


@dataclass(frozen=True)
class PaymentSnapshot:
    payment_id: str
    order_id: Optional[str]
    signature: Optional[str]
    amount: int
    currency: str
    method: Optional[str] = None
    bank: Optional[str] = None
    wallet: Optional[str] = None
    vpa: Optional[str] = None
    state: str = "paid"


@dataclass(frozen=True)
class RegistrationFilter:
    event_name: Optional[str] = None
    status: Optional[RegistrationStatus] = None
    payment_status: Optional[PaymentStatus] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None


class RegistrationRepository(Protocol):
    async def latest_code(self, prefix: str) -> str | None: ...

    async def create(
        self,
        draft: RegistrationDraft,
        *,
        code: str,
        now: datetime,
        payment_expires_at: datetime,
    ) -> Registration: ...

    async def get_by_code(self, code: str) -> Registration | None: ...

    async def get_by_order_id(self, order_id: str) -> Registration | None: ...

    async def get_by_payment_id(self, payment_id: str) -> Registration | None: ...

    async def save(self, registration: Registration) -> Registration: ...

    async def delete(self, code: str) -> bool: ...

    async def delete_stale_holds(self, cutoff: datetime, scope: ScopeKey | None = None) -> list[Registration]: ...

    async def list_holds(self) -> list[Registration]: ...

    async def count_scope(self, scope: ScopeKey, cutoff: datetime) -> ScopeCounts: ...

    async def find_paid_duplicate(
        self,
        *,
        event_name: str,
        session_date: date,
        child_name: str,
        email: str,
        phone: str,
    ) -> Registration | None: ...

    async def mark_paid(self, code: str, payment: PaymentSnapshot, *, now: datetime) -> bool: ...

    async def list_filtered(
        self,
        filters: RegistrationFilter,
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[Registration], int]: ...

    async def status_counts(self, event_name: str | None = None) -> dict[str, int]: ...

    async def counts_by_event(self) -> list[dict[str, Any]]: ...

    async def scope_keys(self, event_name: str) -> list[tuple[date, str]]: ...

    async def paid_revenue(self, event_name: str | None = None) -> int: ...


class PaymentLogRepository(Protocol):
    async def append(self, entry: PaymentLog) -> bool: ...

    async def list_for_registration(self, code: str) -> list[PaymentLog]: ...
