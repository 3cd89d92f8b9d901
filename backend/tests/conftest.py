import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pytest
from academy.config import Settings
from academy.domain.errors import GatewayError
from academy.domain.gateways import GatewayOrder
from academy.domain.repositories import PaymentSnapshot, RegistrationDraft, RegistrationFilter
from academy.domain.services import ScopeCounts, ScopeKey
from academy.models import PaymentLog, PaymentStatus, Registration, RegistrationStatus

EVENT = "Republic Day Carnival"
BATCH = "Batch 1 ⏰ 10:00 AM - 12:00 PM"
SESSION_DATE = date(2030, 1, 26)
NOW = datetime(2030, 1, 20, 10, 0, 0)


class FakePaymentLogRepo:
    def __init__(self) -> None:
        self.entries: list[PaymentLog] = []

    async def append(self, entry: PaymentLog) -> bool:
        for existing in self.entries:
            if existing.gateway_payment_id == entry.gateway_payment_id and existing.status == entry.status:
                return False
        self.entries.append(entry)
        return True

    async def list_for_registration(self, code: str) -> list[PaymentLog]:
        return [e for e in self.entries if e.registration_code == code]

    def drop(self, code: str) -> None:
        self.entries = [e for e in self.entries if e.registration_code != code]


class FakeRegistrationRepo:
    """In-memory stand-in for the SQL repository, same query semantics."""

    def __init__(self, log_repo: Optional[FakePaymentLogRepo] = None, *, yield_on_count: bool = False) -> None:
        self.rows: dict[str, Registration] = {}
        self.log_repo = log_repo or FakePaymentLogRepo()
        self.yield_on_count = yield_on_count
        self.deleted: list[str] = []

    def _scope(self, reg: Registration, scope: ScopeKey) -> bool:
        return (
            reg.event_name == scope.event_name
            and reg.batch == scope.batch
            and reg.session_date == scope.session_date
        )

    async def latest_code(self, prefix: str) -> str | None:
        codes = sorted((code for code in self.rows if code.startswith(f"{prefix}-")), key=lambda c: (len(c), c))
        return codes[-1] if codes else None

    async def create(
        self,
        draft: RegistrationDraft,
        *,
        code: str,
        now: datetime,
        payment_expires_at: datetime,
    ) -> Registration:
        reg = make_registration(
            code=code,
            event_name=draft.scope.event_name,
            batch=draft.scope.batch,
            session_date=draft.scope.session_date,
            parent_name=draft.parent_name,
            email=draft.email,
            phone=draft.phone,
            child_name=draft.child_name,
            child_age=draft.child_age,
            material_type=draft.material_type,
            created_at=now,
        )
        reg.batch_time = draft.batch_time
        reg.payment_expires_at = payment_expires_at
        reg.ip_address = draft.ip_address
        reg.user_agent = draft.user_agent
        self.rows[code] = reg
        return reg

    async def get_by_code(self, code: str) -> Registration | None:
        return self.rows.get(code)

    async def get_by_order_id(self, order_id: str) -> Registration | None:
        return next((r for r in self.rows.values() if r.gateway_order_id == order_id), None)

    async def get_by_payment_id(self, payment_id: str) -> Registration | None:
        return next((r for r in self.rows.values() if r.gateway_payment_id == payment_id), None)

    async def save(self, registration: Registration) -> Registration:
        self.rows[registration.registration_code] = registration
        return registration

    async def delete(self, code: str) -> bool:
        self.log_repo.drop(code)
        if self.rows.pop(code, None) is None:
            return False
        self.deleted.append(code)
        return True

    async def delete_stale_holds(self, cutoff: datetime, scope: ScopeKey | None = None) -> list[Registration]:
        stale = [
            r
            for r in self.rows.values()
            if r.is_hold() and r.created_at < cutoff and (scope is None or self._scope(r, scope))
        ]
        for reg in stale:
            await self.delete(reg.registration_code)
        return stale

    async def list_holds(self) -> list[Registration]:
        return [r for r in self.rows.values() if r.is_hold()]

    async def count_scope(self, scope: ScopeKey, cutoff: datetime) -> ScopeCounts:
        rows = [r for r in self.rows.values() if self._scope(r, scope)]
        counts = ScopeCounts(
            confirmed=sum(1 for r in rows if r.is_complete()),
            active_holds=sum(1 for r in rows if r.is_hold() and r.created_at >= cutoff),
            expired_holds=sum(1 for r in rows if r.status == RegistrationStatus.EXPIRED),
        )
        if self.yield_on_count:
            # Let another request run between the read and the caller acting on it.
            await asyncio.sleep(0)
        return counts

    async def find_paid_duplicate(
        self,
        *,
        event_name: str,
        session_date: date,
        child_name: str,
        email: str,
        phone: str,
    ) -> Registration | None:
        for r in self.rows.values():
            if (
                r.event_name == event_name
                and r.session_date == session_date
                and r.child_name.lower() == child_name.strip().lower()
                and r.is_complete()
                and (r.email == email.strip().lower() or r.phone == phone.strip())
            ):
                return r
        return None

    async def mark_paid(self, code: str, payment: PaymentSnapshot, *, now: datetime) -> bool:
        reg = self.rows.get(code)
        if reg is None or reg.status != RegistrationStatus.PENDING_PAYMENT:
            return False
        reg.status = RegistrationStatus.REGISTERED
        reg.payment_status = PaymentStatus.PAID
        reg.gateway_payment_id = payment.payment_id
        reg.gateway_order_id = payment.order_id
        reg.gateway_signature = payment.signature
        reg.payment_amount = payment.amount
        reg.payment_currency = payment.currency
        reg.payment_method = payment.method
        reg.payment_state = payment.state
        reg.paid_at = now
        reg.payment_confirmed_at = now
        reg.updated_at = now
        return True

    async def list_filtered(
        self,
        filters: RegistrationFilter,
        *,
        offset: int,
        limit: int,
    ) -> tuple[list[Registration], int]:
        rows = [
            r
            for r in self.rows.values()
            if (filters.event_name is None or r.event_name == filters.event_name)
            and (filters.status is None or r.status == filters.status)
            and (filters.payment_status is None or r.payment_status == filters.payment_status)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows[offset : offset + limit], len(rows)

    async def status_counts(self, event_name: str | None = None) -> dict[str, int]:
        rows = [r for r in self.rows.values() if event_name is None or r.event_name == event_name]
        return {
            "total": len(rows),
            "paid": sum(1 for r in rows if r.is_complete()),
            "pending": sum(1 for r in rows if r.is_hold()),
            "expired": sum(1 for r in rows if r.status == RegistrationStatus.EXPIRED),
            "refunded": sum(1 for r in rows if r.payment_status == PaymentStatus.REFUNDED),
        }

    async def counts_by_event(self) -> list[dict[str, Any]]:
        names = sorted({r.event_name for r in self.rows.values()})
        return [{"event_name": name, **(await self.status_counts(name))} for name in names]

    async def scope_keys(self, event_name: str) -> list[tuple[date, str]]:
        return sorted({(r.session_date, r.batch) for r in self.rows.values() if r.event_name == event_name})

    async def paid_revenue(self, event_name: str | None = None) -> int:
        return sum(
            r.payment_amount or 0
            for r in self.rows.values()
            if r.is_complete() and (event_name is None or r.event_name == event_name)
        )


class FakeNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.confirmations: list[str] = []
        self.admin: list[str] = []
        self.failures: list[tuple[str, Optional[str]]] = []

    async def send_registration_confirmation(self, registration: Registration) -> bool:
        if self.fail:
            raise RuntimeError("smtp down")
        self.confirmations.append(registration.registration_code)
        return True

    async def send_admin_notification(self, registration: Registration) -> None:
        if self.fail:
            raise RuntimeError("smtp down")
        self.admin.append(registration.registration_code)

    async def send_payment_failure(self, registration: Registration, *, reason: str | None) -> None:
        self.failures.append((registration.registration_code, reason))


class FakeGateway:
    def __init__(self, *, payment: Optional[dict[str, Any]] = None, fail_fetch: bool = False) -> None:
        self.orders: list[dict[str, Any]] = []
        self.payment = payment or {"method": "upi", "vpa": "parent@okbank"}
        self.fail_fetch = fail_fetch

    @property
    def key_id(self) -> str:
        return "rzp_test_key"

    async def create_order(self, *, amount: int, currency: str, receipt: str, notes: dict[str, str]) -> GatewayOrder:
        self.orders.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return GatewayOrder(order_id=f"order_{len(self.orders)}", amount_minor=amount * 100, currency=currency)

    async def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        if self.fail_fetch:
            raise GatewayError("payment provider unavailable")
        return {"id": payment_id, **self.payment}


def make_registration(
    *,
    code: str = "LS-RD26-00001",
    event_name: str = EVENT,
    batch: str = BATCH,
    session_date: date = SESSION_DATE,
    parent_name: str = "Asha Rao",
    email: str = "asha@example.com",
    phone: str = "9876543210",
    child_name: str = "Meera",
    child_age: str = "8",
    material_type: bool = True,
    status: RegistrationStatus = RegistrationStatus.PENDING_PAYMENT,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    created_at: datetime = NOW,
) -> Registration:
    return Registration(
        registration_code=code,
        event_name=event_name,
        batch=batch,
        batch_time="10:00 AM - 12:00 PM",
        session_date=session_date,
        parent_name=parent_name,
        email=email,
        phone=phone,
        child_name=child_name,
        child_age=child_age,
        material_type=material_type,
        status=status,
        payment_status=payment_status,
        payment_expires_at=created_at + timedelta(minutes=15),
        payment_confirmed_at=None,
        expired_at=None,
        expiration_reason=None,
        gateway_payment_id=None,
        gateway_order_id=None,
        gateway_signature=None,
        payment_amount=None,
        payment_currency=None,
        payment_method=None,
        payment_bank=None,
        payment_wallet=None,
        payment_vpa=None,
        payment_state=None,
        paid_at=None,
        ip_address=None,
        user_agent=None,
        source="website_form",
        created_at=created_at,
        updated_at=created_at,
    )


def make_draft(
    *,
    child_name: str = "Meera",
    email: str = "asha@example.com",
    phone: str = "9876543210",
    batch: str = BATCH,
    session_date: date = SESSION_DATE,
    material_type: bool = True,
) -> RegistrationDraft:
    return RegistrationDraft(
        scope=ScopeKey(event_name=EVENT, batch=batch, session_date=session_date),
        batch_time="10:00 AM - 12:00 PM",
        parent_name="Asha Rao",
        email=email,
        phone=phone,
        child_name=child_name,
        child_age="8",
        material_type=material_type,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        batch_capacity=20,
        unlimited_dates=[date(2030, 1, 25)],
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="key_secret",
        razorpay_webhook_secret="webhook_secret",
    )


@pytest.fixture
def log_repo() -> FakePaymentLogRepo:
    return FakePaymentLogRepo()


@pytest.fixture
def reg_repo(log_repo: FakePaymentLogRepo) -> FakeRegistrationRepo:
    return FakeRegistrationRepo(log_repo)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
