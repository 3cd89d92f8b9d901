from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Optional, Tuple

from sqlalchemy import ColumnElement, Select, and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import (
    PaymentLogRepository,
    PaymentSnapshot,
    RegistrationDraft,
    RegistrationFilter,
    RegistrationRepository,
)
from ..domain.services import ScopeCounts, ScopeKey
from ..models import PaymentLog, PaymentStatus, Registration, RegistrationStatus


def _is_paid() -> ColumnElement[bool]:
    return and_(
        Registration.status == RegistrationStatus.REGISTERED,
        Registration.payment_status == PaymentStatus.PAID,
    )


def _is_hold() -> ColumnElement[bool]:
    return and_(
        Registration.status == RegistrationStatus.PENDING_PAYMENT,
        Registration.payment_status == PaymentStatus.PENDING,
    )


def _in_scope(scope: ScopeKey) -> ColumnElement[bool]:
    return and_(
        Registration.event_name == scope.event_name,
        Registration.batch == scope.batch,
        Registration.session_date == scope.session_date,
    )


def _count_if(condition: ColumnElement[bool]) -> Any:
    return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)


class SqlAlchemyRegistrationRepository(RegistrationRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def latest_code(self, prefix: str) -> str | None:
        stmt = (
            select(Registration.registration_code)
            .where(Registration.registration_code.like(f"{prefix}-%"))
            # Longer suffix first: past 99999 the codes grow a digit.
            .order_by(func.length(Registration.registration_code).desc(), Registration.registration_code.desc())
            .limit(1)
        )
        return await self.session.scalar(stmt)

    async def create(
        self,
        draft: RegistrationDraft,
        *,
        code: str,
        now: datetime,
        payment_expires_at: datetime,
    ) -> Registration:
        registration = Registration(
            registration_code=code,
            event_name=draft.scope.event_name,
            batch=draft.scope.batch,
            batch_time=draft.batch_time,
            session_date=draft.scope.session_date,
            parent_name=draft.parent_name,
            email=draft.email,
            phone=draft.phone,
            child_name=draft.child_name,
            child_age=draft.child_age,
            material_type=draft.material_type,
            status=RegistrationStatus.PENDING_PAYMENT,
            payment_status=PaymentStatus.PENDING,
            payment_expires_at=payment_expires_at,
            ip_address=draft.ip_address,
            user_agent=draft.user_agent,
            source=draft.source,
            created_at=now,
            updated_at=now,
        )
        self.session.add(registration)
        await self.session.flush()
        return registration

    async def _one(self, condition: ColumnElement[bool]) -> Optional[Registration]:
        stmt = select(Registration).where(condition).execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def get_by_code(self, code: str) -> Optional[Registration]:
        return await self._one(Registration.registration_code == code)

    async def get_by_order_id(self, order_id: str) -> Optional[Registration]:
        return await self._one(Registration.gateway_order_id == order_id)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Registration]:
        return await self._one(Registration.gateway_payment_id == payment_id)

    async def save(self, registration: Registration) -> Registration:
        self.session.add(registration)
        await self.session.flush()
        return registration

    async def _delete_codes(self, codes: list[str], condition: ColumnElement[bool] | None = None) -> int:
        if not codes:
            return 0
        await self.session.execute(delete(PaymentLog).where(PaymentLog.registration_code.in_(codes)))
        stmt = delete(Registration).where(Registration.registration_code.in_(codes))
        if condition is not None:
            stmt = stmt.where(condition)
        result = await self.session.execute(stmt.execution_options(synchronize_session=False))
        return int(result.rowcount or 0)

    async def delete(self, code: str) -> bool:
        return await self._delete_codes([code]) > 0

    async def delete_stale_holds(self, cutoff: datetime, scope: ScopeKey | None = None) -> List[Registration]:
        condition = and_(_is_hold(), Registration.created_at < cutoff)
        if scope is not None:
            condition = and_(condition, _in_scope(scope))
        rows = list((await self.session.scalars(select(Registration).where(condition))).all())
        # Re-apply the condition so a hold confirmed in the meantime survives.
        await self._delete_codes([row.registration_code for row in rows], condition)
        return rows

    async def list_holds(self) -> List[Registration]:
        stmt = select(Registration).where(_is_hold()).order_by(Registration.created_at.asc())
        return list((await self.session.scalars(stmt)).all())

    async def count_scope(self, scope: ScopeKey, cutoff: datetime) -> ScopeCounts:
        stmt = select(
            _count_if(_is_paid()),
            _count_if(and_(_is_hold(), Registration.created_at >= cutoff)),
            _count_if(Registration.status == RegistrationStatus.EXPIRED),
        ).where(_in_scope(scope))
        confirmed, active, expired = (await self.session.execute(stmt)).one()
        return ScopeCounts(confirmed=int(confirmed), active_holds=int(active), expired_holds=int(expired))

    async def find_paid_duplicate(
        self,
        *,
        event_name: str,
        session_date: date,
        child_name: str,
        email: str,
        phone: str,
    ) -> Optional[Registration]:
        stmt = select(Registration).where(
            Registration.event_name == event_name,
            Registration.session_date == session_date,
            func.lower(Registration.child_name) == child_name.strip().lower(),
            _is_paid(),
            or_(Registration.email == email.strip().lower(), Registration.phone == phone.strip()),
        )
        return (await self.session.scalars(stmt.limit(1))).first()

    async def mark_paid(self, code: str, payment: PaymentSnapshot, *, now: datetime) -> bool:
        stmt = (
            update(Registration)
            .where(
                Registration.registration_code == code,
                Registration.status == RegistrationStatus.PENDING_PAYMENT,
            )
            .values(
                status=RegistrationStatus.REGISTERED,
                payment_status=PaymentStatus.PAID,
                gateway_payment_id=payment.payment_id,
                gateway_order_id=payment.order_id,
                gateway_signature=payment.signature,
                payment_amount=payment.amount,
                payment_currency=payment.currency,
                payment_method=payment.method,
                payment_bank=payment.bank,
                payment_wallet=payment.wallet,
                payment_vpa=payment.vpa,
                payment_state=payment.state,
                paid_at=now,
                payment_confirmed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    def _filtered(self, filters: RegistrationFilter) -> Select[Tuple[Registration]]:
        stmt = select(Registration)
        if filters.event_name:
            stmt = stmt.where(Registration.event_name == filters.event_name)
        if filters.status is not None:
            stmt = stmt.where(Registration.status == filters.status)
        if filters.payment_status is not None:
            stmt = stmt.where(Registration.payment_status == filters.payment_status)
        if filters.start_date is not None and filters.end_date is not None:
            stmt = stmt.where(Registration.session_date.between(filters.start_date, filters.end_date))
        if filters.search:
            pattern = f"%{filters.search.strip()}%"
            stmt = stmt.where(
                or_(
                    Registration.registration_code.ilike(pattern),
                    Registration.parent_name.ilike(pattern),
                    Registration.child_name.ilike(pattern),
                    Registration.email.ilike(pattern),
                    Registration.phone.ilike(pattern),
                )
            )
        return stmt

    async def list_filtered(
        self,
        filters: RegistrationFilter,
        *,
        offset: int,
        limit: int,
    ) -> Tuple[List[Registration], int]:
        base = self._filtered(filters)
        total = await self.session.scalar(select(func.count()).select_from(base.subquery()))
        stmt = base.order_by(Registration.created_at.desc()).offset(offset).limit(limit)
        rows = list((await self.session.scalars(stmt)).all())
        return rows, int(total or 0)

    async def status_counts(self, event_name: str | None = None) -> dict[str, int]:
        stmt = select(
            func.count(Registration.id),
            _count_if(_is_paid()),
            _count_if(_is_hold()),
            _count_if(Registration.status == RegistrationStatus.EXPIRED),
            _count_if(Registration.payment_status == PaymentStatus.REFUNDED),
        )
        if event_name is not None:
            stmt = stmt.where(Registration.event_name == event_name)
        total, paid, pending, expired, refunded = (await self.session.execute(stmt)).one()
        return {
            "total": int(total),
            "paid": int(paid),
            "pending": int(pending),
            "expired": int(expired),
            "refunded": int(refunded),
        }

    async def counts_by_event(self) -> List[dict[str, Any]]:
        stmt = (
            select(
                Registration.event_name,
                func.count(Registration.id),
                _count_if(_is_paid()),
                _count_if(_is_hold()),
                _count_if(Registration.status == RegistrationStatus.EXPIRED),
            )
            .group_by(Registration.event_name)
            .order_by(Registration.event_name)
        )
        rows = await self.session.execute(stmt)
        return [
            {"event_name": name, "total": int(total), "paid": int(paid), "pending": int(pending), "expired": int(expired)}
            for name, total, paid, pending, expired in rows.all()
        ]

    async def scope_keys(self, event_name: str) -> List[Tuple[date, str]]:
        stmt = (
            select(Registration.session_date, Registration.batch)
            .where(Registration.event_name == event_name)
            .distinct()
            .order_by(Registration.session_date, Registration.batch)
        )
        rows = await self.session.execute(stmt)
        return [(day, batch) for day, batch in rows.all()]

    async def paid_revenue(self, event_name: str | None = None) -> int:
        stmt = select(func.coalesce(func.sum(Registration.payment_amount), 0)).where(_is_paid())
        if event_name is not None:
            stmt = stmt.where(Registration.event_name == event_name)
        return int(await self.session.scalar(stmt) or 0)


class SqlAlchemyPaymentLogRepository(PaymentLogRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def append(self, entry: PaymentLog) -> bool:
        existing = await self.session.scalar(
            select(PaymentLog.id).where(
                PaymentLog.gateway_payment_id == entry.gateway_payment_id,
                PaymentLog.status == entry.status,
            )
        )
        if existing is not None:
            return False
        # Savepoint: a failed audit insert must not roll back the caller's transaction.
        async with self.session.begin_nested():
            self.session.add(entry)
            await self.session.flush()
        return True

    async def list_for_registration(self, code: str) -> List[PaymentLog]:
        stmt = (
            select(PaymentLog)
            .where(PaymentLog.registration_code == code)
            .order_by(PaymentLog.created_at.asc())
        )
        return list((await self.session.scalars(stmt)).all())
