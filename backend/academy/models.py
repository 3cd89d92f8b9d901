from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import JSON, Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql.sqltypes import BigInteger, Boolean, Date, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


class RegistrationStatus(StrEnum):
    PENDING_PAYMENT = "pending_payment"
    REGISTERED = "registered"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentEventStatus(StrEnum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


def _str_enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


class Registration(Base):
    __tablename__ = "registrations"
    __table_args__ = (
        UniqueConstraint("registration_code", name="uq_registrations_code"),
        Index("idx_reg_event_date", "event_name", "session_date"),
        Index("idx_reg_scope", "event_name", "session_date", "batch"),
        Index("idx_reg_email_scope", "email", "event_name", "session_date"),
        Index("idx_reg_phone_scope", "phone", "event_name", "session_date"),
        Index("idx_reg_status", "status", "payment_status"),
        Index("idx_reg_order", "gateway_order_id"),
        Index("idx_reg_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    registration_code: Mapped[str] = mapped_column(String(32), nullable=False)

    event_name: Mapped[str] = mapped_column(String(255), nullable=False)
    batch: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_time: Mapped[str] = mapped_column(String(255), nullable=False)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)

    parent_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    child_name: Mapped[str] = mapped_column(String(255), nullable=False)
    child_age: Mapped[str] = mapped_column(String(8), nullable=False)
    material_type: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[RegistrationStatus] = mapped_column(
        _str_enum(RegistrationStatus),
        nullable=False,
        default=RegistrationStatus.PENDING_PAYMENT,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _str_enum(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    payment_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    expired_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    expiration_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Snapshot of the gateway payment that settled this registration.
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_amount: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    payment_bank: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_wallet: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_vpa: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_state: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="website_form")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    def is_complete(self) -> bool:
        return self.status == RegistrationStatus.REGISTERED and self.payment_status == PaymentStatus.PAID

    def is_hold(self) -> bool:
        return self.status == RegistrationStatus.PENDING_PAYMENT and self.payment_status == PaymentStatus.PENDING


class PaymentLog(Base):
    __tablename__ = "payment_logs"
    __table_args__ = (
        UniqueConstraint("gateway_payment_id", "status", name="uq_payment_logs_payment_status"),
        Index("idx_paylog_registration", "registration_code"),
        Index("idx_paylog_status", "status"),
        Index("idx_paylog_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    registration_code: Mapped[str] = mapped_column(
        ForeignKey("registrations.registration_code", ondelete="CASCADE"),
        nullable=False,
    )
    gateway_payment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[PaymentEventStatus] = mapped_column(_str_enum(PaymentEventStatus), nullable=False)
    method: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    bank: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    wallet: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    vpa: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    # Gateway entity as delivered; audit only, never read back into the domain.
    raw_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
