from datetime import date, datetime
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, BeforeValidator, Field, field_serializer, field_validator

from .models import PaymentLog, PaymentStatus, Registration, RegistrationStatus
from .domain.services import SlotSnapshot
from .utils.time import format_long_date, format_short_date, parse_calendar_date, utc_naive_to_ist


def _calendar_date(value: Any) -> date:
    if isinstance(value, (str, date, datetime)):
        return parse_calendar_date(value)
    raise ValueError("date must be YYYY-MM-DD")


CalendarDate = Annotated[date, BeforeValidator(_calendar_date)]


class _IstDatetimes(BaseModel):
    """Stored datetimes are naive UTC; the API speaks IST."""

    @staticmethod
    def _ist(dt: Optional[datetime]) -> Optional[str]:
        return utc_naive_to_ist(dt).isoformat() if dt is not None else None


class SlotAvailability(BaseModel):
    event_name: str
    batch: str
    session_date: CalendarDate
    capacity: int
    confirmed_count: int
    active_hold_count: int
    expired_hold_count: int
    registered_count: int
    remaining: int
    is_full: bool
    is_unlimited: bool
    status: str

    @classmethod
    def from_snapshot(cls, snapshot: SlotSnapshot) -> "SlotAvailability":
        return cls(
            event_name=snapshot.scope.event_name,
            batch=snapshot.scope.batch,
            session_date=snapshot.scope.session_date,
            capacity=snapshot.capacity,
            confirmed_count=snapshot.confirmed,
            active_hold_count=snapshot.active_holds,
            expired_hold_count=snapshot.expired_holds,
            registered_count=snapshot.occupied,
            remaining=snapshot.remaining,
            is_full=snapshot.is_full,
            is_unlimited=snapshot.unlimited,
            status=snapshot.status,
        )


class BatchCheckRequest(BaseModel):
    event_name: str = Field(min_length=1)
    session_date: CalendarDate
    batches: List[str] = Field(min_length=1)


class BatchCheckResponse(BaseModel):
    event_name: str
    session_date: CalendarDate
    batches: List[SlotAvailability]
    has_available_slots: bool
    available_batch_count: int
    total_remaining: int


class RegistrationCreate(BaseModel):
    event_name: str = Field(min_length=1, max_length=255)
    batch: str = Field(min_length=1, max_length=255)
    session_date: CalendarDate
    parent_name: str = Field(max_length=255)
    email: str = Field(max_length=255)
    phone: str = Field(max_length=32)
    child_name: str = Field(max_length=255)
    child_age: str = Field(max_length=8)
    material_type: bool = False
    available_dates: List[str] = Field(default_factory=list)

    @field_validator("child_age", mode="before")
    @classmethod
    def _age_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class RegistrationCreated(_IstDatetimes):
    registration_code: str
    status: RegistrationStatus
    payment_status: PaymentStatus
    event_name: str
    batch: str
    batch_time: str
    session_date: CalendarDate
    formatted_date: str
    fee: int
    currency: str
    created_at: datetime
    payment_expires_at: datetime
    expires_in_minutes: int
    delete_after_minutes: int
    remaining_after_hold: int
    registered_after_hold: int
    capacity: int

    @field_serializer("created_at", "payment_expires_at")
    def _ser_datetime(self, dt: datetime) -> Optional[str]:
        return self._ist(dt)


class DuplicateCheckRequest(BaseModel):
    event_name: str = Field(min_length=1)
    session_date: CalendarDate
    child_name: str = Field(min_length=1)
    email: str = ""
    phone: str = ""


class DuplicateCheckResponse(BaseModel):
    is_duplicate: bool
    existing: Optional[dict[str, Any]] = None


class RegistrationCodeRequest(BaseModel):
    registration_code: str = Field(min_length=1, max_length=32)


class RegistrationStatusRead(_IstDatetimes):
    registration_code: str
    event_name: str
    status: RegistrationStatus
    payment_status: PaymentStatus
    batch: str
    batch_time: str
    session_date: CalendarDate
    formatted_date: str
    short_date: str
    payment_expires_at: datetime
    age_minutes: int
    age_seconds: int
    will_delete_in_minutes: int
    will_delete_in_seconds: int
    slot_available: bool
    can_proceed: bool
    slot: Optional[SlotAvailability] = None

    @field_serializer("payment_expires_at")
    def _ser_datetime(self, dt: datetime) -> Optional[str]:
        return self._ist(dt)

    @classmethod
    def from_status(cls, result: dict[str, Any]) -> "RegistrationStatusRead":
        registration: Registration = result["registration"]
        snapshot: Optional[SlotSnapshot] = result["snapshot"]
        return cls(
            registration_code=registration.registration_code,
            event_name=registration.event_name,
            status=registration.status,
            payment_status=registration.payment_status,
            batch=registration.batch,
            batch_time=registration.batch_time,
            session_date=registration.session_date,
            formatted_date=format_long_date(registration.session_date),
            short_date=format_short_date(registration.session_date),
            payment_expires_at=registration.payment_expires_at,
            age_minutes=result["age_minutes"],
            age_seconds=result["age_seconds"],
            will_delete_in_minutes=result["will_delete_in_minutes"],
            will_delete_in_seconds=result["will_delete_in_seconds"],
            slot_available=result["slot_available"],
            can_proceed=result["can_proceed"],
            slot=SlotAvailability.from_snapshot(snapshot) if snapshot is not None else None,
        )


class PaymentSummary(_IstDatetimes):
    payment_id: Optional[str]
    order_id: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    method: Optional[str]
    status: Optional[str]
    paid_at: Optional[datetime]

    @field_serializer("paid_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return self._ist(dt)


class RegistrationRead(_IstDatetimes):
    """Participant-safe view: request metadata stays out."""

    registration_code: str
    event_name: str
    batch: str
    batch_time: str
    session_date: CalendarDate
    formatted_date: str
    parent_name: str
    email: str
    phone: str
    child_name: str
    child_age: str
    material_type: bool
    status: RegistrationStatus
    payment_status: PaymentStatus
    created_at: datetime
    payment_expires_at: datetime
    payment_confirmed_at: Optional[datetime]
    payment: PaymentSummary

    @field_serializer("created_at", "payment_expires_at", "payment_confirmed_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return self._ist(dt)

    @classmethod
    def _fields_from_db(cls, registration: Registration) -> dict[str, Any]:
        return dict(
            registration_code=registration.registration_code,
            event_name=registration.event_name,
            batch=registration.batch,
            batch_time=registration.batch_time,
            session_date=registration.session_date,
            formatted_date=format_long_date(registration.session_date),
            parent_name=registration.parent_name,
            email=registration.email,
            phone=registration.phone,
            child_name=registration.child_name,
            child_age=registration.child_age,
            material_type=registration.material_type,
            status=registration.status,
            payment_status=registration.payment_status,
            created_at=registration.created_at,
            payment_expires_at=registration.payment_expires_at,
            payment_confirmed_at=registration.payment_confirmed_at,
            payment=PaymentSummary(
                payment_id=registration.gateway_payment_id,
                order_id=registration.gateway_order_id,
                amount=registration.payment_amount,
                currency=registration.payment_currency,
                method=registration.payment_method,
                status=registration.payment_state,
                paid_at=registration.paid_at,
            ),
        )

    @classmethod
    def from_db(cls, registration: Registration) -> "RegistrationRead":
        return cls(**cls._fields_from_db(registration))


class PaymentLogRead(_IstDatetimes):
    gateway_payment_id: str
    gateway_order_id: Optional[str]
    amount: int
    currency: str
    status: str
    method: Optional[str]
    error_code: Optional[str]
    error_description: Optional[str]
    source: str
    created_at: datetime

    @field_serializer("created_at")
    def _ser_datetime(self, dt: datetime) -> Optional[str]:
        return self._ist(dt)

    @classmethod
    def from_db(cls, entry: PaymentLog) -> "PaymentLogRead":
        return cls(
            gateway_payment_id=entry.gateway_payment_id,
            gateway_order_id=entry.gateway_order_id,
            amount=entry.amount,
            currency=entry.currency,
            status=entry.status.value,
            method=entry.method,
            error_code=entry.error_code,
            error_description=entry.error_description,
            source=entry.source,
            created_at=entry.created_at,
        )


class AdminRegistrationRead(RegistrationRead):
    ip_address: Optional[str]
    user_agent: Optional[str]
    source: str
    expired_at: Optional[datetime]
    expiration_reason: Optional[str]
    payment_logs: List[PaymentLogRead] = Field(default_factory=list)

    @field_serializer("expired_at")
    def _ser_expired(self, dt: Optional[datetime]) -> Optional[str]:
        return self._ist(dt)

    @classmethod
    def from_admin(
        cls,
        registration: Registration,
        logs: Optional[List[PaymentLog]] = None,
    ) -> "AdminRegistrationRead":
        return cls(
            **cls._fields_from_db(registration),
            ip_address=registration.ip_address,
            user_agent=registration.user_agent,
            source=registration.source,
            expired_at=registration.expired_at,
            expiration_reason=registration.expiration_reason,
            payment_logs=[PaymentLogRead.from_db(entry) for entry in logs or []],
        )


class RegistrationPage(BaseModel):
    items: List[AdminRegistrationRead]
    total: int
    page: int
    limit: int
    pages: int
    has_next: bool
    has_prev: bool


class PaymentOrderRead(BaseModel):
    order_id: str
    amount: int
    currency: str
    key_id: str


class PaymentVerifyRequest(BaseModel):
    registration_code: str = Field(min_length=1, max_length=32)
    razorpay_order_id: str = ""
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)
    payment_method: Optional[str] = None


class PaymentVerified(BaseModel):
    already_paid: bool
    registration: RegistrationRead


class ExpireResult(BaseModel):
    registration_code: str
    previous_status: RegistrationStatus
    previous_payment_status: PaymentStatus
    deleted: bool = True


class SweepResult(BaseModel):
    deleted_count: int
    deleted_codes: List[str]
