import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional

from ..models import Registration, RegistrationStatus
from .errors import CapacityExceededError, ValidationError

LIMITED_THRESHOLD = 3
CODE_DIGITS = 5
BATCH_TIME_MARKER = "⏰"


@dataclass(frozen=True)
class ScopeKey:
    event_name: str
    batch: str
    session_date: date


@dataclass(frozen=True)
class ScopeCounts:
    confirmed: int
    active_holds: int
    expired_holds: int


@dataclass(frozen=True)
class SlotSnapshot:
    scope: ScopeKey
    capacity: int
    confirmed: int
    active_holds: int
    expired_holds: int
    unlimited: bool
    stale_deleted: int = 0

    @property
    def occupied(self) -> int:
        return self.confirmed + self.active_holds

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.occupied)

    @property
    def is_full(self) -> bool:
        return not self.unlimited and self.remaining == 0

    @property
    def status(self) -> str:
        return classify_remaining(self.remaining, unlimited=self.unlimited)

    def as_data(self) -> dict[str, Any]:
        return {
            "capacity": self.capacity,
            "confirmed_count": self.confirmed,
            "active_hold_count": self.active_holds,
            "registered_count": self.occupied,
            "remaining": self.remaining,
        }


def classify_remaining(remaining: int, *, unlimited: bool = False) -> str:
    """Presentation hint only."""
    if unlimited:
        return "available"
    if remaining == 0:
        return "full"
    if remaining <= LIMITED_THRESHOLD:
        return "limited"
    return "available"


def build_snapshot(
    scope: ScopeKey,
    counts: ScopeCounts,
    *,
    batch_capacity: int,
    unlimited_dates: Iterable[date],
    unlimited_capacity: int,
    stale_deleted: int = 0,
) -> SlotSnapshot:
    unlimited = scope.session_date in set(unlimited_dates)
    return SlotSnapshot(
        scope=scope,
        capacity=unlimited_capacity if unlimited else batch_capacity,
        confirmed=counts.confirmed,
        active_holds=counts.active_holds,
        expired_holds=counts.expired_holds,
        unlimited=unlimited,
        stale_deleted=stale_deleted,
    )


def ensure_can_hold(snapshot: SlotSnapshot) -> int:
    """Raise if a new hold would not fit. Returns remaining slots after the hold."""
    if snapshot.is_full:
        raise CapacityExceededError(
            "this batch on the selected date is full, please pick another batch or date",
            data=snapshot.as_data(),
        )
    return max(0, snapshot.remaining - 1)


def ensure_can_confirm(snapshot: SlotSnapshot) -> None:
    """The hold being confirmed is already counted as active, so only others compete with it."""
    if snapshot.unlimited:
        return
    others = max(0, snapshot.occupied - 1)
    if others >= snapshot.capacity:
        raise CapacityExceededError(
            "this slot is no longer available",
            data=snapshot.as_data(),
        )


def hold_cutoff(now: datetime, delete_after: timedelta) -> datetime:
    return now - delete_after


def is_hold_stale(registration: Registration, *, now: datetime, delete_after: timedelta) -> bool:
    return (
        registration.status == RegistrationStatus.PENDING_PAYMENT
        and registration.created_at < hold_cutoff(now, delete_after)
    )


def next_registration_code(prefix: str, latest: Optional[str]) -> str:
    next_number = 1
    if latest:
        match = re.fullmatch(rf"{re.escape(prefix)}-(\d{{{CODE_DIGITS},}})", latest)
        if match:
            next_number = int(match.group(1)) + 1
    return f"{prefix}-{next_number:0{CODE_DIGITS}d}"


def extract_batch_time(batch: str) -> str:
    if BATCH_TIME_MARKER in batch:
        return batch.split(BATCH_TIME_MARKER, 1)[1].strip() or batch
    return batch


def registration_fee(*, material_type: bool, with_material: int, without_material: int) -> int:
    return with_material if material_type else without_material


def validate_session_date(day: date, *, today: date, available_dates: Iterable[str] = ()) -> None:
    allowed = [d for d in available_dates if d]
    if allowed and day.isoformat() not in allowed:
        raise ValidationError(
            f"date {day.isoformat()} is not available for this workshop",
            data={"errors": {"selectedDate": "date not available"}},
        )
    if day < today:
        raise ValidationError(
            "selected date is in the past",
            data={"errors": {"selectedDate": "date is in the past"}},
        )


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^[6-9]\d{9}$")
_PHONE_NOISE_RE = re.compile(r"[\s+\-()]")
MIN_CHILD_AGE = 3
MAX_CHILD_AGE = 16


def normalize_phone(phone: str) -> str:
    digits = _PHONE_NOISE_RE.sub("", phone or "")
    if len(digits) == 12 and digits.startswith("91"):
        digits = digits[2:]
    return digits


def validate_participant(
    *,
    parent_name: str,
    email: str,
    phone: str,
    child_name: str,
    child_age: str,
    batch: str,
) -> None:
    """Collects every field problem before raising, so the client can show them all at once."""
    errors: dict[str, str] = {}
    if len((parent_name or "").strip()) < 2:
        errors["parentName"] = "parent name must be at least 2 characters"
    if not _EMAIL_RE.match((email or "").strip()):
        errors["email"] = "please enter a valid email address"
    if not _PHONE_RE.match(normalize_phone(phone)):
        errors["phone"] = "please enter a valid 10-digit Indian mobile number"
    if len((child_name or "").strip()) < 2:
        errors["childName"] = "child name must be at least 2 characters"
    try:
        age = int(str(child_age).strip())
    except ValueError:
        errors["childAge"] = "child age must be a number"
    else:
        if not MIN_CHILD_AGE <= age <= MAX_CHILD_AGE:
            errors["childAge"] = f"child age must be between {MIN_CHILD_AGE} and {MAX_CHILD_AGE}"
    if BATCH_TIME_MARKER not in (batch or ""):
        errors["selectedBatch"] = "please select a valid batch"
    if errors:
        raise ValidationError("registration details are invalid", data={"errors": errors})
