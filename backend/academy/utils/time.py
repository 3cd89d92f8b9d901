from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

IST = ZoneInfo("Asia/Kolkata")


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def utc_naive_to_ist(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc).astimezone(IST)


def parse_calendar_date(value: str | date | datetime) -> date:
    """Normalise a `YYYY-MM-DD` string (or a date/datetime) to the UTC calendar day."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValueError(f"invalid date: {value!r}") from exc


def elapsed(since: datetime, now: datetime) -> timedelta:
    return max(now - since, timedelta(0))


def remaining(since: datetime, threshold: timedelta, now: datetime) -> timedelta:
    """Time left before `since + threshold`, never negative."""
    return max(since + threshold - now, timedelta(0))


def minutes_seconds(delta: timedelta) -> tuple[int, int]:
    total = int(delta.total_seconds())
    return total // 60, total % 60


def format_long_date(day: date) -> str:
    # e.g. "Sunday, 25 January 2026"
    return f"{day:%A}, {day.day} {day:%B %Y}"


def format_short_date(day: date) -> str:
    return f"{day:%d %b %Y}"
