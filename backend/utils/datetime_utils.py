from datetime import datetime, date, timezone
from zoneinfo import ZoneInfo

from config import settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def challenge_zone() -> ZoneInfo:
    """The single civil timezone every challenge day is computed in."""
    return ZoneInfo(settings.CHALLENGE_TIMEZONE)


def logical_now(now: datetime | None = None) -> datetime:
    """Wall-clock time in the challenge zone, returned naive for storage."""
    current = now or utcnow()
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(challenge_zone()).replace(tzinfo=None)


def logical_today(now: datetime | None = None) -> date:
    """Today's civil date in the challenge zone, regardless of the caller's zone."""
    return logical_now(now).date()


def to_civil_date(value: date | datetime | str | None) -> date | None:
    """Normalize a stored or supplied date to a civil date in the challenge zone.

    Aware datetimes are converted to the challenge zone before the time of day
    is dropped. Naive datetimes are taken to already be challenge-zone times.
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if len(text) == 10:
            return date.fromisoformat(text)
        value = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(challenge_zone())
        return value.date()
    return value


def global_day_number(
    start_date: date | datetime | str | None,
    number_of_days: int | None,
    today: date | datetime | None = None,
) -> int:
    """1-based challenge day for ``today``.

    Returns 0 before the start date (or for an unconfigured challenge) and keeps
    counting past ``number_of_days`` once the window has closed.
    """
    start = to_civil_date(start_date)
    if start is None or not number_of_days or int(number_of_days) <= 0:
        return 0
    current = to_civil_date(today) if today is not None else logical_today()
    day_diff = (current - start).days
    if day_diff < 0:
        return 0
    return day_diff + 1


def target_for_day(starting_value: int | None, increment_per_day: int | None, day: int) -> int:
    return int(starting_value or 0) + (max(int(day), 1) - 1) * int(increment_per_day or 0)


def calculate_progress(current_day: int | None, number_of_days: int | None) -> int:
    if not number_of_days or number_of_days <= 0:
        return 0
    value = (float(current_day or 0) / float(number_of_days)) * 100.0
    return max(0, min(100, int(value + 0.5)))


def format_seconds(seconds: int | float) -> str:
    total = max(int(seconds), 0)
    return f"{total // 60}:{total % 60:02d}"
