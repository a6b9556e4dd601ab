from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from birthday_messenger.models import BirthdayMatch, RecipientRecord

LEAP_DAY_RULES = ("feb28", "mar1", "never")


class InvalidBirthdayError(ValueError):
    pass


def is_leap_year(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def validate_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidBirthdayError(f"Unknown timezone: {name!r}") from exc


def local_date(reference: datetime, timezone: str) -> date:
    if reference.tzinfo is None or reference.utcoffset() is None:
        raise ValueError("reference instant must be timezone-aware")
    return reference.astimezone(validate_timezone(timezone)).date()


def birthday_date_for_year(birthdate: date, year: int, leap_day_rule: str) -> date | None:
    """Date the birthday is observed on in ``year``.

    Only a Feb 29 birthdate in a non-leap year is affected by ``leap_day_rule``:
    ``feb28`` observes it on Feb 28, ``mar1`` on Mar 1 and ``never`` skips the
    year entirely (returns None).
    """
    if birthdate.month == 2 and birthdate.day == 29 and not is_leap_year(year):
        if leap_day_rule == "feb28":
            return date(year, 2, 28)
        if leap_day_rule == "mar1":
            return date(year, 3, 1)
        if leap_day_rule == "never":
            return None
        raise InvalidBirthdayError(f"Unsupported leap day rule: {leap_day_rule}")
    return date(year, birthdate.month, birthdate.day)


def is_birthday_today(
    birthdate: date,
    timezone: str,
    reference: datetime,
    leap_day_rule: str = "feb28",
) -> bool:
    today = local_date(reference, timezone)
    return birthday_date_for_year(birthdate, today.year, leap_day_rule) == today


def match_birthday(
    recipient: RecipientRecord,
    reference: datetime,
    leap_day_rule: str = "feb28",
) -> BirthdayMatch | None:
    today = local_date(reference, recipient.timezone)
    if birthday_date_for_year(recipient.birthdate, today.year, leap_day_rule) != today:
        return None
    return BirthdayMatch(recipient_id=recipient.recipient_id, local_date=today)
