from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import date

from birthday_messenger.date_logic import InvalidBirthdayError, validate_timezone
from birthday_messenger.errors import RecipientValidationError
from birthday_messenger.models import RecipientRecord

LOGGER = logging.getLogger(__name__)

RawRow = Mapping[str, str]

ROSTER_COLUMNS = ("name", "birthdate", "language", "phone_number", "country")

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
MIN_PHONE_DIGITS = 7
MAX_PHONE_DIGITS = 15

_BIRTHDATE_PATTERNS = (
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), ("year", "month", "day")),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), ("day", "month", "year")),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), ("day", "month", "year")),
)

# Countries spanning several zones map to their most populous one.
COUNTRY_TIMEZONES = {
    "usa": "America/New_York",
    "united states": "America/New_York",
    "us": "America/New_York",
    "canada": "America/Toronto",
    "mexico": "America/Mexico_City",
    "brazil": "America/Sao_Paulo",
    "argentina": "America/Argentina/Buenos_Aires",
    "chile": "America/Santiago",
    "colombia": "America/Bogota",
    "peru": "America/Lima",
    "venezuela": "America/Caracas",
    "uk": "Europe/London",
    "united kingdom": "Europe/London",
    "england": "Europe/London",
    "scotland": "Europe/London",
    "wales": "Europe/London",
    "ireland": "Europe/Dublin",
    "france": "Europe/Paris",
    "germany": "Europe/Berlin",
    "spain": "Europe/Madrid",
    "italy": "Europe/Rome",
    "portugal": "Europe/Lisbon",
    "netherlands": "Europe/Amsterdam",
    "belgium": "Europe/Brussels",
    "switzerland": "Europe/Zurich",
    "austria": "Europe/Vienna",
    "poland": "Europe/Warsaw",
    "sweden": "Europe/Stockholm",
    "norway": "Europe/Oslo",
    "denmark": "Europe/Copenhagen",
    "finland": "Europe/Helsinki",
    "greece": "Europe/Athens",
    "russia": "Europe/Moscow",
    "turkey": "Europe/Istanbul",
    "india": "Asia/Kolkata",
    "china": "Asia/Shanghai",
    "japan": "Asia/Tokyo",
    "south korea": "Asia/Seoul",
    "korea": "Asia/Seoul",
    "thailand": "Asia/Bangkok",
    "vietnam": "Asia/Ho_Chi_Minh",
    "singapore": "Asia/Singapore",
    "malaysia": "Asia/Kuala_Lumpur",
    "indonesia": "Asia/Jakarta",
    "philippines": "Asia/Manila",
    "pakistan": "Asia/Karachi",
    "bangladesh": "Asia/Dhaka",
    "sri lanka": "Asia/Colombo",
    "nepal": "Asia/Kathmandu",
    "uae": "Asia/Dubai",
    "united arab emirates": "Asia/Dubai",
    "saudi arabia": "Asia/Riyadh",
    "israel": "Asia/Jerusalem",
    "hong kong": "Asia/Hong_Kong",
    "taiwan": "Asia/Taipei",
    "australia": "Australia/Sydney",
    "new zealand": "Pacific/Auckland",
    "south africa": "Africa/Johannesburg",
    "egypt": "Africa/Cairo",
    "nigeria": "Africa/Lagos",
    "kenya": "Africa/Nairobi",
    "morocco": "Africa/Casablanca",
    "ethiopia": "Africa/Addis_Ababa",
    "ghana": "Africa/Accra",
    "tanzania": "Africa/Dar_es_Salaam",
    "uganda": "Africa/Kampala",
    "algeria": "Africa/Algiers",
}

COUNTRY_CALLING_CODES = {
    "india": "91",
    "united states": "1",
    "usa": "1",
    "us": "1",
    "canada": "1",
    "united kingdom": "44",
    "uk": "44",
    "australia": "61",
    "germany": "49",
    "france": "33",
    "japan": "81",
    "china": "86",
    "brazil": "55",
    "mexico": "52",
    "russia": "7",
    "south korea": "82",
    "italy": "39",
    "spain": "34",
    "netherlands": "31",
    "sweden": "46",
    "norway": "47",
    "denmark": "45",
    "finland": "358",
    "switzerland": "41",
    "austria": "43",
    "belgium": "32",
    "portugal": "351",
    "greece": "30",
    "turkey": "90",
    "israel": "972",
    "south africa": "27",
    "egypt": "20",
    "nigeria": "234",
    "kenya": "254",
    "ghana": "233",
    "singapore": "65",
    "malaysia": "60",
    "thailand": "66",
    "philippines": "63",
    "indonesia": "62",
    "vietnam": "84",
    "pakistan": "92",
    "bangladesh": "880",
    "sri lanka": "94",
    "nepal": "977",
    "uae": "971",
    "united arab emirates": "971",
    "saudi arabia": "966",
    "qatar": "974",
    "kuwait": "965",
}


@dataclass(frozen=True)
class RosterValidation:
    recipients: list[RecipientRecord]
    rejected: list[RecipientValidationError]


def normalize_name(name: str) -> str:
    return " ".join(name.strip().lower().split())


def parse_birthdate(value: str) -> date:
    text = value.strip()
    for pattern, order in _BIRTHDATE_PATTERNS:
        match = pattern.match(text)
        if match is None:
            continue
        parts = dict(zip(order, (int(group) for group in match.groups())))
        try:
            return date(parts["year"], parts["month"], parts["day"])
        except ValueError as exc:
            raise InvalidBirthdayError(f"Invalid birthdate: {value!r}") from exc
    raise InvalidBirthdayError(
        f"Unsupported birthdate format: {value!r} (expected YYYY-MM-DD, DD/MM/YYYY or DD-MM-YYYY)"
    )


def is_e164(phone_number: str) -> bool:
    return bool(E164_PATTERN.match(phone_number))


def format_phone_number(raw: str, country: str) -> str:
    """Best-effort conversion of a locally written number to E.164.

    Numbers that already start with ``+`` are returned with separators removed.
    The result is not guaranteed to be valid; callers check it with ``is_e164``.
    """
    text = raw.strip()
    if text.startswith("+"):
        return "+" + re.sub(r"\D", "", text)

    digits = re.sub(r"\D", "", text)
    country_key = normalize_name(country)
    code = COUNTRY_CALLING_CODES.get(country_key)
    if code is None:
        return digits

    if country_key == "india" and len(digits) == 10:
        return f"+91{digits}"
    if digits.startswith(code) and len(digits) > 10:
        return f"+{digits}"
    return f"+{code}{digits.lstrip('0')}"


def timezone_for_country(country: str, default_timezone: str) -> str:
    timezone = COUNTRY_TIMEZONES.get(normalize_name(country))
    if timezone is None:
        LOGGER.error("Unrecognized country %r, defaulting to %s", country, default_timezone)
        return default_timezone
    return timezone


def derive_recipient_id(name: str, birthdate: date, phone_number: str) -> str:
    seed = f"{normalize_name(name)}|{birthdate.month:02d}|{birthdate.day:02d}|{phone_number}"
    return "r-" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


def build_recipient(row: RawRow, row_number: int, default_timezone: str) -> RecipientRecord:
    errors: list[str] = []
    values = {column: str(row.get(column) or "").strip() for column in ROSTER_COLUMNS}

    for column, value in values.items():
        if not value:
            errors.append(f"{column} is required")

    birthdate: date | None = None
    if values["birthdate"]:
        try:
            birthdate = parse_birthdate(values["birthdate"])
        except InvalidBirthdayError as exc:
            errors.append(str(exc))

    phone_number = ""
    if values["phone_number"]:
        phone_number = format_phone_number(values["phone_number"], values["country"])
        if not is_e164(phone_number) or not MIN_PHONE_DIGITS <= len(phone_number) - 1 <= MAX_PHONE_DIGITS:
            errors.append(f"phone_number {values['phone_number']!r} is not a valid E.164 number")

    if errors or birthdate is None:
        raise RecipientValidationError(row_number, errors)

    timezone = timezone_for_country(values["country"], default_timezone)
    explicit_id = str(row.get("id") or "").strip()
    return RecipientRecord(
        recipient_id=explicit_id or derive_recipient_id(values["name"], birthdate, phone_number),
        name=values["name"],
        birthdate=birthdate,
        language=values["language"].lower(),
        phone_number=phone_number,
        country=values["country"],
        timezone=timezone,
    )


def validate_rows(rows: Iterable[RawRow], default_timezone: str, *, first_row_number: int = 2) -> RosterValidation:
    """Turn raw roster rows into recipients, dropping and reporting invalid rows.

    Duplicate identifiers get an occurrence suffix so every recipient stays unique.
    """
    validate_timezone(default_timezone)

    recipients: list[RecipientRecord] = []
    rejected: list[RecipientValidationError] = []
    seen: dict[str, int] = {}

    for offset, row in enumerate(rows):
        row_number = first_row_number + offset
        try:
            recipient = build_recipient(row, row_number, default_timezone)
        except RecipientValidationError as exc:
            LOGGER.error("Skipping roster row %s (%s): %s", row_number, row.get("name") or "unknown", exc)
            rejected.append(exc)
            continue

        occurrence = seen.get(recipient.recipient_id, 0) + 1
        seen[recipient.recipient_id] = occurrence
        if occurrence > 1:
            recipient = replace(recipient, recipient_id=f"{recipient.recipient_id}-{occurrence}")
        recipients.append(recipient)

    return RosterValidation(recipients=recipients, rejected=rejected)
