from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal

DeliveryStatus = Literal["sent", "failed", "pending"]
DELIVERY_STATUSES: tuple[str, ...] = ("sent", "failed", "pending")

DEFAULT_GENERATION_DELAYS = [1.0, 2.0, 4.0]
DEFAULT_DELIVERY_DELAYS = [300.0]


@dataclass(frozen=True)
class RecipientRecord:
    recipient_id: str
    name: str
    birthdate: date
    language: str
    phone_number: str
    country: str
    timezone: str


@dataclass(frozen=True)
class DeliveryRecord:
    recipient_id: str
    year: int
    message_id: str | None
    message_content: str
    timestamp: datetime
    status: DeliveryStatus
    record_id: int | None = None


@dataclass(frozen=True)
class BirthdayMatch:
    recipient_id: str
    local_date: date


@dataclass(frozen=True)
class DeliveryOutcome:
    success: bool
    timestamp: datetime
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delays_seconds: list[float]


@dataclass(frozen=True)
class AppConfig:
    schedule: str
    scheduler_timezone: str
    default_timezone: str
    leap_day_rule: str
    cache_freshness_hours: float
    catch_up_on_start: bool
    message_mode: str
    sender_name: str
    use_emojis: bool
    generation_retry: RetryPolicy
    delivery_retry: RetryPolicy
    templates: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class CycleSummary:
    evaluated: int = 0
    matched: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
