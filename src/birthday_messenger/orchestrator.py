from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Literal
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from birthday_messenger.date_logic import match_birthday
from birthday_messenger.delivery import DeliveryChannel
from birthday_messenger.delivery_store import DeliveryStore
from birthday_messenger.errors import (
    DeliveryError,
    DuplicateRecordError,
    ProviderConnectionError,
    StartupValidationError,
    StoreError,
)
from birthday_messenger.messages import MessageProvider
from birthday_messenger.models import (
    BirthdayMatch,
    CycleSummary,
    DeliveryOutcome,
    DeliveryStatus,
    RecipientRecord,
    RetryPolicy,
)
from birthday_messenger.recipient_cache import Clock, RecipientCache, utc_now
from birthday_messenger.retry import RetryExecutor, Sleep

LOGGER = logging.getLogger(__name__)

CYCLE_JOB_ID = "daily-birthday-cycle"

Disposition = Literal["sent", "failed", "skipped"]


def _details(**values: Any) -> dict[str, Any]:
    return {"details": values}


class Orchestrator:
    """Daily birthday cycle: evaluate every recipient, then generate, deliver and record matches.

    Each matched recipient runs in its own task and ends in exactly one
    disposition (sent, failed or skipped); a failure for one recipient never
    stops the others. The delivery record is written only once the workflow has
    finished, so a crash mid-workflow leaves no record and the next cycle retries.
    """

    def __init__(
        self,
        *,
        cache: RecipientCache,
        store: DeliveryStore,
        message_provider: MessageProvider,
        delivery_channel: DeliveryChannel,
        generation_retry: RetryPolicy,
        delivery_retry: RetryPolicy,
        leap_day_rule: str = "feb28",
        schedule: str = "0 4 * * *",
        scheduler_timezone: str = "UTC",
        max_concurrent_recipients: int = 5,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._store = store
        self._messages = message_provider
        self._channel = delivery_channel
        self._generation_retry = generation_retry
        self._delivery_retry = delivery_retry
        self._leap_day_rule = leap_day_rule
        self._schedule = schedule
        self._scheduler_timezone = scheduler_timezone
        self._max_concurrent = max(1, max_concurrent_recipients)
        self._clock = clock
        self._generation_executor = RetryExecutor(sleep=sleep, name="message generation")
        self._delivery_executor = RetryExecutor(sleep=sleep, name="delivery")
        self._scheduler: Any | None = None

    async def validate_startup(self) -> None:
        checks = (
            ("roster", self._check_roster),
            ("message provider", self._messages.validate),
            ("delivery channel", self._check_channel),
        )
        for label, check in checks:
            try:
                await check()
            except Exception as exc:
                LOGGER.critical(
                    "Startup validation failed for %s: %s",
                    label,
                    exc,
                    extra=_details(component=label, error=str(exc)),
                )
                raise StartupValidationError(f"{label} validation failed: {exc}") from exc
            LOGGER.info("%s validated", label.capitalize())

    async def _check_roster(self) -> None:
        await self._cache.force_refresh()

    async def _check_channel(self) -> None:
        if not await self._channel.is_ready():
            raise ProviderConnectionError("delivery channel is not ready")

    async def start(self, scheduler: Any | None = None) -> None:
        await self.validate_startup()

        tz = ZoneInfo(self._scheduler_timezone)
        self._scheduler = scheduler if scheduler is not None else AsyncIOScheduler(timezone=tz)
        self._scheduler.add_job(
            self.scheduled_cycle,
            CronTrigger.from_crontab(self._schedule, timezone=tz),
            id=CYCLE_JOB_ID,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
            replace_existing=True,
        )
        self._scheduler.start()
        LOGGER.info("Scheduler started: cycle runs on %r (%s)", self._schedule, self._scheduler_timezone)

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            LOGGER.info("Scheduler stopped")

    async def scheduled_cycle(self) -> None:
        try:
            await self.run_cycle()
        except ProviderConnectionError as exc:
            LOGGER.error("Cycle aborted, roster unavailable: %s", exc)
        except Exception:
            LOGGER.exception("Cycle aborted by unexpected error")

    async def run_cycle(self, now: datetime | None = None) -> CycleSummary:
        reference = now if now is not None else self._clock()
        summary = CycleSummary()

        try:
            recipients = await self._cache.load()
        except ProviderConnectionError as exc:
            LOGGER.error("Roster refresh failed, aborting cycle: %s", exc)
            raise

        summary.evaluated = len(recipients)
        matches: list[tuple[RecipientRecord, BirthdayMatch]] = []
        for recipient in recipients:
            try:
                match = match_birthday(recipient, reference, self._leap_day_rule)
            except ValueError as exc:
                LOGGER.error("Cannot evaluate birthday for %s: %s", recipient.recipient_id, exc)
                continue
            if match is None:
                continue
            LOGGER.info(
                "Birthday detected for %s (%s, %s)",
                recipient.name,
                recipient.country,
                recipient.timezone,
                extra=_details(recipient_id=recipient.recipient_id, local_date=match.local_date.isoformat()),
            )
            matches.append((recipient, match))
        summary.matched = len(matches)

        semaphore = asyncio.Semaphore(self._max_concurrent)

        async def limited(recipient: RecipientRecord, match: BirthdayMatch) -> Disposition:
            async with semaphore:
                return await self.process_recipient(recipient, match)

        dispositions = await asyncio.gather(*(limited(recipient, match) for recipient, match in matches))
        for disposition in dispositions:
            if disposition == "sent":
                summary.sent += 1
            elif disposition == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1

        LOGGER.info(
            "Cycle complete: %s evaluated, %s matched, %s sent, %s failed, %s skipped",
            summary.evaluated,
            summary.matched,
            summary.sent,
            summary.failed,
            summary.skipped,
        )
        return summary

    async def process_recipient(self, recipient: RecipientRecord, match: BirthdayMatch) -> Disposition:
        year = match.local_date.year
        try:
            return await self._workflow(recipient, year)
        except StoreError as exc:
            LOGGER.error(
                "Delivery store unavailable while processing %s for %s: %s",
                recipient.recipient_id,
                year,
                exc,
                extra=_details(recipient_id=recipient.recipient_id, year=year, error=str(exc)),
            )
            return "failed"
        except Exception as exc:
            LOGGER.exception("Unexpected error processing birthday for %s", recipient.recipient_id)
            try:
                return await self._finish(recipient, year, None, f"Failed to generate/send message: {exc}", "failed")
            except StoreError as record_exc:
                LOGGER.error("Could not record failure for %s: %s", recipient.recipient_id, record_exc)
                return "failed"

    async def _workflow(self, recipient: RecipientRecord, year: int) -> Disposition:
        if await asyncio.to_thread(self._store.was_sent, recipient.recipient_id, year):
            LOGGER.info("Birthday message for %s already handled in %s, skipping", recipient.recipient_id, year)
            return "skipped"

        try:
            text = await self._generation_executor.run_with_policy(
                lambda: self._messages.generate(recipient),
                self._generation_retry,
            )
        except Exception as exc:
            LOGGER.critical(
                "Message generation for %s failed after %s attempts: %s",
                recipient.recipient_id,
                self._generation_retry.max_attempts,
                exc,
                extra=_details(recipient_id=recipient.recipient_id, year=year, error=str(exc)),
            )
            return await self._finish(recipient, year, None, f"Failed to generate message: {exc}", "failed")

        try:
            outcome = await self._delivery_executor.run_with_policy(
                lambda: self._deliver(recipient, text),
                self._delivery_retry,
            )
        except Exception as exc:
            LOGGER.critical(
                "Delivery to %s failed after %s attempts: %s",
                recipient.recipient_id,
                self._delivery_retry.max_attempts,
                exc,
                extra=_details(recipient_id=recipient.recipient_id, year=year, error=str(exc)),
            )
            return await self._finish(recipient, year, None, text, "failed")

        disposition = await self._finish(recipient, year, outcome.message_id, text, "sent")
        if disposition == "sent":
            LOGGER.info(
                "Sent birthday message to %s (message id %s)",
                recipient.name,
                outcome.message_id,
                extra=_details(recipient_id=recipient.recipient_id, year=year, message_id=outcome.message_id),
            )
        return disposition

    async def _deliver(self, recipient: RecipientRecord, text: str) -> DeliveryOutcome:
        outcome = await self._channel.send(recipient.phone_number, text)
        if not outcome.success:
            raise DeliveryError(outcome.error or "delivery channel reported failure")
        return outcome

    async def _finish(
        self,
        recipient: RecipientRecord,
        year: int,
        message_id: str | None,
        text: str,
        status: DeliveryStatus,
    ) -> Disposition:
        try:
            await asyncio.to_thread(self._store.record, recipient.recipient_id, year, message_id, text, status)
        except DuplicateRecordError:
            LOGGER.info("Delivery for %s in %s was already recorded elsewhere", recipient.recipient_id, year)
            return "skipped"
        return "sent" if status == "sent" else "failed"
