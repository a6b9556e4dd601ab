from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from birthday_messenger.delivery_store import DeliveryStore
from birthday_messenger.errors import (
    DeliveryError,
    GenerationError,
    ProviderConnectionError,
    StartupValidationError,
    StoreError,
)
from birthday_messenger.models import DeliveryOutcome, RecipientRecord, RetryPolicy
from birthday_messenger.orchestrator import CYCLE_JOB_ID, Orchestrator
from birthday_messenger.recipient_cache import RecipientCache

NOW = datetime(2026, 5, 15, 14, 0, tzinfo=timezone.utc)

ALICE = {
    "id": "alice",
    "name": "Alice",
    "birthdate": "1990-05-15",
    "language": "en",
    "phone_number": "+12125550100",
    "country": "USA",
}
BOB = {
    "id": "bob",
    "name": "Bob",
    "birthdate": "15/05/1985",
    "language": "en",
    "phone_number": "+447700900123",
    "country": "UK",
}
CAROL = {
    "id": "carol",
    "name": "Carol",
    "birthdate": "1970-01-01",
    "language": "hi",
    "phone_number": "+919876543210",
    "country": "India",
}


class SimulatedCrash(BaseException):
    pass


@dataclass
class FakeRosterProvider:
    rows: list[dict[str, str]]
    fail: bool = False
    events: list[str] | None = None

    async def fetch(self) -> list[dict[str, str]]:
        if self.events is not None:
            self.events.append("roster")
        if self.fail:
            raise ProviderConnectionError("sheet unreachable")
        return list(self.rows)


@dataclass
class FakeMessageProvider:
    fail: bool = False
    invalid: bool = False
    calls: list[str] = field(default_factory=list)
    events: list[str] | None = None

    async def validate(self) -> None:
        if self.events is not None:
            self.events.append("messages")
        if self.invalid:
            raise ProviderConnectionError("bad api key")

    async def generate(self, recipient: RecipientRecord) -> str:
        self.calls.append(recipient.recipient_id)
        if self.fail:
            raise GenerationError("model overloaded")
        return f"Happy birthday, {recipient.name}!"


@dataclass
class FakeChannel:
    mode: str = "ok"
    ready: bool = True
    sent: list[tuple[str, str]] = field(default_factory=list)
    events: list[str] | None = None
    fail_numbers: set[str] = field(default_factory=set)

    async def is_ready(self) -> bool:
        if self.events is not None:
            self.events.append("channel")
        return self.ready

    async def send(self, phone_number: str, text: str) -> DeliveryOutcome:
        self.sent.append((phone_number, text))
        await asyncio.sleep(0)
        if self.mode == "refuse" or phone_number in self.fail_numbers:
            return DeliveryOutcome(success=False, timestamp=NOW, error="number not on WhatsApp")
        if self.mode == "raise":
            raise DeliveryError("network down")
        return DeliveryOutcome(success=True, timestamp=NOW, message_id=f"msg-{len(self.sent)}")


@dataclass
class HookedStore:
    """Wraps a real store to inject failures around its calls."""

    inner: DeliveryStore
    was_sent_error: dict[str, Exception] = field(default_factory=dict)
    crash_before_record: bool = False
    crash_after_record: bool = False
    hide_existing: bool = False

    def was_sent(self, recipient_id: str, year: int) -> bool:
        if recipient_id in self.was_sent_error:
            raise self.was_sent_error[recipient_id]
        if self.hide_existing:
            return False
        return self.inner.was_sent(recipient_id, year)

    def record(self, recipient_id: str, year: int, message_id: str | None, text: str, status: str) -> Any:
        if self.crash_before_record:
            raise SimulatedCrash()
        record = self.inner.record(recipient_id, year, message_id, text, status)
        if self.crash_after_record:
            raise SimulatedCrash()
        return record


@dataclass
class RecordingSleep:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class FakeScheduler:
    jobs: list[dict[str, Any]] = field(default_factory=list)
    started: bool = False
    shut_down: bool = False

    def add_job(self, func: Any, trigger: Any, **kwargs: Any) -> None:
        self.jobs.append({"func": func, "trigger": trigger, **kwargs})

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = True) -> None:
        self.shut_down = True


def _store(tmp_path: Path) -> DeliveryStore:
    store = DeliveryStore(tmp_path / "messenger.db")
    store.initialize()
    return store


def _orchestrator(
    *,
    rows: list[dict[str, str]],
    store: Any,
    messages: FakeMessageProvider | None = None,
    channel: FakeChannel | None = None,
    roster: FakeRosterProvider | None = None,
    sleep: RecordingSleep | None = None,
) -> Orchestrator:
    provider = roster or FakeRosterProvider(rows=rows)
    return Orchestrator(
        cache=RecipientCache(provider, clock=lambda: NOW),
        store=store,
        message_provider=messages or FakeMessageProvider(),
        delivery_channel=channel or FakeChannel(),
        generation_retry=RetryPolicy(max_attempts=3, delays_seconds=[1.0, 2.0, 4.0]),
        delivery_retry=RetryPolicy(max_attempts=3, delays_seconds=[300.0]),
        clock=lambda: NOW,
        sleep=sleep or RecordingSleep(),
    )


def _critical_records(caplog: pytest.LogCaptureFixture) -> list[logging.LogRecord]:
    return [record for record in caplog.records if record.levelno == logging.CRITICAL]


def test_end_to_end_success_writes_one_sent_record(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = FakeChannel()
    orchestrator = _orchestrator(rows=[ALICE], store=store, channel=channel)

    summary = asyncio.run(orchestrator.run_cycle())

    history = store.history("alice")
    assert len(history) == 1
    assert history[0].status == "sent"
    assert history[0].message_id == "msg-1"
    assert history[0].year == 2026
    assert history[0].message_content == "Happy birthday, Alice!"
    assert channel.sent == [("+12125550100", "Happy birthday, Alice!")]
    assert (summary.evaluated, summary.matched, summary.sent, summary.failed, summary.skipped) == (1, 1, 1, 0, 0)


def test_end_to_end_exhausted_delivery_records_failure(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    channel = FakeChannel(mode="refuse")
    sleep = RecordingSleep()
    orchestrator = _orchestrator(rows=[ALICE], store=store, channel=channel, sleep=sleep)

    with caplog.at_level(logging.INFO):
        summary = asyncio.run(orchestrator.run_cycle())

    assert len(channel.sent) == 3
    assert sleep.delays == [300.0, 300.0]
    history = store.history("alice")
    assert len(history) == 1
    assert history[0].status == "failed"
    assert history[0].message_id is None
    assert history[0].message_content == "Happy birthday, Alice!"
    assert len(_critical_records(caplog)) == 1
    assert summary.failed == 1


def test_transport_errors_are_retried_like_refusals(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = FakeChannel(mode="raise")

    asyncio.run(_orchestrator(rows=[ALICE], store=store, channel=channel).run_cycle())

    assert len(channel.sent) == 3
    assert store.history("alice")[0].status == "failed"


def test_exhausted_generation_records_failure_without_delivery(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    store = _store(tmp_path)
    messages = FakeMessageProvider(fail=True)
    channel = FakeChannel()
    sleep = RecordingSleep()
    orchestrator = _orchestrator(rows=[ALICE], store=store, messages=messages, channel=channel, sleep=sleep)

    with caplog.at_level(logging.INFO):
        asyncio.run(orchestrator.run_cycle())

    assert messages.calls == ["alice", "alice", "alice"]
    assert sleep.delays == [1.0, 2.0]
    assert channel.sent == []
    record = store.history("alice")[0]
    assert record.status == "failed"
    assert record.message_id is None
    assert "Failed to generate message" in record.message_content
    assert len(_critical_records(caplog)) == 1


def test_existing_record_skips_generation_and_delivery(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record("alice", 2026, "msg-0", "Happy birthday!", "sent")
    messages = FakeMessageProvider()
    channel = FakeChannel()

    summary = asyncio.run(_orchestrator(rows=[ALICE], store=store, messages=messages, channel=channel).run_cycle())

    assert messages.calls == []
    assert channel.sent == []
    assert summary.skipped == 1
    assert len(store.history("alice")) == 1


def test_previous_year_record_does_not_block_this_year(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record("alice", 2025, "msg-old", "Happy birthday!", "sent")

    summary = asyncio.run(_orchestrator(rows=[ALICE], store=store).run_cycle())

    assert summary.sent == 1
    assert [record.year for record in store.history("alice")] == [2026, 2025]


def test_second_cycle_on_same_day_sends_nothing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = FakeChannel()
    orchestrator = _orchestrator(rows=[ALICE, BOB], store=store, channel=channel)

    first = asyncio.run(orchestrator.run_cycle())
    second = asyncio.run(orchestrator.run_cycle())

    assert first.sent == 2
    assert second.sent == 0
    assert second.skipped == 2
    assert len(channel.sent) == 2


def test_crash_before_record_is_retried_next_cycle(tmp_path: Path) -> None:
    channel = FakeChannel()
    crashing = HookedStore(inner=_store(tmp_path), crash_before_record=True)

    with pytest.raises(SimulatedCrash):
        asyncio.run(_orchestrator(rows=[ALICE], store=crashing, channel=channel).run_cycle())

    restarted = _store(tmp_path)
    summary = asyncio.run(_orchestrator(rows=[ALICE], store=restarted, channel=channel).run_cycle())

    assert summary.sent == 1
    assert len(channel.sent) == 2
    assert len(restarted.history("alice")) == 1


def test_crash_after_record_is_skipped_next_cycle(tmp_path: Path) -> None:
    channel = FakeChannel()
    crashing = HookedStore(inner=_store(tmp_path), crash_after_record=True)

    with pytest.raises(SimulatedCrash):
        asyncio.run(_orchestrator(rows=[ALICE], store=crashing, channel=channel).run_cycle())

    restarted = _store(tmp_path)
    messages = FakeMessageProvider()
    summary = asyncio.run(
        _orchestrator(rows=[ALICE], store=restarted, channel=channel, messages=messages).run_cycle()
    )

    assert summary.skipped == 1
    assert messages.calls == []
    assert len(channel.sent) == 1


def test_failure_for_one_recipient_does_not_block_others(tmp_path: Path) -> None:
    store = _store(tmp_path)
    channel = FakeChannel(fail_numbers={"+12125550100"})

    summary = asyncio.run(_orchestrator(rows=[ALICE, BOB, CAROL], store=store, channel=channel).run_cycle())

    assert (summary.evaluated, summary.matched, summary.sent, summary.failed) == (3, 2, 1, 1)
    assert store.history("alice")[0].status == "failed"
    assert store.history("bob")[0].status == "sent"
    assert store.history("carol") == []


def test_unexpected_error_is_recorded_as_failed(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    inner = _store(tmp_path)
    store = HookedStore(inner=inner, was_sent_error={"alice": RuntimeError("boom")})

    with caplog.at_level(logging.ERROR):
        summary = asyncio.run(_orchestrator(rows=[ALICE, BOB], store=store).run_cycle())

    alice = inner.history("alice")
    assert len(alice) == 1
    assert alice[0].status == "failed"
    assert alice[0].message_id is None
    assert "boom" in alice[0].message_content
    assert inner.history("bob")[0].status == "sent"
    assert summary.failed == 1
    assert "Unexpected error processing birthday for alice" in caplog.text


def test_store_error_fails_only_that_recipient(tmp_path: Path) -> None:
    inner = _store(tmp_path)
    store = HookedStore(inner=inner, was_sent_error={"alice": StoreError("disk gone")})
    messages = FakeMessageProvider()

    summary = asyncio.run(_orchestrator(rows=[ALICE, BOB], store=store, messages=messages).run_cycle())

    assert summary.failed == 1
    assert summary.sent == 1
    assert messages.calls == ["bob"]
    assert inner.history("alice") == []


def test_store_conflict_is_treated_as_already_handled(tmp_path: Path) -> None:
    inner = _store(tmp_path)
    inner.record("alice", 2026, "msg-0", "Happy birthday!", "sent")
    store = HookedStore(inner=inner, hide_existing=True)

    summary = asyncio.run(_orchestrator(rows=[ALICE], store=store).run_cycle())

    assert summary.skipped == 1
    assert summary.failed == 0
    assert len(inner.history("alice")) == 1
    assert inner.history("alice")[0].message_id == "msg-0"


def test_concurrent_cycles_write_one_record_per_recipient(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = _orchestrator(rows=[ALICE, BOB], store=HookedStore(inner=store, hide_existing=True))
    second = _orchestrator(rows=[ALICE, BOB], store=HookedStore(inner=store, hide_existing=True))

    async def both() -> list[Any]:
        return await asyncio.gather(first.run_cycle(), second.run_cycle())

    summaries = asyncio.run(both())

    assert len(store.history("alice")) == 1
    assert len(store.history("bob")) == 1
    assert sum(summary.sent for summary in summaries) == 2
    assert sum(summary.skipped for summary in summaries) == 2


@dataclass
class ThreadRecordingStore:
    inner: DeliveryStore
    threads: list[int] = field(default_factory=list)

    def was_sent(self, recipient_id: str, year: int) -> bool:
        self.threads.append(threading.get_ident())
        return self.inner.was_sent(recipient_id, year)

    def record(self, recipient_id: str, year: int, message_id: str | None, text: str, status: str) -> Any:
        self.threads.append(threading.get_ident())
        return self.inner.record(recipient_id, year, message_id, text, status)


def test_store_calls_run_off_the_event_loop_thread(tmp_path: Path) -> None:
    store = ThreadRecordingStore(inner=_store(tmp_path))

    summary = asyncio.run(_orchestrator(rows=[ALICE], store=store).run_cycle())

    assert summary.sent == 1
    assert len(store.threads) == 2
    assert threading.get_ident() not in store.threads


def test_roster_failure_aborts_cycle(tmp_path: Path) -> None:
    channel = FakeChannel()
    roster = FakeRosterProvider(rows=[ALICE], fail=True)
    orchestrator = _orchestrator(rows=[ALICE], store=_store(tmp_path), channel=channel, roster=roster)

    with pytest.raises(ProviderConnectionError):
        asyncio.run(orchestrator.run_cycle())

    assert channel.sent == []


def test_scheduled_cycle_logs_roster_failure(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    roster = FakeRosterProvider(rows=[ALICE], fail=True)
    orchestrator = _orchestrator(rows=[ALICE], store=_store(tmp_path), roster=roster)

    with caplog.at_level(logging.ERROR):
        asyncio.run(orchestrator.scheduled_cycle())

    assert "Cycle aborted, roster unavailable" in caplog.text


def test_no_birthdays_means_no_work(tmp_path: Path) -> None:
    messages = FakeMessageProvider()

    summary = asyncio.run(_orchestrator(rows=[CAROL], store=_store(tmp_path), messages=messages).run_cycle())

    assert (summary.evaluated, summary.matched) == (1, 0)
    assert messages.calls == []


def test_run_cycle_accepts_explicit_reference(tmp_path: Path) -> None:
    summary = asyncio.run(
        _orchestrator(rows=[ALICE, CAROL], store=_store(tmp_path)).run_cycle(
            datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        )
    )

    assert summary.matched == 1
    assert summary.sent == 1


def test_start_validates_in_order_then_arms_scheduler(tmp_path: Path) -> None:
    events: list[str] = []
    orchestrator = _orchestrator(
        rows=[ALICE],
        store=_store(tmp_path),
        roster=FakeRosterProvider(rows=[ALICE], events=events),
        messages=FakeMessageProvider(events=events),
        channel=FakeChannel(events=events),
    )
    scheduler = FakeScheduler()

    asyncio.run(orchestrator.start(scheduler=scheduler))

    assert events == ["roster", "messages", "channel"]
    assert scheduler.started is True
    assert len(scheduler.jobs) == 1
    assert scheduler.jobs[0]["id"] == CYCLE_JOB_ID
    assert scheduler.jobs[0]["func"] == orchestrator.scheduled_cycle

    orchestrator.stop()
    assert scheduler.shut_down is True


@pytest.mark.parametrize(
    ("roster_fail", "messages_invalid", "channel_ready", "expected_events"),
    [
        (True, False, True, ["roster"]),
        (False, True, True, ["roster", "messages"]),
        (False, False, False, ["roster", "messages", "channel"]),
    ],
)
def test_start_halts_before_scheduling_on_validation_failure(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
    roster_fail: bool,
    messages_invalid: bool,
    channel_ready: bool,
    expected_events: list[str],
) -> None:
    events: list[str] = []
    orchestrator = _orchestrator(
        rows=[ALICE],
        store=_store(tmp_path),
        roster=FakeRosterProvider(rows=[ALICE], fail=roster_fail, events=events),
        messages=FakeMessageProvider(invalid=messages_invalid, events=events),
        channel=FakeChannel(ready=channel_ready, events=events),
    )
    scheduler = FakeScheduler()

    with caplog.at_level(logging.INFO), pytest.raises(StartupValidationError):
        asyncio.run(orchestrator.start(scheduler=scheduler))

    assert events == expected_events
    assert scheduler.jobs == []
    assert scheduler.started is False
    assert len(_critical_records(caplog)) == 1
