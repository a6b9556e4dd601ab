from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import timedelta
from logging.handlers import RotatingFileHandler

from birthday_messenger.alerts import TelegramAlertHandler
from birthday_messenger.config_store import ensure_default_config, load_config
from birthday_messenger.delivery import DeliveryChannel, DryRunDeliveryChannel, TwilioDeliveryChannel
from birthday_messenger.delivery_store import DeliveryStore
from birthday_messenger.errors import StartupValidationError
from birthday_messenger.messages import build_message_provider
from birthday_messenger.models import AppConfig
from birthday_messenger.orchestrator import Orchestrator
from birthday_messenger.recipient_cache import RecipientCache
from birthday_messenger.roster_sources import CsvRosterProvider, GoogleSheetsRosterProvider, RosterProvider
from birthday_messenger.settings import Settings, load_settings

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    root = logging.getLogger()

    if settings.log_file_path is not None:
        settings.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            settings.log_file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if settings.telegram_alert_bot_token and settings.telegram_alert_chat_id is not None:
        root.addHandler(
            TelegramAlertHandler(
                bot_token=settings.telegram_alert_bot_token,
                chat_id=settings.telegram_alert_chat_id,
            )
        )

    # httpx logs every request at INFO, including the Sheets API key in the URL.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_roster_provider(settings: Settings) -> RosterProvider:
    if settings.roster_source == "csv":
        if settings.roster_csv_path is None:
            raise ValueError("ROSTER_CSV_PATH is required when ROSTER_SOURCE is 'csv'")
        return CsvRosterProvider(settings.roster_csv_path)
    return GoogleSheetsRosterProvider(
        sheet_id=settings.google_sheets_id or "",
        api_key=settings.google_sheets_api_key or "",
        cell_range=settings.google_sheets_range,
    )


def build_delivery_channel(settings: Settings) -> DeliveryChannel:
    if settings.delivery_mode == "dry-run":
        LOGGER.info("Running in dry-run mode: messages are logged, not sent")
        return DryRunDeliveryChannel()
    return TwilioDeliveryChannel(
        account_sid=settings.twilio_account_sid or "",
        auth_token=settings.twilio_auth_token or "",
        from_number=settings.twilio_from_number or "",
        whatsapp=settings.twilio_whatsapp,
    )


def build_orchestrator(settings: Settings, config: AppConfig, store: DeliveryStore) -> Orchestrator:
    cache = RecipientCache(
        build_roster_provider(settings),
        default_timezone=config.default_timezone,
        freshness=timedelta(hours=config.cache_freshness_hours),
    )
    message_provider = build_message_provider(
        config.message_mode,
        templates=config.templates,
        sender_name=config.sender_name,
        use_emojis=config.use_emojis,
        openai_api_key=settings.openai_api_key,
        openai_model=settings.openai_model,
    )
    return Orchestrator(
        cache=cache,
        store=store,
        message_provider=message_provider,
        delivery_channel=build_delivery_channel(settings),
        generation_retry=config.generation_retry,
        delivery_retry=config.delivery_retry,
        leap_day_rule=config.leap_day_rule,
        schedule=config.schedule,
        scheduler_timezone=config.scheduler_timezone,
    )


def print_history(store: DeliveryStore, recipient_id: str) -> None:
    records = store.history(recipient_id)
    if not records:
        print(f"No deliveries recorded for {recipient_id}")
        return
    for record in records:
        print(
            f"{record.year} | {record.status:<7} | {record.timestamp.isoformat()} | "
            f"{record.message_id or '-'}\n    {record.message_content}"
        )


async def drain_alerts() -> None:
    for handler in logging.getLogger().handlers:
        if isinstance(handler, TelegramAlertHandler):
            await handler.drain()


async def run(settings: Settings, config: AppConfig, store: DeliveryStore, *, once: bool) -> None:
    orchestrator = build_orchestrator(settings, config, store)

    if once:
        try:
            await orchestrator.validate_startup()
            await orchestrator.run_cycle()
        finally:
            await drain_alerts()
        return

    try:
        await orchestrator.start()
        if config.catch_up_on_start:
            await orchestrator.scheduled_cycle()
        await asyncio.Event().wait()
    finally:
        orchestrator.stop()
        await drain_alerts()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send birthday messages on the day, once per year.")
    parser.add_argument("--once", action="store_true", help="validate connections, run one cycle and exit")
    parser.add_argument("--history", metavar="RECIPIENT_ID", help="print the delivery history of a recipient")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings)

    ensure_default_config(settings.config_path)
    config = load_config(settings.config_path)

    store = DeliveryStore(settings.database_path)
    store.initialize()

    if args.history:
        print_history(store, args.history)
        return

    try:
        asyncio.run(run(settings, config, store, once=args.once))
    except StartupValidationError as exc:
        raise SystemExit(f"Startup validation failed: {exc}") from exc
    except KeyboardInterrupt:
        LOGGER.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()
