from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ROSTER_SOURCES = {"sheets", "csv"}
DELIVERY_MODES = {"twilio", "dry-run"}


@dataclass(frozen=True)
class Settings:
    config_path: Path
    database_path: Path
    roster_source: str
    delivery_mode: str
    google_sheets_id: str | None = None
    google_sheets_api_key: str | None = None
    google_sheets_range: str = "Sheet1!A2:F"
    roster_csv_path: Path | None = None
    openai_api_key: str | None = None
    openai_model: str = "gpt-4o-mini"
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None
    twilio_whatsapp: bool = True
    telegram_alert_bot_token: str | None = None
    telegram_alert_chat_id: int | None = None
    log_level: str = "INFO"
    log_file_path: Path | None = None


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def _optional_env(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _choice_env(name: str, default: str, allowed: set[str]) -> str:
    value = (_optional_env(name) or default).lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of {sorted(allowed)}, got {value!r}")
    return value


def load_settings() -> Settings:
    root = Path.cwd()

    roster_source = _choice_env("ROSTER_SOURCE", "sheets", ROSTER_SOURCES)
    delivery_mode = _choice_env("DELIVERY_MODE", "twilio", DELIVERY_MODES)

    google_sheets_id = None
    google_sheets_api_key = None
    roster_csv_path = None
    if roster_source == "sheets":
        google_sheets_id = _required_env("GOOGLE_SHEETS_ID")
        google_sheets_api_key = _required_env("GOOGLE_SHEETS_API_KEY")
    else:
        roster_csv_path = Path(_required_env("ROSTER_CSV_PATH"))

    twilio_account_sid = None
    twilio_auth_token = None
    twilio_from_number = None
    if delivery_mode == "twilio":
        twilio_account_sid = _required_env("TWILIO_ACCOUNT_SID")
        twilio_auth_token = _required_env("TWILIO_AUTH_TOKEN")
        twilio_from_number = _required_env("TWILIO_FROM_NUMBER")

    alert_chat_id = _optional_env("TELEGRAM_ALERT_CHAT_ID")
    log_file_path = _optional_env("LOG_FILE_PATH")

    return Settings(
        config_path=Path(os.getenv("CONFIG_PATH", root / "config" / "messenger.toml")),
        database_path=Path(os.getenv("DATABASE_PATH", root / "data" / "birthday_messenger.db")),
        roster_source=roster_source,
        delivery_mode=delivery_mode,
        google_sheets_id=google_sheets_id,
        google_sheets_api_key=google_sheets_api_key,
        google_sheets_range=_optional_env("GOOGLE_SHEETS_RANGE") or "Sheet1!A2:F",
        roster_csv_path=roster_csv_path,
        openai_api_key=_optional_env("OPENAI_API_KEY"),
        openai_model=_optional_env("OPENAI_MODEL") or "gpt-4o-mini",
        twilio_account_sid=twilio_account_sid,
        twilio_auth_token=twilio_auth_token,
        twilio_from_number=twilio_from_number,
        twilio_whatsapp=(_optional_env("TWILIO_CHANNEL") or "whatsapp").lower() == "whatsapp",
        telegram_alert_bot_token=_optional_env("TELEGRAM_ALERT_BOT_TOKEN"),
        telegram_alert_chat_id=int(alert_chat_id) if alert_chat_id else None,
        log_level=(_optional_env("LOG_LEVEL") or "INFO").upper(),
        log_file_path=Path(log_file_path) if log_file_path else None,
    )
