from __future__ import annotations

import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

from apscheduler.triggers.cron import CronTrigger

from birthday_messenger.date_logic import LEAP_DAY_RULES, InvalidBirthdayError, validate_timezone
from birthday_messenger.messages import DEFAULT_TEMPLATES
from birthday_messenger.models import (
    DEFAULT_DELIVERY_DELAYS,
    DEFAULT_GENERATION_DELAYS,
    AppConfig,
    RetryPolicy,
)

ALLOWED_MESSAGE_MODES = {"ai", "template"}


def _toml_escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )


def _toml_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(float(value))


def _validate_schedule(value: str) -> str:
    schedule = " ".join(value.split())
    if len(schedule.split(" ")) != 5:
        raise ValueError("schedule must be a 5-field cron expression")
    try:
        CronTrigger.from_crontab(schedule, timezone="UTC")
    except ValueError as exc:
        raise ValueError(f"schedule is not a valid cron expression: {exc}") from exc
    return schedule


def _validate_timezone_field(field_name: str, value: str) -> str:
    name = value.strip()
    if not name:
        raise ValueError(f"{field_name} must not be empty")
    try:
        validate_timezone(name)
    except InvalidBirthdayError as exc:
        raise ValueError(f"{field_name}: {exc}") from exc
    return name


def _validate_retry(field_name: str, policy: RetryPolicy) -> RetryPolicy:
    if not isinstance(policy.max_attempts, int) or policy.max_attempts < 1:
        raise ValueError(f"{field_name}.max_attempts must be a positive integer")
    if not policy.delays_seconds:
        raise ValueError(f"{field_name}.delays_seconds must not be empty")
    delays: list[float] = []
    for delay in policy.delays_seconds:
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            raise ValueError(f"{field_name}.delays_seconds values must be non-negative numbers")
        delays.append(float(delay))
    return RetryPolicy(max_attempts=policy.max_attempts, delays_seconds=delays)


def _validate_templates(templates: dict[str, list[str]]) -> dict[str, list[str]]:
    validated: dict[str, list[str]] = {}
    for language, values in templates.items():
        if not isinstance(values, list) or not all(isinstance(value, str) and value.strip() for value in values):
            raise ValueError(f"templates.{language} must be a list of non-empty strings")
        validated[language.strip().lower()] = [value.strip() for value in values]
    return validated


def validate_config(config: AppConfig) -> AppConfig:
    leap_day_rule = config.leap_day_rule.strip().lower()
    if leap_day_rule not in LEAP_DAY_RULES:
        raise ValueError(f"leap_day_rule must be one of {sorted(LEAP_DAY_RULES)}")

    message_mode = config.message_mode.strip().lower()
    if message_mode not in ALLOWED_MESSAGE_MODES:
        raise ValueError(f"message_mode must be one of {sorted(ALLOWED_MESSAGE_MODES)}")

    if config.cache_freshness_hours <= 0:
        raise ValueError("cache_freshness_hours must be positive")

    sender_name = config.sender_name.strip()
    if not sender_name:
        raise ValueError("sender_name must not be empty")

    templates = _validate_templates(config.templates)
    if message_mode == "template" and not templates:
        raise ValueError("templates must define at least one language when message_mode is 'template'")

    return AppConfig(
        schedule=_validate_schedule(config.schedule),
        scheduler_timezone=_validate_timezone_field("scheduler_timezone", config.scheduler_timezone),
        default_timezone=_validate_timezone_field("default_timezone", config.default_timezone),
        leap_day_rule=leap_day_rule,
        cache_freshness_hours=float(config.cache_freshness_hours),
        catch_up_on_start=bool(config.catch_up_on_start),
        message_mode=message_mode,
        sender_name=sender_name,
        use_emojis=bool(config.use_emojis),
        generation_retry=_validate_retry("generation_retry", config.generation_retry),
        delivery_retry=_validate_retry("delivery_retry", config.delivery_retry),
        templates=templates,
    )


def _retry_from_table(data: dict[str, Any], default_delays: list[float]) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=data.get("max_attempts", 3),
        delays_seconds=list(data.get("delays_seconds", default_delays)),
    )


def default_config() -> AppConfig:
    return AppConfig(
        schedule="0 4 * * *",
        scheduler_timezone="Asia/Kolkata",
        default_timezone="UTC",
        leap_day_rule="feb28",
        cache_freshness_hours=24.0,
        catch_up_on_start=True,
        message_mode="template",
        sender_name="Your Friend",
        use_emojis=True,
        generation_retry=RetryPolicy(max_attempts=3, delays_seconds=list(DEFAULT_GENERATION_DELAYS)),
        delivery_retry=RetryPolicy(max_attempts=3, delays_seconds=list(DEFAULT_DELIVERY_DELAYS)),
        templates={language: list(values) for language, values in DEFAULT_TEMPLATES.items()},
    )


def load_config(path: Path) -> AppConfig:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("rb") as file_obj:
        data = tomllib.load(file_obj)

    defaults = default_config()
    templates = data.get("templates", defaults.templates)
    if not isinstance(templates, dict):
        raise ValueError("templates must be a table of language = [templates]")

    config = AppConfig(
        schedule=str(data.get("schedule", defaults.schedule)),
        scheduler_timezone=str(data.get("scheduler_timezone", defaults.scheduler_timezone)),
        default_timezone=str(data.get("default_timezone", defaults.default_timezone)),
        leap_day_rule=str(data.get("leap_day_rule", defaults.leap_day_rule)),
        cache_freshness_hours=float(data.get("cache_freshness_hours", defaults.cache_freshness_hours)),
        catch_up_on_start=bool(data.get("catch_up_on_start", defaults.catch_up_on_start)),
        message_mode=str(data.get("message_mode", defaults.message_mode)),
        sender_name=str(data.get("sender_name", defaults.sender_name)),
        use_emojis=bool(data.get("use_emojis", defaults.use_emojis)),
        generation_retry=_retry_from_table(data.get("generation_retry", {}), DEFAULT_GENERATION_DELAYS),
        delivery_retry=_retry_from_table(data.get("delivery_retry", {}), DEFAULT_DELIVERY_DELAYS),
        templates=templates,
    )
    return validate_config(config)


def render_config(config: AppConfig) -> str:
    validated = validate_config(config)

    def retry_table(name: str, policy: RetryPolicy) -> list[str]:
        delays = ", ".join(_toml_number(delay) for delay in policy.delays_seconds)
        return [
            f"[{name}]",
            f"max_attempts = {policy.max_attempts}",
            f"delays_seconds = [{delays}]",
            "",
        ]

    lines: list[str] = [
        f'schedule = "{validated.schedule}"',
        f'scheduler_timezone = "{_toml_escape(validated.scheduler_timezone)}"',
        f'default_timezone = "{_toml_escape(validated.default_timezone)}"',
        f'leap_day_rule = "{validated.leap_day_rule}"',
        f"cache_freshness_hours = {_toml_number(validated.cache_freshness_hours)}",
        f"catch_up_on_start = {'true' if validated.catch_up_on_start else 'false'}",
        f'message_mode = "{validated.message_mode}"',
        f'sender_name = "{_toml_escape(validated.sender_name)}"',
        f"use_emojis = {'true' if validated.use_emojis else 'false'}",
        "",
        "# Delays are in seconds; the last value repeats when there are more attempts than delays.",
        *retry_table("generation_retry", validated.generation_retry),
        *retry_table("delivery_retry", validated.delivery_retry),
        "# {name} is replaced with the recipient's name.",
        "[templates]",
    ]
    for language, values in sorted(validated.templates.items()):
        rendered = ", ".join(f'"{_toml_escape(value)}"' for value in values)
        lines.append(f'"{_toml_escape(language)}" = [{rendered}]')

    return "\n".join(lines).rstrip() + "\n"


def save_config_atomic(path: Path, config: AppConfig) -> None:
    rendered = render_config(config)
    path.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        delete=False,
    ) as temp_file:
        temp_file.write(rendered)
        temp_name = temp_file.name

    os.replace(temp_name, path)


def ensure_default_config(path: Path) -> None:
    if path.exists():
        return
    save_config_atomic(path, default_config())
