"""Delivery channels.

A channel returns a non-success ``DeliveryOutcome`` when the transport accepts
the request but refuses the message (bad number, unreachable recipient) and
raises ``DeliveryError`` for transport faults such as auth or network errors.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from birthday_messenger.errors import DeliveryError
from birthday_messenger.models import DeliveryOutcome

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def redact_phone_number(phone_number: str) -> str:
    if len(phone_number) <= 4:
        return "****"
    return phone_number[:3] + "*" * (len(phone_number) - 5) + phone_number[-2:]


class DeliveryChannel(Protocol):
    async def is_ready(self) -> bool: ...

    async def send(self, phone_number: str, text: str) -> DeliveryOutcome: ...


class TwilioDeliveryChannel:
    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        whatsapp: bool = True,
        client: Any | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        if not account_sid or not auth_token or not from_number:
            raise ValueError("Twilio account SID, auth token and sender number are required")
        self._account_sid = account_sid
        self._client = client if client is not None else TwilioClient(account_sid, auth_token)
        self._whatsapp = whatsapp
        self._from = self._address(from_number)
        self._clock = clock

    def _address(self, phone_number: str) -> str:
        if self._whatsapp and not phone_number.startswith("whatsapp:"):
            return f"whatsapp:{phone_number}"
        return phone_number

    async def is_ready(self) -> bool:
        try:
            account = await asyncio.to_thread(self._client.api.v2010.accounts(self._account_sid).fetch)
        except (TwilioException, OSError) as exc:
            LOGGER.error("Twilio readiness check failed: %s", exc)
            return False
        status = getattr(account, "status", "active")
        if status != "active":
            LOGGER.error("Twilio account %s is %s", self._account_sid, status)
            return False
        return True

    async def send(self, phone_number: str, text: str) -> DeliveryOutcome:
        to = self._address(phone_number)
        try:
            message = await asyncio.to_thread(self._client.messages.create, body=text, from_=self._from, to=to)
        except TwilioRestException as exc:
            if exc.status in (401, 403) or exc.status >= 500:
                raise DeliveryError(f"Twilio transport error (HTTP {exc.status}): {exc.msg}") from exc
            LOGGER.error(
                "Twilio refused message to %s (code %s): %s",
                redact_phone_number(phone_number),
                exc.code,
                exc.msg,
            )
            return DeliveryOutcome(success=False, timestamp=self._clock(), error=f"{exc.code}: {exc.msg}")
        except (TwilioException, OSError) as exc:
            raise DeliveryError(f"Twilio unreachable: {exc}") from exc

        if getattr(message, "status", None) in ("failed", "undelivered"):
            error = f"{message.error_code}: {message.error_message}"
            return DeliveryOutcome(success=False, timestamp=self._clock(), message_id=message.sid, error=error)

        LOGGER.info("Twilio accepted message %s to %s", message.sid, redact_phone_number(phone_number))
        return DeliveryOutcome(success=True, timestamp=self._clock(), message_id=message.sid)


class DryRunDeliveryChannel:
    """Logs messages instead of sending them."""

    def __init__(self, *, clock: Clock = _utc_now) -> None:
        self._clock = clock
        self.sent: list[tuple[str, str]] = []

    async def is_ready(self) -> bool:
        return True

    async def send(self, phone_number: str, text: str) -> DeliveryOutcome:
        self.sent.append((phone_number, text))
        LOGGER.info("[dry-run] Message to %s:\n%s", redact_phone_number(phone_number), text)
        return DeliveryOutcome(success=True, timestamp=self._clock(), message_id=f"dry-run-{uuid.uuid4().hex[:12]}")
