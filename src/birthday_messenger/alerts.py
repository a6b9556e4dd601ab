from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from telegram import Bot

TELEGRAM_MESSAGE_LIMIT = 4096


class TelegramAlertHandler(logging.Handler):
    """Forwards high-severity log records to an operator Telegram chat.

    Inside a running event loop the send is scheduled as a task; outside one it
    runs to completion. Send failures go through ``Handler.handleError`` and
    never reach the code that logged.
    """

    def __init__(
        self,
        *,
        bot_token: str,
        chat_id: int,
        level: int = logging.CRITICAL,
        bot_factory: Callable[..., Any] = Bot,
    ) -> None:
        super().__init__(level)
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._bot_factory = bot_factory
        self._pending: set[asyncio.Task[None]] = set()
        self.setFormatter(logging.Formatter("🚨 %(levelname)s %(name)s\n%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            text = self.format(record)[:TELEGRAM_MESSAGE_LIMIT]
        except Exception:
            self.handleError(record)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            asyncio.run(self._send_reporting_errors(text, record))
            return

        task = loop.create_task(self._send_reporting_errors(text, record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, text: str) -> None:
        async with self._bot_factory(token=self._bot_token) as bot:
            await bot.send_message(chat_id=self._chat_id, text=text)

    async def _send_reporting_errors(self, text: str, record: logging.LogRecord) -> None:
        try:
            await self._send(text)
        except Exception:
            self.handleError(record)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
