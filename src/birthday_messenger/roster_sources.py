"""Roster providers: where raw recipient rows come from.

Providers only fetch. Row validation happens in ``roster.validate_rows`` so
every source gets the same rules.
"""

from __future__ import annotations

import asyncio
import csv
import logging
from pathlib import Path
from typing import Protocol

import httpx

from birthday_messenger.errors import ProviderConnectionError
from birthday_messenger.roster import ROSTER_COLUMNS, RawRow

LOGGER = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"


class RosterProvider(Protocol):
    async def fetch(self) -> list[RawRow]: ...


def _row_from_cells(cells: list[str]) -> dict[str, str]:
    padded = list(cells) + [""] * (len(ROSTER_COLUMNS) - len(cells))
    row = {column: str(value) for column, value in zip(ROSTER_COLUMNS, padded)}
    if len(padded) > len(ROSTER_COLUMNS):
        row["id"] = str(padded[len(ROSTER_COLUMNS)])
    return row


class GoogleSheetsRosterProvider:
    """Reads the roster from a Google Sheet with the Sheets v4 values API.

    Columns: Name, Birthdate, Mother Tongue, Phone Number, Country and an
    optional sixth column holding a stable recipient id.
    """

    def __init__(
        self,
        *,
        sheet_id: str,
        api_key: str,
        cell_range: str = "Sheet1!A2:F",
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not sheet_id or not api_key:
            raise ValueError("Google Sheets id and API key are required")
        self._sheet_id = sheet_id
        self._api_key = api_key
        self._cell_range = cell_range
        self._client = client
        self._timeout = timeout

    async def fetch(self) -> list[RawRow]:
        url = f"{SHEETS_API_BASE}/{self._sheet_id}/values/{self._cell_range}"
        params = {"key": self._api_key, "majorDimension": "ROWS"}
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise ProviderConnectionError(f"Google Sheets rejected the credentials (HTTP {status})") from exc
            raise ProviderConnectionError(f"Google Sheets request failed (HTTP {status})") from exc
        except httpx.HTTPError as exc:
            raise ProviderConnectionError(f"Google Sheets unreachable: {exc}") from exc

        values = response.json().get("values", [])
        if not values:
            LOGGER.info("No roster rows found in sheet %s", self._sheet_id)
        return [_row_from_cells(cells) for cells in values]


class CsvRosterProvider:
    """Reads the roster from a local CSV file with a header row."""

    def __init__(self, path: Path) -> None:
        self._path = path

    async def fetch(self) -> list[RawRow]:
        return await asyncio.to_thread(self._read)

    def _read(self) -> list[RawRow]:
        if not self._path.exists():
            raise ProviderConnectionError(f"Roster file not found: {self._path}")

        try:
            with self._path.open("r", encoding="utf-8", newline="") as file_obj:
                reader = csv.DictReader(file_obj)
                return [
                    {str(key).strip().lower(): (value or "") for key, value in row.items() if key is not None}
                    for row in reader
                ]
        except (OSError, csv.Error) as exc:
            raise ProviderConnectionError(f"Roster file unreadable: {self._path}: {exc}") from exc
