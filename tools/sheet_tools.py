from __future__ import annotations

import logging
import re
from typing import Dict, List, Sequence
from urllib.parse import quote

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)


class SheetsAPIError(RuntimeError):
    pass


def normalize_range(range_: str | None) -> str:
    """A1 notation for the Sheets API: bare sheet names read ``A:Z``, bare ranges read ``Sheet1``."""
    value = (range_ or "").strip() or "Sheet1"
    has_colon = ":" in value
    has_bang = "!" in value
    if not has_bang and not has_colon:
        return f"{value}!A:Z"
    if has_colon and not has_bang:
        return f"Sheet1!{value}"
    return value


def sheet_name(range_: str | None) -> str:
    value = normalize_range(range_)
    return value.split("!", 1)[0].strip("'")


def rows_to_markdown(rows: Sequence[Sequence[str]]) -> str:
    if not rows:
        return "No data in the specified range."

    def escape(cell: object) -> str:
        return str("" if cell is None else cell).replace("|", "\\|").replace("\n", " ")

    header = list(rows[0])
    lines = [
        "| " + " | ".join(escape(c) for c in header) + " |",
        "| " + " | ".join("---" for _ in header) + " |",
    ]
    for row in rows[1:]:
        padded = list(row) + [""] * (len(header) - len(row))
        lines.append("| " + " | ".join(escape(c) for c in padded[: len(header)]) + " |")
    return "\n".join(lines)


class SheetsClient:
    """Row-level access to a spreadsheet; the first row of a range is its header."""

    async def get_rows(self, spreadsheet_id: str, range_: str | None) -> List[List[str]]:
        raise NotImplementedError

    async def append_row(self, spreadsheet_id: str, range_: str | None, values: List[str]) -> None:
        raise NotImplementedError

    async def update_row(self, spreadsheet_id: str, range_: str | None, row_number: int, values: List[str]) -> None:
        raise NotImplementedError

    async def fetch_sheet_data(self, spreadsheet_id: str, range_: str | None) -> str:
        return rows_to_markdown(await self.get_rows(spreadsheet_id, range_))


class GoogleSheetsClient(SheetsClient):
    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.access_token = access_token if access_token is not None else SETTINGS.google_sheets_access_token
        self.base_url = (base_url or SETTINGS.google_sheets_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or SETTINGS.google_sheets_timeout_seconds

    def _url(self, spreadsheet_id: str, a1: str, suffix: str = "") -> str:
        return f"{self.base_url}/spreadsheets/{spreadsheet_id}/values/{quote(a1, safe='!:')}{suffix}"

    async def _request(self, method: str, url: str, **kwargs) -> Dict[str, object]:
        if not self.access_token:
            raise SheetsAPIError("Google account not connected for this tenant")
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.request(
                    method, url, headers={"Authorization": f"Bearer {self.access_token}"}, **kwargs
                )
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException as exc:
            raise SheetsAPIError(f"Google Sheets API timeout after {self.timeout_seconds} seconds") from exc
        except httpx.HTTPError as exc:
            raise SheetsAPIError(f"Google Sheets request failed: {exc}") from exc

    async def get_rows(self, spreadsheet_id: str, range_: str | None) -> List[List[str]]:
        data = await self._request("GET", self._url(spreadsheet_id, normalize_range(range_)))
        return [[str(c) for c in row] for row in data.get("values") or []]

    async def append_row(self, spreadsheet_id: str, range_: str | None, values: List[str]) -> None:
        await self._request(
            "POST",
            self._url(spreadsheet_id, normalize_range(range_), ":append"),
            params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
            json={"values": [values]},
        )

    async def update_row(self, spreadsheet_id: str, range_: str | None, row_number: int, values: List[str]) -> None:
        last_col = chr(ord("A") + max(len(values), 1) - 1)
        a1 = f"{sheet_name(range_)}!A{row_number}:{last_col}{row_number}"
        await self._request(
            "PUT",
            self._url(spreadsheet_id, a1),
            params={"valueInputOption": "USER_ENTERED"},
            json={"values": [values]},
        )


class InMemorySheetsClient(SheetsClient):
    """Local spreadsheet used when no Google account is connected, and in tests."""

    def __init__(self, sheets: Dict[str, List[List[str]]] | None = None) -> None:
        # keyed by "<spreadsheet_id>/<sheet name>"
        self._sheets: Dict[str, List[List[str]]] = {k: [list(r) for r in v] for k, v in (sheets or {}).items()}
        self.reads = 0

    def _key(self, spreadsheet_id: str, range_: str | None) -> str:
        return f"{spreadsheet_id}/{sheet_name(range_)}"

    def seed(self, spreadsheet_id: str, range_: str | None, rows: List[List[str]]) -> None:
        self._sheets[self._key(spreadsheet_id, range_)] = [list(r) for r in rows]

    async def get_rows(self, spreadsheet_id: str, range_: str | None) -> List[List[str]]:
        self.reads += 1
        rows = self._sheets.get(self._key(spreadsheet_id, range_), [])
        match = re.search(r"!?[A-Z]+(\d+):[A-Z]+(\d+)$", normalize_range(range_))
        if match:
            start, end = int(match.group(1)), int(match.group(2))
            rows = rows[start - 1 : end]
        return [list(r) for r in rows]

    async def append_row(self, spreadsheet_id: str, range_: str | None, values: List[str]) -> None:
        self._sheets.setdefault(self._key(spreadsheet_id, range_), []).append(list(values))

    async def update_row(self, spreadsheet_id: str, range_: str | None, row_number: int, values: List[str]) -> None:
        rows = self._sheets.get(self._key(spreadsheet_id, range_), [])
        if row_number < 1 or row_number > len(rows):
            raise SheetsAPIError(f"Row {row_number} out of range")
        rows[row_number - 1] = list(values)
