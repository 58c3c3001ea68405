from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from memory.agent_notes import AgentNotesStore
from models.schemas import GoogleSheetEntry, NoteCategory, ToolAction, ToolResult
from settings import SETTINGS
from tools.sheet_tools import SheetsAPIError, SheetsClient

logger = logging.getLogger(__name__)

SYSTEM_CONVERSATION = "SYSTEM"

_BOOKINGS_NAME = re.compile(r"^(bookings?|appointments?)$", re.IGNORECASE)
_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%Y/%m/%d", "%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%d %b %Y")
_EXCEL_EPOCH = date(1899, 12, 30)
# 9999-12-31 as a spreadsheet serial; larger numbers are phone numbers or ids.
_MAX_SERIAL = 2958465

# Columns of the bookings sheet.
DATE, NAME, PHONE, DOCTOR, TIME, NOTES = range(6)


def normalize_phone(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def normalize_date(cell: Any) -> str:
    """Cell value as ``YYYY-MM-DD``, or ``""`` when it is not a date."""
    if cell is None:
        return ""
    text = str(cell).strip()
    if not text:
        return ""
    try:
        serial = float(text)
    except ValueError:
        serial = None
    if serial is not None and 10000 < serial <= _MAX_SERIAL:
        return (_EXCEL_EPOCH + timedelta(days=int(serial))).isoformat()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text[:10]):
        return text[:10]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return ""


def resolve_today(value: str) -> str:
    return date.today().isoformat() if re.search(r"today", value, re.IGNORECASE) else value


def appointment_id(phone_norm: str, date_norm: str) -> str:
    return f"APT-{phone_norm}-{date_norm}"


def find_bookings_sheet(sheets: List[GoogleSheetEntry]) -> Optional[GoogleSheetEntry]:
    candidates = [s for s in sheets if "booking" in s.use_when.lower()]
    for entry in candidates:
        if _BOOKINGS_NAME.match(entry.use_when.strip()):
            return entry
    return candidates[0] if candidates else None


@dataclass
class BookingVerification:
    verified: bool
    appointment: Dict[str, Any] | None = None


class BookingTools:
    """Appointment reads and writes against a tenant's bookings sheet."""

    def __init__(
        self,
        sheets: SheetsClient,
        bookings_sheet: GoogleSheetEntry | None,
        notes: AgentNotesStore | None = None,
        read_attempts: int | None = None,
        retry_seconds: float | None = None,
    ) -> None:
        self.sheets = sheets
        self.bookings_sheet = bookings_sheet
        self.notes = notes or AgentNotesStore()
        self.read_attempts = max(1, read_attempts if read_attempts is not None else SETTINGS.appointment_read_attempts)
        self.retry_seconds = retry_seconds if retry_seconds is not None else SETTINGS.appointment_read_retry_seconds

    @property
    def _range(self) -> str:
        return (self.bookings_sheet.range if self.bookings_sheet else None) or "Sheet1"

    async def book_appointment(
        self,
        tenant_id: str,
        date_: str,
        patient_name: str,
        phone: str,
        doctor_name: str,
        appointment_time: str,
        notes: str | None = None,
        conversation_id: str | None = None,
    ) -> ToolResult:
        if self.bookings_sheet is None:
            return ToolResult(success=False, error="Bookings sheet not configured")
        phone_norm = normalize_phone(phone)
        if not phone_norm:
            return ToolResult(success=False, error="Phone number is required")

        date_str = resolve_today(date_)
        target_date = normalize_date(date_str) or date_str
        target_time = appointment_time.strip()
        row = [date_str, patient_name.strip(), phone.strip(), doctor_name.strip(), target_time, (notes or "").strip()]

        try:
            data_rows = (await self.sheets.get_rows(self.bookings_sheet.spreadsheet_id, self._range))[1:]
            conflict = next(
                (
                    i
                    for i, r in enumerate(data_rows)
                    if normalize_date(r[DATE] if r else "") == target_date
                    and (r[TIME] if len(r) > TIME else "").strip() == target_time
                ),
                -1,
            )
            existing = next(
                (
                    i
                    for i, r in enumerate(data_rows)
                    if any(normalize_phone(c) == phone_norm for c in r)
                    and any(normalize_date(c) == target_date for c in r)
                ),
                -1,
            )
            if conflict >= 0 and conflict != existing:
                return ToolResult(
                    success=False,
                    error=f"Time slot {target_time} on {date_str} is already booked for another patient.",
                )
            if existing >= 0:
                # +1 for the header row, +1 for 1-based row numbers
                await self.sheets.update_row(self.bookings_sheet.spreadsheet_id, self._range, existing + 2, row)
                outcome = "updated"
            else:
                await self.sheets.append_row(self.bookings_sheet.spreadsheet_id, self._range, row)
                outcome = "created"
        except SheetsAPIError as exc:
            logger.warning("booking_write_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
            return ToolResult(success=False, error=str(exc), action=ToolAction.WRITE)

        prefix = "Booking UPDATED" if outcome == "updated" else "NEW Booking"
        try:
            await self.notes.create_note(
                tenant_id,
                conversation_id or SYSTEM_CONVERSATION,
                f"{prefix}: {patient_name} ({phone}) with Dr. {doctor_name} on {date_str} at {appointment_time}. "
                f"Notes: {notes or 'none'}",
                patient_name=patient_name,
                category=NoteCategory.BOOKINGS,
            )
        except OSError as exc:
            logger.warning("booking_note_failed", extra={"tenant_id": tenant_id, "error": repr(exc)})

        return ToolResult(
            success=True,
            data={
                "appointmentId": appointment_id(phone_norm, target_date),
                "doctor": doctor_name.strip(),
                "time": target_time,
                "date": date_str,
                "action": outcome,
            },
            action=ToolAction.WRITE,
        )

    async def get_appointment(self, tenant_id: str, phone: str, date_: str | None = None) -> ToolResult:
        if self.bookings_sheet is None:
            return ToolResult(success=False, error="Bookings sheet not configured")
        phone_norm = normalize_phone(phone)
        if not phone_norm:
            return ToolResult(success=False, error="Invalid phone number")
        target_date = None
        if date_:
            resolved = resolve_today(date_)
            target_date = normalize_date(resolved) or resolved

        try:
            rows: List[List[str]] = []
            for attempt in range(1, self.read_attempts + 1):
                rows = await self.sheets.get_rows(self.bookings_sheet.spreadsheet_id, self._range)
                if len(rows) >= 2 or attempt == self.read_attempts:
                    break
                logger.info(
                    "appointment_read_retry",
                    extra={"tenant_id": tenant_id, "attempt": attempt, "rows": len(rows)},
                )
                await asyncio.sleep(self.retry_seconds)
        except SheetsAPIError as exc:
            return ToolResult(success=False, error=str(exc))

        for r in rows[1:]:
            if not any(normalize_phone(c) == phone_norm for c in r):
                continue
            if target_date and not any(normalize_date(c) == target_date for c in r):
                continue
            padded = list(r) + [""] * (6 - len(r))
            found_date = normalize_date(padded[DATE]) or padded[DATE]
            return ToolResult(
                success=True,
                data={
                    "found": True,
                    "appointmentId": appointment_id(phone_norm, found_date),
                    "date": padded[DATE],
                    "patientName": padded[NAME],
                    "phone": padded[PHONE],
                    "doctor": padded[DOCTOR],
                    "time": padded[TIME],
                    "notes": padded[NOTES],
                },
                action=ToolAction.READ,
            )

        return await self._appointment_from_notes(tenant_id, phone, phone_norm)

    async def _appointment_from_notes(self, tenant_id: str, phone: str, phone_norm: str) -> ToolResult:
        try:
            notes = await self.notes.list_notes(tenant_id, limit=50)
        except OSError as exc:
            logger.warning("appointment_notes_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
            notes = []
        for note in notes:
            content = note.content
            if phone_norm not in content or ("Booking" not in content and "Appointment" not in content):
                continue
            date_match = re.search(r"on (\d{4}-\d{2}-\d{2})", content)
            time_match = re.search(r"at (\d{1,2}:\d{2}\s*(?:am|pm)?)", content, re.IGNORECASE)
            doctor_match = re.search(r"with Dr\. (.*?)(?= on| at|$)", content)
            return ToolResult(
                success=True,
                data={
                    "found": True,
                    "appointmentId": f"NOTE-{note.note_id}",
                    "date": date_match.group(1) if date_match else "unknown",
                    "patientName": note.patient_name or "unknown",
                    "phone": phone,
                    "doctor": doctor_match.group(1) if doctor_match else "unknown",
                    "time": time_match.group(1) if time_match else "unknown",
                    "notes": f"Found in Agent Notebook: {content}",
                },
                action=ToolAction.READ,
            )
        return ToolResult(success=True, data={"found": False}, action=ToolAction.READ)

    async def verify_booking(
        self, tenant_id: str, phone: str, date_: str, expected_appointment_id: str | None = None
    ) -> BookingVerification:
        """Re-read the bookings sheet to confirm a write actually landed."""
        result = await self.get_appointment(tenant_id, phone, date_)
        data = result.data if isinstance(result.data, dict) else {}
        if not result.success or not data.get("found"):
            return BookingVerification(verified=False)
        if expected_appointment_id and data.get("appointmentId") != expected_appointment_id:
            return BookingVerification(verified=False)
        return BookingVerification(verified=True, appointment=data)
