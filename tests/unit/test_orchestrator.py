from __future__ import annotations

import asyncio

from agents.orchestrator import ToolOrchestrator
from models.schemas import GoogleSheetEntry, ModificationStatus, NoteCategory, TenantAgentConfig, ToolCall
from tools.sheet_tools import SheetsAPIError

HEADER = ["Date", "Name", "Phone", "Doctor", "Time", "Notes"]
BOOKINGS = GoogleSheetEntry(spreadsheet_id="sheet-1", range="Bookings", use_when="bookings")


def _config(**overrides):
    base = {"tenant_id": "t1", "google_sheets": [BOOKINGS], "rag_enabled": True}
    base.update(overrides)
    return TenantAgentConfig(**base)


def _orchestrator(services, diagnostics, **config):
    return ToolOrchestrator("t1", _config(**config), services=services, conversation_id="c1", diagnostics=diagnostics)


def _booking_call(phone="555-123-4567", time="10:00", name="Ana"):
    return ToolCall(
        name="append_booking_row",
        arguments={
            "date": "2026-03-02",
            "patientName": name,
            "phone": phone,
            "doctorName": "Lee",
            "appointmentTime": time,
        },
    )


class ExplodingSheets:
    async def fetch_sheet_data(self, spreadsheet_id, range_):
        raise RuntimeError("boom")


class FailingSheets:
    async def fetch_sheet_data(self, spreadsheet_id, range_):
        raise SheetsAPIError("Sheets API returned 403")


def test_available_tools_follow_tenant_config(services, diagnostics):
    names = _orchestrator(services, diagnostics).available_tool_names()
    assert {"create_note", "list_notes", "query_google_sheet", "append_booking_row", "request_edit_record"} <= set(names)
    assert "web_search" not in names
    bare = _orchestrator(services, diagnostics, google_sheets=[], rag_enabled=False).available_tool_names()
    assert bare == ["create_note", "list_notes"]
    schemas = _orchestrator(services, diagnostics).tool_schemas(["append_booking_row"])
    assert schemas[0]["name"] == "append_booking_row"
    assert "patientName" in schemas[0]["parameters"]["properties"]


def test_unknown_tool_and_bad_arguments_fail_without_raising(services, diagnostics):
    async def _run():
        orchestrator = _orchestrator(services, diagnostics)
        unknown = await orchestrator.execute_tool_call(ToolCall(name="drop_tables"))
        assert unknown.success is False
        assert "Unknown tool" in unknown.error
        invalid = await orchestrator.execute_tool_call(ToolCall(name="append_booking_row", arguments={"date": "x"}))
        assert invalid.success is False
        assert "Invalid arguments" in invalid.error
        assert len(orchestrator.execution_logs) == 2

    asyncio.run(_run())


def test_handler_exception_becomes_failed_result(services, diagnostics):
    async def _run():
        services.sheets = ExplodingSheets()
        orchestrator = _orchestrator(services, diagnostics)
        result = await orchestrator.execute_tool_call(ToolCall(name="query_google_sheet", arguments={"useWhen": "bookings"}))
        assert result.success is False
        assert result.error == "boom"
        assert orchestrator.execution_logs[-1].result.success is False

    asyncio.run(_run())


def test_sheet_api_error_is_reported(services, diagnostics):
    async def _run():
        services.sheets = FailingSheets()
        result = await _orchestrator(services, diagnostics).execute_tool_call(
            ToolCall(name="query_google_sheet", arguments={"use_when": "bookings"})
        )
        assert result.success is False
        assert "403" in result.error

    asyncio.run(_run())


def test_booking_is_verified_by_reading_the_sheet(services, sheets, diagnostics):
    async def _run():
        sheets.seed("sheet-1", "Bookings", [HEADER])
        orchestrator = _orchestrator(services, diagnostics)
        result = await orchestrator.execute_tool_call(_booking_call())
        assert result.success is True
        assert result.verified is True
        assert result.data["appointmentId"] == "APT-5551234567-2026-03-02"
        assert orchestrator.has_verified_booking()
        rows = await sheets.get_rows("sheet-1", "Bookings")
        assert rows[1][:5] == ["2026-03-02", "Ana", "555-123-4567", "Lee", "10:00"]
        notes = await services.notes.list_notes("t1", conversation_id="c1")
        assert notes[0].category == NoteCategory.BOOKINGS
        assert notes[0].content.startswith("NEW Booking")

    asyncio.run(_run())


def test_rebooking_same_phone_and_date_updates_the_row(services, sheets, diagnostics):
    async def _run():
        sheets.seed("sheet-1", "Bookings", [HEADER])
        orchestrator = _orchestrator(services, diagnostics)
        await orchestrator.execute_tool_call(_booking_call(time="10:00"))
        again = await orchestrator.execute_tool_call(_booking_call(time="11:30"))
        assert again.success is True
        assert again.data["action"] == "updated"
        rows = await sheets.get_rows("sheet-1", "Bookings")
        assert len(rows) == 2
        assert rows[1][4] == "11:30"

    asyncio.run(_run())


def test_slot_taken_by_someone_else_is_rejected(services, sheets, diagnostics):
    async def _run():
        sheets.seed("sheet-1", "Bookings", [HEADER, ["2026-03-02", "Bo", "5559990000", "Lee", "10:00", ""]])
        orchestrator = _orchestrator(services, diagnostics)
        result = await orchestrator.execute_tool_call(_booking_call(time="10:00"))
        assert result.success is False
        assert "already booked" in result.error
        assert not orchestrator.has_verified_booking()

    asyncio.run(_run())


def test_appointment_lookup_retries_once_on_empty_sheet(services, sheets, diagnostics):
    async def _run():
        orchestrator = _orchestrator(services, diagnostics)
        orchestrator.bookings.retry_seconds = 0
        result = await orchestrator.execute_tool_call(
            ToolCall(name="get_appointment_by_phone", arguments={"phone": "5551234567"})
        )
        assert result.success is True
        assert result.data == {"found": False}
        assert sheets.reads == 2

    asyncio.run(_run())


def test_note_creation_is_idempotent(services, diagnostics):
    async def _run():
        orchestrator = _orchestrator(services, diagnostics)
        call = ToolCall(
            name="create_note",
            arguments={"content": "Patient asked about weekend opening hours", "category": "common_questions"},
        )
        first = await orchestrator.execute_tool_call(call)
        second = await orchestrator.execute_tool_call(call)
        assert first.data["noteId"] == second.data["noteId"]
        assert len(await services.notes.list_notes("t1")) == 1

    asyncio.run(_run())


def test_record_changes_go_through_pending_requests(services, diagnostics):
    async def _run():
        orchestrator = _orchestrator(services, diagnostics)
        created = await orchestrator.execute_tool_call(
            ToolCall(name="record_learned_knowledge", arguments={"title": "Front desk", "content": "Call 555-0100"})
        )
        record_id = created.data["recordId"]
        edit = await orchestrator.execute_tool_call(
            ToolCall(name="request_edit_record", arguments={"recordId": record_id, "content": "Call 555-0199"})
        )
        assert edit.success is True
        record = await services.brain.get_record("t1", record_id)
        assert record.content == "Call 555-0100"
        pending = await services.brain.list_modification_requests("t1", status=ModificationStatus.PENDING)
        assert [r.request_id for r in pending] == [edit.data["requestId"]]
        missing = await orchestrator.execute_tool_call(
            ToolCall(name="request_delete_record", arguments={"recordId": "nope"})
        )
        assert missing.success is False

    asyncio.run(_run())


def test_merge_and_delete_notes(services, diagnostics):
    async def _run():
        a = await services.notes.create_note("t1", "c1", "Many ask about parking")
        b = await services.notes.create_note("t1", "c2", "Parking questions are frequent at the clinic")
        c = await services.notes.create_note("t1", "c3", "Flu shot demand rising")
        orchestrator = _orchestrator(services, diagnostics)
        merged = await orchestrator.execute_tool_call(
            ToolCall(
                name="merge_notes",
                arguments={"keepNoteId": a.note_id, "deleteNoteIds": [b.note_id], "mergedContent": "Parking is a frequent question"},
            )
        )
        assert merged.data == {"keptNoteId": a.note_id, "deletedNoteIds": [b.note_id], "merged": 2}
        deleted = await orchestrator.execute_tool_call(ToolCall(name="delete_note", arguments={"noteId": c.note_id}))
        assert deleted.success is True
        again = await orchestrator.execute_tool_call(ToolCall(name="delete_note", arguments={"noteId": c.note_id}))
        assert again.success is False
        remaining = await services.notes.list_notes("t1")
        assert [n.content for n in remaining] == ["Parking is a frequent question"]

    asyncio.run(_run())


def test_whatsapp_tool_records_message_without_credentials(services, diagnostics):
    async def _run():
        orchestrator = _orchestrator(services, diagnostics)
        result = await orchestrator.execute_tool_call(
            ToolCall(name="send_whatsapp_message", arguments={"to": "+15550001111", "body": "Reminder"})
        )
        assert result.success is True
        assert services.notifications.sent[-1]["status"] == "RECORDED"

    asyncio.run(_run())
