from __future__ import annotations

import asyncio

from agents.layered_agent import UNVERIFIED_BOOKING_TEXT
from models.schemas import GoogleSheetEntry, NoteCategory, ToolCall

from conftest import ScriptedLLM, text_reply, tool_reply

HEADER = ["Date", "Name", "Phone", "Doctor", "Time", "Notes"]
BOOKINGS = GoogleSheetEntry(spreadsheet_id="clinic-sheet", range="Bookings", use_when="bookings")
REQUEST = "Please book me with Dr Lee on 2026-03-02 at 10:00. I'm Ana, 555-123-4567"
BOOKING_CALL = ToolCall(
    name="append_booking_row",
    arguments={
        "date": "2026-03-02",
        "patientName": "Ana",
        "phone": "555-123-4567",
        "doctorName": "Lee",
        "appointmentTime": "10:00",
    },
    call_id="b1",
)


async def _layered_clinic(platform):
    await platform.tenants.save_config(
        "clinic-1", {"agent_version": "v2", "google_sheets": [BOOKINGS.model_dump()]}
    )
    return await platform.conversations.create_conversation("clinic-1", user_id="ana")


def test_verified_booking_is_confirmed_to_the_user(platform_factory, sheets):
    async def _run():
        sheets.seed("clinic-sheet", "Bookings", [HEADER])
        llm = ScriptedLLM(
            replies=[tool_reply(BOOKING_CALL), text_reply("You're booked with Dr Lee on March 2 at 10:00.")]
        )
        platform = platform_factory(llm=llm)
        conversation = await _layered_clinic(platform)

        turn = await platform.state_machine.handle_inbound("clinic-1", conversation.conversation_id, REQUEST)

        assert turn.assistant_content == "You're booked with Dr Lee on March 2 at 10:00."
        rows = await sheets.get_rows("clinic-sheet", "Bookings")
        assert rows[1][:5] == ["2026-03-02", "Ana", "555-123-4567", "Lee", "10:00"]
        notes = await platform.tools.notes.list_notes("clinic-1", conversation_id=conversation.conversation_id)
        assert any(n.category == NoteCategory.BOOKINGS for n in notes)
        assert "BOOKING RULES" in llm.calls[0]["system_prompt"]

    asyncio.run(_run())


def test_unverified_booking_claim_is_replaced(platform_factory, sheets):
    async def _run():
        sheets.seed("clinic-sheet", "Bookings", [HEADER, ["2026-03-02", "Bo", "5559990000", "Lee", "10:00", ""]])
        llm = ScriptedLLM(replies=[tool_reply(BOOKING_CALL), text_reply("Great news, your appointment is confirmed!")])
        platform = platform_factory(llm=llm)
        conversation = await _layered_clinic(platform)

        turn = await platform.state_machine.handle_inbound("clinic-1", conversation.conversation_id, REQUEST)

        assert turn.assistant_content == UNVERIFIED_BOOKING_TEXT
        rows = await sheets.get_rows("clinic-sheet", "Bookings")
        assert len(rows) == 2
        tool_message = llm.calls[1]["messages"][-1]
        assert tool_message["role"] == "tool"
        assert "already booked" in tool_message["content"]

    asyncio.run(_run())
