from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.schemas import NoteCategory, ToolResult


class ToolArgs(BaseModel):
    # Models see camelCase names; snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class QueryGoogleSheetArgs(ToolArgs):
    use_when: str = Field(description='Which sheet to read, matched against the configured "use when" label.')
    range: Optional[str] = Field(default=None, description="Optional A1 range or sheet name.")


class CheckAvailabilityArgs(ToolArgs):
    date: str = Field(description="Date to check, YYYY-MM-DD or 'today'.")
    range: Optional[str] = None


class AppendBookingRowArgs(ToolArgs):
    date: str
    patient_name: str
    phone: str
    doctor_name: str
    appointment_time: str
    notes: Optional[str] = None


class GetAppointmentByPhoneArgs(ToolArgs):
    phone: str
    date: Optional[str] = None


class CreateNoteArgs(ToolArgs):
    content: str
    patient_name: Optional[str] = None
    category: Optional[NoteCategory] = None


class ListNotesArgs(ToolArgs):
    limit: int = Field(default=20, ge=1, le=100)


class RecordLearnedKnowledgeArgs(ToolArgs):
    title: str
    content: str


class RequestEditRecordArgs(ToolArgs):
    record_id: str
    title: Optional[str] = None
    content: Optional[str] = None
    reason: Optional[str] = None


class RequestDeleteRecordArgs(ToolArgs):
    record_id: str
    reason: Optional[str] = None


class MergeNotesArgs(ToolArgs):
    keep_note_id: str = Field(description="The noteId of the note to keep (updated with the merged content).")
    delete_note_ids: List[str] = Field(default_factory=list, description="noteIds of the redundant notes merged into the kept one.")
    merged_content: str


class DeleteNoteArgs(ToolArgs):
    note_id: str
    reason: Optional[str] = None


class SendWhatsAppMessageArgs(ToolArgs):
    to: str
    body: str


class WebSearchArgs(ToolArgs):
    query: str
    limit: int = Field(default=5, ge=1, le=10)


ToolHandler = Callable[[Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[ToolArgs]
    handler: ToolHandler

    def schema(self) -> Dict[str, Any]:
        return tool_schema(self.name, self.description, self.args_model)


def tool_schema(name: str, description: str, model: Type[BaseModel]) -> Dict[str, Any]:
    """Provider-neutral tool definition (``name``, ``description``, JSON-schema ``parameters``)."""
    parameters = model.model_json_schema(by_alias=True)
    parameters.pop("title", None)
    return {"name": name, "description": description, "parameters": parameters}


TOOL_DESCRIPTIONS: Dict[str, str] = {
    "query_google_sheet": "Fetch data from one of the organization's connected sheets.",
    "check_availability": "Read the bookings sheet to see which slots are taken on a date.",
    "append_booking_row": "Record a confirmed appointment. Call ONLY after the user confirms a time.",
    "get_appointment_by_phone": "Verify if an appointment exists in the bookings sheet.",
    "create_note": "Create a note for admin review about analytics, insights, or patterns.",
    "list_notes": "List the notes already recorded in this conversation.",
    "record_learned_knowledge": "Save a new fact or piece of information.",
    "request_edit_record": "Request that an existing memory record be edited.",
    "request_delete_record": "Request that a memory record be deleted.",
    "merge_notes": "Merge notes about the same topic into one kept note and delete the others.",
    "delete_note": "Delete a redundant note that duplicates or was merged into another note.",
    "web_search": "Search the web for up-to-date public information.",
    "send_whatsapp_message": "Send a WhatsApp message to the user on their phone.",
}
