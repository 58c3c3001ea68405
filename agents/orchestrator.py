from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from agents.base import BaseAgent
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.agent_brain import AgentBrain
from memory.agent_notes import AgentNotesStore
from models.schemas import (
    ExecutionLogEntry,
    ModificationType,
    TenantAgentConfig,
    ToolAction,
    ToolCall,
    ToolResult,
)
from tools.analytics_tools import AnalyticsTools
from tools.booking_tools import BookingTools, find_bookings_sheet, resolve_today
from tools.notification_tools import NotificationError, NotificationTools
from tools.registry import (
    TOOL_DESCRIPTIONS,
    AppendBookingRowArgs,
    CheckAvailabilityArgs,
    CreateNoteArgs,
    DeleteNoteArgs,
    GetAppointmentByPhoneArgs,
    ListNotesArgs,
    MergeNotesArgs,
    QueryGoogleSheetArgs,
    RecordLearnedKnowledgeArgs,
    RequestDeleteRecordArgs,
    RequestEditRecordArgs,
    SendWhatsAppMessageArgs,
    ToolArgs,
    ToolHandler,
    ToolSpec,
    WebSearchArgs,
)
from tools.search_tools import SearchTools
from tools.sheet_tools import GoogleSheetsClient, SheetsAPIError, SheetsClient

logger = logging.getLogger(__name__)

RECORD_TOOLS = ("record_learned_knowledge", "request_edit_record", "request_delete_record")
BOOKING_TOOLS = ("check_availability", "append_booking_row", "get_appointment_by_phone")
NOTEBOOK_CONSOLIDATION_TOOLS = ("merge_notes", "delete_note")


@dataclass
class ToolServices:
    """Shared collaborators the tool handlers run against."""

    notes: AgentNotesStore = field(default_factory=AgentNotesStore)
    brain: AgentBrain = field(default_factory=AgentBrain)
    sheets: SheetsClient = field(default_factory=GoogleSheetsClient)
    analytics: AnalyticsTools = field(default_factory=AnalyticsTools)
    search: SearchTools = field(default_factory=SearchTools)
    notifications: NotificationTools = field(default_factory=NotificationTools)


class ToolOrchestrator(BaseAgent):
    """Validates, executes and verifies the model's tool calls for one turn.

    The model only proposes calls. Every call is checked against the closed
    registry and its argument model, bookings are re-read after the write, and
    each call leaves exactly one entry in ``execution_logs``.
    """

    def __init__(
        self,
        tenant_id: str,
        config: TenantAgentConfig,
        services: ToolServices | None = None,
        conversation_id: str | None = None,
        user_id: str | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="tool_orchestrator", diagnostics=diagnostics)
        self.tenant_id = tenant_id
        self.config = config
        self.services = services or ToolServices()
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.bookings = BookingTools(
            self.services.sheets,
            find_bookings_sheet(config.google_sheets),
            notes=self.services.notes,
        )
        self.execution_logs: List[ExecutionLogEntry] = []
        handlers: Dict[str, tuple[type[ToolArgs], ToolHandler]] = {
            "query_google_sheet": (QueryGoogleSheetArgs, self._query_google_sheet),
            "check_availability": (CheckAvailabilityArgs, self._check_availability),
            "append_booking_row": (AppendBookingRowArgs, self._append_booking_row),
            "get_appointment_by_phone": (GetAppointmentByPhoneArgs, self._get_appointment_by_phone),
            "create_note": (CreateNoteArgs, self._create_note),
            "list_notes": (ListNotesArgs, self._list_notes),
            "merge_notes": (MergeNotesArgs, self._merge_notes),
            "delete_note": (DeleteNoteArgs, self._delete_note),
            "record_learned_knowledge": (RecordLearnedKnowledgeArgs, self._record_learned_knowledge),
            "request_edit_record": (RequestEditRecordArgs, self._request_edit_record),
            "request_delete_record": (RequestDeleteRecordArgs, self._request_delete_record),
            "web_search": (WebSearchArgs, self._web_search),
            "send_whatsapp_message": (SendWhatsAppMessageArgs, self._send_whatsapp_message),
        }
        self.registry: Dict[str, ToolSpec] = {
            name: ToolSpec(name=name, description=TOOL_DESCRIPTIONS[name], args_model=model, handler=handler)
            for name, (model, handler) in handlers.items()
        }

    def available_tool_names(self) -> List[str]:
        """Tools the tenant's configuration enables for the model."""
        names = ["create_note", "list_notes"]
        if self.config.rag_enabled:
            names.extend(RECORD_TOOLS)
        if self.config.google_sheets:
            names.append("query_google_sheet")
            if self.bookings.bookings_sheet is not None:
                names.extend(BOOKING_TOOLS)
        if self.config.web_search_enabled and self.services.search.available():
            names.append("web_search")
        return names

    def tool_schemas(self, names: Sequence[str] | None = None) -> List[Dict[str, Any]]:
        wanted = names if names is not None else self.available_tool_names()
        return [self.registry[n].schema() for n in wanted if n in self.registry]

    def clear_execution_logs(self) -> None:
        self.execution_logs = []

    def has_verified_booking(self) -> bool:
        return any(
            e.tool_call.name == "append_booking_row" and e.result.success and e.verified for e in self.execution_logs
        )

    async def execute_tool_call(self, call: ToolCall) -> ToolResult:
        start = time.perf_counter()
        spec = self.registry.get(call.name)
        if spec is None:
            result = ToolResult(success=False, error=f"Unknown tool: {call.name}")
        else:
            try:
                args = spec.args_model.model_validate(call.arguments)
            except ValidationError:
                result = ToolResult(success=False, error=f"Invalid arguments for {call.name}")
            else:
                try:
                    result = await spec.handler(args)
                except Exception as exc:
                    logger.exception("tool_handler_failed", extra={"tenant_id": self.tenant_id, "tool": call.name})
                    result = ToolResult(success=False, error=str(exc) or f"{call.name} failed")

        self.execution_logs.append(
            ExecutionLogEntry(tool_call=call, result=result, verified=bool(result.verified), attempt=1)
        )
        self.build_decision_log(
            tenant_id=self.tenant_id,
            step="tool_call",
            conversation_id=self.conversation_id,
            status="ok" if result.success else "error",
            tool_calls=[call.name],
            duration_ms=int((time.perf_counter() - start) * 1000),
            metadata={"verified": bool(result.verified)},
            error=result.error,
        )
        return result

    async def _query_sheet(self, use_when: str, range_: str | None) -> ToolResult:
        sheets = self.config.google_sheets
        entry = next((s for s in sheets if s.use_when.lower() == (use_when or "").lower()), None)
        if entry is None:
            entry = sheets[0] if sheets else None
        if entry is None:
            return ToolResult(success=False, error="Sheet not found")
        try:
            data = await self.services.sheets.fetch_sheet_data(
                entry.spreadsheet_id, (range_ or "").strip() or entry.range
            )
        except SheetsAPIError as exc:
            return ToolResult(success=False, error=str(exc))
        await self.services.analytics.record_activity(self.tenant_id, "integrations")
        return ToolResult(success=True, data=data, action=ToolAction.READ)

    async def _query_google_sheet(self, args: QueryGoogleSheetArgs) -> ToolResult:
        return await self._query_sheet(args.use_when, args.range)

    async def _check_availability(self, args: CheckAvailabilityArgs) -> ToolResult:
        return await self._query_sheet("booking", args.range)

    async def _append_booking_row(self, args: AppendBookingRowArgs) -> ToolResult:
        date_str = resolve_today(args.date)
        await self._warn_on_noted_conflict(date_str, args.appointment_time, args.doctor_name)
        result = await self.bookings.book_appointment(
            self.tenant_id,
            args.date,
            args.patient_name,
            args.phone,
            args.doctor_name,
            args.appointment_time,
            notes=args.notes,
            conversation_id=self.conversation_id,
        )
        if not result.success:
            return result.model_copy(update={"verified": False})
        await self.services.analytics.record_activity(self.tenant_id, "integrations")
        verification = await self.bookings.verify_booking(
            self.tenant_id, args.phone, args.date, expected_appointment_id=(result.data or {}).get("appointmentId")
        )
        if not verification.verified:
            logger.warning(
                "booking_unverified",
                extra={"tenant_id": self.tenant_id, "conversation_id": self.conversation_id},
            )
            return result.model_copy(
                update={
                    "success": False,
                    "verified": False,
                    "error": "Booking was created but could not be verified in database",
                }
            )
        return result.model_copy(update={"verified": True})

    async def _warn_on_noted_conflict(self, date_str: str, time_str: str, doctor: str) -> None:
        if not self.conversation_id:
            return
        try:
            notes = await self.services.notes.list_notes(self.tenant_id, conversation_id=self.conversation_id, limit=20)
        except OSError as exc:
            logger.warning("booking_notes_check_failed", extra={"tenant_id": self.tenant_id, "error": repr(exc)})
            return
        noted = "; ".join(f"[{n.category.value}] {n.content}" for n in notes).lower()
        if all(part.lower() in noted for part in (date_str, time_str, doctor)):
            logger.warning(
                "booking_possible_double_booking",
                extra={"tenant_id": self.tenant_id, "date": date_str, "time": time_str, "doctor": doctor},
            )

    async def _get_appointment_by_phone(self, args: GetAppointmentByPhoneArgs) -> ToolResult:
        result = await self.bookings.get_appointment(self.tenant_id, args.phone, args.date)
        if result.success:
            await self.services.analytics.record_activity(self.tenant_id, "integrations")
        return result

    async def _create_note(self, args: CreateNoteArgs) -> ToolResult:
        if not self.conversation_id:
            return ToolResult(success=False, error="Conversation ID not available")
        note = await self.services.notes.create_note(
            self.tenant_id,
            self.conversation_id,
            args.content.strip(),
            user_id=self.user_id,
            patient_name=(args.patient_name or "").strip() or None,
            category=args.category,
        )
        return ToolResult(success=True, data={"noteId": note.note_id}, action=ToolAction.CREATE)

    async def _list_notes(self, args: ListNotesArgs) -> ToolResult:
        if not self.conversation_id:
            return ToolResult(success=False, error="Conversation ID not available")
        notes = await self.services.notes.list_notes(
            self.tenant_id, conversation_id=self.conversation_id, limit=args.limit
        )
        data = [{"category": n.category.value, "content": n.content, "patientName": n.patient_name} for n in notes]
        return ToolResult(success=True, data=data, action=ToolAction.READ)

    async def _record_learned_knowledge(self, args: RecordLearnedKnowledgeArgs) -> ToolResult:
        record = await self.services.brain.create_record(self.tenant_id, args.title, args.content)
        await self.services.analytics.record_activity(self.tenant_id, "agent-brain")
        return ToolResult(success=True, data={"recordId": record.record_id}, action=ToolAction.WRITE)

    async def _request_edit_record(self, args: RequestEditRecordArgs) -> ToolResult:
        if await self.services.brain.get_record(self.tenant_id, args.record_id) is None:
            return ToolResult(success=False, error="Record not found")
        request = await self.services.brain.create_modification_request(
            self.tenant_id,
            ModificationType.EDIT,
            args.record_id,
            title=args.title,
            content=args.content,
            reason=args.reason,
        )
        await self.services.analytics.record_activity(self.tenant_id, "agent-brain")
        return ToolResult(success=True, data={"requestId": request.request_id}, action=ToolAction.EDIT)

    async def _request_delete_record(self, args: RequestDeleteRecordArgs) -> ToolResult:
        if await self.services.brain.get_record(self.tenant_id, args.record_id) is None:
            return ToolResult(success=False, error="Record not found")
        request = await self.services.brain.create_modification_request(
            self.tenant_id, ModificationType.DELETE, args.record_id, reason=args.reason
        )
        await self.services.analytics.record_activity(self.tenant_id, "agent-brain")
        return ToolResult(success=True, data={"requestId": request.request_id}, action=ToolAction.DELETE)

    async def _web_search(self, args: WebSearchArgs) -> ToolResult:
        text = await self.services.search.search(args.query, args.limit)
        if not text:
            return ToolResult(success=False, error="No search results", action=ToolAction.QUERY)
        return ToolResult(success=True, data=text, action=ToolAction.QUERY)

    async def _send_whatsapp_message(self, args: SendWhatsAppMessageArgs) -> ToolResult:
        try:
            sent = await self.services.notifications.send_whatsapp(
                args.to, args.body, from_number=self.config.whatsapp_from_number
            )
        except NotificationError as exc:
            return ToolResult(success=False, error=str(exc), action=ToolAction.WRITE)
        return ToolResult(success=True, data=sent, action=ToolAction.WRITE)

    async def _merge_notes(self, args: MergeNotesArgs) -> ToolResult:
        kept = await self.services.notes.update_note_content(self.tenant_id, args.keep_note_id, args.merged_content)
        if kept is None:
            return ToolResult(success=False, error="Note not found", action=ToolAction.EDIT)
        deleted = [
            note_id
            for note_id in args.delete_note_ids
            if note_id != args.keep_note_id and await self.services.notes.delete_note(self.tenant_id, note_id)
        ]
        return ToolResult(
            success=True,
            data={"keptNoteId": kept.note_id, "deletedNoteIds": deleted, "merged": len(deleted) + 1},
            action=ToolAction.EDIT,
        )

    async def _delete_note(self, args: DeleteNoteArgs) -> ToolResult:
        if not await self.services.notes.delete_note(self.tenant_id, args.note_id):
            return ToolResult(success=False, error="Note not found or already deleted", action=ToolAction.DELETE)
        return ToolResult(success=True, data={"noteId": args.note_id, "reason": args.reason}, action=ToolAction.DELETE)
