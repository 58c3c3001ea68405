from __future__ import annotations

import logging
import re
from typing import Dict, List, Sequence

from memory.agent_notes import AgentNotesStore
from memory.plan_store import PlanStore
from memory.summary_store import SummaryStore
from models.schemas import (
    AgentContext,
    AgentNote,
    ConversationMemory,
    ExecutionLogEntry,
    HistoryMessage,
    MessageRole,
    StructuredState,
)
from settings import SETTINGS

logger = logging.getLogger(__name__)

TOPIC_KEYWORDS = [
    "appointment",
    "booking",
    "doctor",
    "symptom",
    "pain",
    "medication",
    "test",
    "schedule",
    "time",
    "date",
]
MAX_TOPICS = 5


def extract_key_topics(messages: Sequence[HistoryMessage]) -> List[str]:
    content = " ".join(m.content.lower() for m in messages)
    return [k for k in TOPIC_KEYWORDS if k in content][:MAX_TOPICS]


def trim_conversation_history(history: Sequence[HistoryMessage], max_recent: int | None = None) -> ConversationMemory:
    max_recent = max_recent if max_recent is not None else SETTINGS.memory_max_recent_messages
    history = list(history)
    if len(history) <= max_recent:
        return ConversationMemory(recent_messages=history, total_messages=len(history))
    recent = history[-max_recent:] if max_recent > 0 else []
    older = history[: len(history) - max_recent]
    user_count = sum(1 for m in older if m.role == MessageRole.USER)
    assistant_count = sum(1 for m in older if m.role == MessageRole.ASSISTANT)
    topics = ", ".join(extract_key_topics(older)) or "general conversation"
    synopsis = (
        "Earlier in this conversation:\n"
        f"- User sent {user_count} message(s)\n"
        f"- Assistant sent {assistant_count} response(s)\n"
        f"- Key topics discussed: {topics}"
    )
    return ConversationMemory(recent_messages=recent, synopsis=synopsis, total_messages=len(history))


def format_execution_logs(logs: Sequence[ExecutionLogEntry], max_logs: int | None = None) -> str:
    max_logs = max_logs if max_logs is not None else SETTINGS.memory_max_execution_logs
    if not logs or max_logs <= 0:
        return ""
    lines = []
    for idx, entry in enumerate(list(logs)[-max_logs:], start=1):
        mark = "✓" if entry.result.success else "✗"
        verified = " (verified)" if entry.verified else ""
        error = f" - Error: {entry.result.error}" if entry.result.error else ""
        lines.append(f"{idx}. {mark} {entry.tool_call.name}{verified}{error}")
    return "Recent tool executions:\n" + "\n".join(lines)


def limit_rag_chunks(rag_text: str, max_chunks: int | None = None) -> List[str]:
    max_chunks = max_chunks if max_chunks is not None else SETTINGS.memory_max_rag_chunks
    chunks = [c for c in rag_text.split("\n\n") if c.strip()]
    return chunks[:max_chunks]


def appointments_from_notes(notes: Sequence[AgentNote]) -> List[Dict[str, str]]:
    appointments: List[Dict[str, str]] = []
    for note in notes:
        content = note.content
        if "Booking" not in content and "Appointment" not in content:
            continue
        date_match = re.search(r"on (\d{4}-\d{2}-\d{2})", content)
        time_match = re.search(r"at (\d{1,2}:\d{2}\s*(?:am|pm)?)", content, re.IGNORECASE)
        if not (date_match and time_match):
            continue
        doctor_match = re.search(r"with Dr\. (.*?)(?= on| at|$)", content)
        phone_match = re.search(r"\((\d{10,})\)", content)
        appointments.append(
            {
                "appointment_id": f"NOTE-{note.note_id}",
                "date": date_match.group(1),
                "time": time_match.group(1),
                "patient_name": note.patient_name or "unknown",
                "phone": phone_match.group(1) if phone_match else "unknown",
                "doctor": doctor_match.group(1) if doctor_match else "unknown",
            }
        )
    return appointments


class MemoryBuilder:
    """Assembles the bounded per-turn context from every memory source.

    Each source is loaded independently; a failing source is logged and left
    empty so a turn never fails because memory was partially unavailable.
    """

    def __init__(
        self,
        notes: AgentNotesStore | None = None,
        plans: PlanStore | None = None,
        summaries: SummaryStore | None = None,
        max_recent_messages: int | None = None,
        max_execution_logs: int | None = None,
        max_summaries: int | None = None,
        max_rag_chunks: int | None = None,
        max_notes: int | None = None,
    ) -> None:
        self.notes = notes or AgentNotesStore()
        self.plans = plans or PlanStore()
        self.summaries = summaries or SummaryStore()
        self.max_recent_messages = max_recent_messages if max_recent_messages is not None else SETTINGS.memory_max_recent_messages
        self.max_execution_logs = max_execution_logs if max_execution_logs is not None else SETTINGS.memory_max_execution_logs
        self.max_summaries = max_summaries if max_summaries is not None else SETTINGS.memory_max_summaries
        self.max_rag_chunks = max_rag_chunks if max_rag_chunks is not None else SETTINGS.memory_max_rag_chunks
        self.max_notes = max_notes if max_notes is not None else SETTINGS.memory_max_notes

    async def load_structured_state(self, tenant_id: str, conversation_id: str | None) -> StructuredState:
        state = StructuredState()
        if not conversation_id:
            return state
        try:
            state.notes = await self.notes.list_notes(tenant_id, conversation_id=conversation_id, limit=self.max_notes)
            state.appointments = appointments_from_notes(state.notes)
        except Exception as exc:
            logger.warning("memory_notes_unavailable", extra={"tenant_id": tenant_id, "conversation_id": conversation_id, "error": repr(exc)})
        try:
            state.active_plan = await self.plans.latest_active_plan(tenant_id, conversation_id)
        except Exception as exc:
            logger.warning("memory_plan_unavailable", extra={"tenant_id": tenant_id, "conversation_id": conversation_id, "error": repr(exc)})
        return state

    async def build_context(
        self,
        tenant_id: str,
        conversation_id: str | None,
        history: Sequence[HistoryMessage],
        execution_logs: Sequence[ExecutionLogEntry] = (),
        rag_text: str | None = None,
        user_id: str | None = None,
    ) -> AgentContext:
        context = AgentContext(conversation_memory=trim_conversation_history(history, self.max_recent_messages))
        context.structured_state = await self.load_structured_state(tenant_id, conversation_id)
        context.execution_log_summary = format_execution_logs(execution_logs, self.max_execution_logs)
        try:
            context.long_term = await self.summaries.relevant_summaries(
                tenant_id,
                extract_key_topics(history),
                limit=self.max_summaries,
                user_id=user_id,
            )
        except Exception as exc:
            logger.warning("memory_summaries_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
        if rag_text:
            context.rag_chunks = limit_rag_chunks(rag_text, self.max_rag_chunks)
        return context


def format_context_for_prompt(context: AgentContext) -> str:
    parts: List[str] = []
    memory = context.conversation_memory
    if memory.synopsis:
        parts.append(f"Conversation Summary:\n{memory.synopsis}\n")
    parts.append(
        f"Recent conversation (last {len(memory.recent_messages)} messages):\n"
        "[Recent messages will be included in message history]\n"
    )

    state = context.structured_state
    if state.notes:
        lines = [
            f"{i}. [{n.category.value}] {n.content}" + (f" (User: {n.patient_name})" if n.patient_name else "")
            for i, n in enumerate(state.notes, start=1)
        ]
        parts.append("Existing notes in this conversation:\n" + "\n".join(lines) + "\n")
    if state.appointments:
        lines = [
            f"- {a['date']} at {a['time']} with Dr. {a['doctor']} for {a['patient_name']}"
            for a in state.appointments
        ]
        parts.append("Recorded appointments (source of truth):\n" + "\n".join(lines) + "\n")
    if state.active_plan and state.active_plan.steps:
        plan = state.active_plan
        lines = [f"{s.step_number}. [{s.status.value}] {s.action}: {s.description}" for s in plan.steps]
        parts.append(
            f"Active plan ({plan.status.value}, current step {plan.current_step}):\n" + "\n".join(lines) + "\n"
        )

    if context.execution_log_summary:
        parts.append(f"{context.execution_log_summary}\n")

    if context.long_term:
        lines = [
            f"{i}. Topics: {', '.join(s.key_topics)}\n   Summary: {s.summary[:200]}..."
            for i, s in enumerate(context.long_term, start=1)
        ]
        parts.append("Relevant past conversations:\n" + "\n\n".join(lines) + "\n")

    if context.rag_chunks:
        parts.append("Knowledge base context:\n" + "\n\n".join(context.rag_chunks) + "\n")
    return "\n".join(parts)
