from __future__ import annotations

import logging
from typing import List, Sequence

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime, to_chat_messages
from agents.orchestrator import NOTEBOOK_CONSOLIDATION_TOOLS, RECORD_TOOLS, ToolOrchestrator, ToolServices
from agents.tool_loop import format_records_for_prompt, run_tool_loop
from diagnostics.diagnostic_logger import DiagnosticLogger
from models.errors import LLMError
from models.schemas import AgentNote, AgentRecord, HistoryMessage, TenantAgentConfig
from settings import SETTINGS
from tenants.config_store import TenantConfigStore

logger = logging.getLogger(__name__)

LEARNING_MAX_ROUNDS = 3
RECORD_CONSOLIDATION_MAX_ROUNDS = 5
RECORD_CONSOLIDATION_MAX_RECORDS = 80
RECORD_CONSOLIDATION_CONTENT_LENGTH = 400
NOTES_CONSOLIDATION_CONTENT_LENGTH = 300
CONSOLIDATION_TEMPERATURE = 0.3

LEARNING_PROMPT = """You are reviewing a conversation after a human care team member has finished helping the user. Your only job is to identify information from this conversation (by the user or care team in messages labeled "[Care team said to the user]: ...") that should be reflected in the Auto Agent Brain, e.g. contact details, phone numbers, policy info, or corrections.

{records_block}

You MUST decide for each piece of information:
1) If it UPDATES or CORRECTS an existing record (e.g. new phone number for same branch, changed hours), use request_edit_record with that record's recordId; do NOT add a new record.
2) If a record is obsolete or wrong and should be removed, use request_delete_record with that recordId.
3) Only use record_learned_knowledge for genuinely NEW information that does not overlap any existing record (no similar title/topic).

If there is nothing new or nothing to update/remove, do not call any tool."""

RECORD_CONSOLIDATION_PROMPT = """You are consolidating the Auto Agent Brain: a knowledge base of records. Your task is to find records that are about the SAME topic or are duplicates/scattered (e.g. multiple entries for the same branch with overlapping or updated info).

Below are the current records (recordId, title, content).

Instructions:
1) Identify groups of records that cover the same topic or are clearly related (e.g. same branch, same location, same policy).
2) For each group: choose ONE record to keep as the single source of truth. Use request_edit_record to update that record's title and content with consolidated, merged information. Use request_delete_record on the OTHER records in the group.
3) Do not add new records. Only use request_edit_record and request_delete_record.
4) If a record has no duplicates or related records, leave it unchanged (do not call any tool for it).
5) Be conservative: only consolidate when records are clearly about the same thing. When in doubt, leave as is.

--- Current records ---
{records}
--- End of records ---

Review the list above and submit edit/delete requests to consolidate scattered or duplicate data."""

RECORD_CONSOLIDATION_REQUEST = (
    "Please check the records and consolidate any that are duplicates or scattered (same topic). "
    "Submit edit and delete requests as needed."
)

NOTES_CONSOLIDATION_PROMPT = """You are consolidating the Agent Notebook: analytics and insights tracked during conversations. Your task is to find notes that are about the SAME topic, are duplicates, or contain overlapping information.

Below are the current notes (noteId, category, content, user, createdAt).

Instructions:
1) Identify groups of notes that cover the same topic or are clearly duplicates/similar.
2) For each group: choose ONE note to keep. Use merge_notes to update that note's content with the merged information and list the other notes of the group in deleteNoteIds.
3) Do not add new notes. Only use merge_notes and delete_note.
4) If a note has no duplicates or related notes, leave it unchanged.
5) Be conservative: only consolidate when notes are clearly about the same thing.
6) When merging, preserve important details from all notes in the group.

--- Current notes ---
{notes}
--- End of notes ---

Review the list above and consolidate duplicate or overlapping notes."""

NOTES_CONSOLIDATION_REQUEST = (
    "Please review the notes and consolidate any that are duplicates or cover the same topic. "
    "Merge related notes and delete redundant ones."
)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


def format_records_for_consolidation(records: Sequence[AgentRecord]) -> str:
    if not records:
        return "No records."
    return "\n\n".join(
        f"- recordId: {r.record_id}\n  title: {r.title}\n  content: {_clip(r.content, RECORD_CONSOLIDATION_CONTENT_LENGTH)}"
        for r in list(records)[:RECORD_CONSOLIDATION_MAX_RECORDS]
    )


def format_notes_for_consolidation(notes: Sequence[AgentNote], max_notes: int | None = None) -> str:
    if not notes:
        return "No notes."
    limit = max_notes or SETTINGS.notes_consolidation_max_notes
    blocks = []
    for i, n in enumerate(list(notes)[:limit], start=1):
        block = f"{i}. noteId: {n.note_id}\n   category: {n.category.value}\n   content: {_clip(n.content, NOTES_CONSOLIDATION_CONTENT_LENGTH)}"
        if n.patient_name:
            block += f"\n   user: {n.patient_name}"
        block += f"\n   createdAt: {n.created_at.isoformat()}"
        blocks.append(block)
    return "\n\n".join(blocks)


def learning_system_prompt(config: TenantAgentConfig, records: Sequence[AgentRecord]) -> str:
    existing = format_records_for_prompt(records)
    block = (
        "--- Current Auto Agent Brain records (check these first) ---\n"
        f"{existing}\n--- End of existing records ---"
    )
    custom = (config.learning_only_prompt or "").strip()
    if not custom:
        return LEARNING_PROMPT.format(records_block=block)
    if "{existingRecords}" in custom:
        return custom.replace("{existingRecords}", existing)
    return f"{custom}\n\n{block}"


def record_consolidation_prompt(config: TenantAgentConfig, records: Sequence[AgentRecord]) -> str:
    block = format_records_for_consolidation(records)
    custom = (config.consolidation_prompt or "").strip()
    if not custom:
        return RECORD_CONSOLIDATION_PROMPT.format(records=block)
    if "{recordsBlock}" in custom:
        return custom.replace("{recordsBlock}", block)
    return f"{custom}\n\n--- Current records ---\n{block}\n--- End of records ---"


def notes_consolidation_prompt(config: TenantAgentConfig, notes_block: str) -> str:
    custom = (config.consolidation_prompt or "").strip()
    if not custom:
        return NOTES_CONSOLIDATION_PROMPT.format(notes=notes_block)
    prompt = custom.replace("{recordsBlock}", notes_block).replace("{notesBlock}", notes_block)
    if notes_block not in prompt:
        prompt = f"{prompt}\n\n--- Current notes ---\n{notes_block}\n--- End of notes ---"
    return prompt


class LearningAgent(BaseAgent):
    """Background passes that keep the agent brain and notebook tidy.

    None of these produce a user-facing reply; each returns how many tool
    calls succeeded. Record changes stay pending until an admin approves them.
    """

    def __init__(
        self,
        tenants: TenantConfigStore | None = None,
        llm: LLMRuntime | None = None,
        services: ToolServices | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="learning_agent", diagnostics=diagnostics)
        self.tenants = tenants or TenantConfigStore()
        self.llm = llm or LLMRuntime()
        self.services = services or ToolServices()

    async def extract_learning(
        self,
        tenant_id: str,
        history: List[HistoryMessage],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> int:
        config = await self.tenants.get_config(tenant_id)
        llm = self.llm.with_options(provider=config.provider, model=config.model, temperature=config.temperature)
        if not config.rag_enabled or not llm.available() or not history:
            return 0
        records = await self.services.brain.list_records(tenant_id)
        return await self._run(
            "learning_extraction",
            llm,
            config,
            learning_system_prompt(config, records),
            to_chat_messages(history),
            RECORD_TOOLS,
            LEARNING_MAX_ROUNDS,
            conversation_id=conversation_id,
            user_id=user_id,
        )

    async def consolidate_records(self, tenant_id: str) -> int:
        """Propose edit and delete requests that merge duplicate brain records."""
        config = await self.tenants.get_config(tenant_id)
        llm = self.llm.with_options(provider=config.provider, model=config.model, temperature=CONSOLIDATION_TEMPERATURE)
        if not config.rag_enabled or not llm.available():
            return 0
        records = await self.services.brain.list_records(tenant_id)
        if not records:
            return 0
        return await self._run(
            "record_consolidation",
            llm,
            config,
            record_consolidation_prompt(config, records),
            [{"role": "user", "content": RECORD_CONSOLIDATION_REQUEST}],
            ("request_edit_record", "request_delete_record"),
            RECORD_CONSOLIDATION_MAX_ROUNDS,
        )

    async def consolidate_notes(self, tenant_id: str) -> int:
        config = await self.tenants.get_config(tenant_id)
        llm = self.llm.with_options(provider=config.provider, model=config.model, temperature=CONSOLIDATION_TEMPERATURE)
        if not llm.available():
            return 0
        notes = await self.services.notes.list_notes(tenant_id, limit=SETTINGS.notes_consolidation_max_notes)
        if not notes:
            return 0
        return await self._run(
            "notes_consolidation",
            llm,
            config,
            notes_consolidation_prompt(config, format_notes_for_consolidation(notes)),
            [{"role": "user", "content": NOTES_CONSOLIDATION_REQUEST}],
            NOTEBOOK_CONSOLIDATION_TOOLS,
            SETTINGS.notes_consolidation_max_rounds,
        )

    async def _run(
        self,
        step: str,
        llm: LLMRuntime,
        config: TenantAgentConfig,
        system_prompt: str,
        messages: List[dict],
        tool_names: Sequence[str],
        max_rounds: int,
        conversation_id: str | None = None,
        user_id: str | None = None,
    ) -> int:
        orchestrator = ToolOrchestrator(
            config.tenant_id,
            config,
            services=self.services,
            conversation_id=conversation_id,
            user_id=user_id,
            diagnostics=self.diagnostics,
        )
        try:
            loop = await run_tool_loop(
                llm,
                system_prompt,
                messages,
                orchestrator,
                orchestrator.tool_schemas(tool_names),
                max_rounds,
                require_text=False,
            )
        except LLMError as exc:
            logger.warning(f"{step}_failed", extra={"tenant_id": config.tenant_id, "error": str(exc)})
            self.build_decision_log(config.tenant_id, step, conversation_id=conversation_id, status="error", error=str(exc))
            return 0

        succeeded = sum(1 for e in orchestrator.execution_logs if e.result.success)
        await self.services.analytics.record_usage(
            config.tenant_id, loop.provider, loop.model, loop.usage["input_tokens"], loop.usage["output_tokens"]
        )
        self.build_decision_log(
            config.tenant_id,
            step,
            conversation_id=conversation_id,
            tool_calls=[e.tool_call.name for e in orchestrator.execution_logs],
            metadata={"succeeded": succeeded, "rounds": loop.rounds},
        )
        return succeeded
