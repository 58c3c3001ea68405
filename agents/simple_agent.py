from __future__ import annotations

import logging
import time
from typing import List

from agents.base import AgentPipeline
from agents.escalation import (
    DELAYED_TEXT,
    HANDOFF_MARKER,
    HANDOFF_TEXT,
    SAFE_FALLBACK_TEXT,
    has_multiple_user_turns,
    last_reply_unhelpful,
    last_user_message,
    strip_handoff_marker,
    suggests_care_team,
    wants_human,
)
from agents.llm_runtime import LLMRuntime, to_chat_messages
from agents.orchestrator import ToolOrchestrator, ToolServices
from agents.tool_loop import records_prompt_block, run_tool_loop
from diagnostics.diagnostic_logger import DiagnosticLogger
from models.errors import LLMError
from models.schemas import AgentResult, HistoryMessage, TenantAgentConfig
from settings import SETTINGS
from tenants.config_store import TenantConfigStore

logger = logging.getLogger(__name__)

DEFAULT_AGENT_NAME = "CareMax Assistant"
EXISTING_NOTES_LIMIT = 10

HISTORY_INSTRUCTION = (
    'Use the full conversation history. Messages labeled "[Care team said to the user]: ..." are from a human care '
    "team member. Treat them as what was actually said to the user. When the user asks what was recommended or what "
    "the care team said, answer in one short paragraph using only that history. Do not repeat the same sentence or "
    "block twice in one reply."
)
IMAGE_INSTRUCTION = (
    "When the user attaches images, they are included in the conversation and you can see them. Describe what you "
    "observe when relevant and suggest next steps. Do not say you cannot see images."
)
TONE_INSTRUCTION = (
    'Tone: Be natural and concise. For "hi", "hello", or "how are you?" reply in one short sentence. Only introduce '
    "yourself when the user asks who you are or what you do. Vary your wording."
)
ESCALATION_INSTRUCTION = (
    f'Escalation to a human: When EITHER of the following is true, you MUST end your reply with exactly "{HANDOFF_MARKER}" '
    "on a new line (the user will not see this; the system will connect them to a care team member).\n"
    "1) The user expresses in any way that they want to speak to a human, a real person, the care team, or an agent, "
    'including indirect phrasings like "can I talk to someone?", "not a bot", "get me a human", "connect me with support".\n'
    "2) You have already tried to help with the same or similar question and could not resolve it, or the user is "
    "asking again after you gave an uncertain or unhelpful answer."
)
FOLLOW_UP_HINT = (
    " The user has sent another message after you previously could not fully help. "
    f'You MUST end your reply with "{HANDOFF_MARKER}" to escalate to a human.'
)
NOTEBOOK_INSTRUCTION = (
    "IMPORTANT - Agent Notebook: As you interact with users, observe patterns and create notes for admin review. "
    "Use create_note to track common questions, frequently asked about topics, important keywords or trends, and "
    "insights that would help improve the service. Use list_notes to see existing notes for this conversation. "
    "Create notes ONLY when you notice significant patterns or insights that need admin attention. Avoid redundant "
    "or trivial notes."
)
RECORD_RULES = (
    "When the user or care team provides information to remember, you MUST decide based on the existing records above:\n"
    "1) If it UPDATES or CORRECTS an existing record, use request_edit_record with that record's recordId; do NOT add a new record.\n"
    "2) If a record is obsolete or should be removed, use request_delete_record with that recordId.\n"
    "3) Only use record_learned_knowledge for genuinely NEW information that does not overlap any existing record.\n"
    "Use short, clear titles and key facts. An admin will approve edits and deletes before they are applied."
)
PLAIN_TEXT_RETRY = (
    "Reply to the user in plain text only. Do not use any tools. Provide a helpful response based on the conversation context."
)


def name_instruction(agent_name: str) -> str:
    text = (
        f"Your name is {agent_name}. You must always use this name: when greeting, when asked \"what's your name\" "
        'or "who are you", and in any introduction.'
    )
    if agent_name != DEFAULT_AGENT_NAME:
        text += f' Never say "{DEFAULT_AGENT_NAME}" or "I don\'t have a name". Always say you are {agent_name}.'
    return text


class SimpleAgentPipeline(AgentPipeline):
    """Version 1: one model with every enabled tool and a bounded tool loop."""

    def __init__(
        self,
        tenants: TenantConfigStore | None = None,
        llm: LLMRuntime | None = None,
        services: ToolServices | None = None,
        max_tool_rounds: int | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="simple_agent", diagnostics=diagnostics)
        self.tenants = tenants or TenantConfigStore()
        self.llm = llm or LLMRuntime()
        self.services = services or ToolServices()
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else SETTINGS.max_tool_rounds

    async def run(
        self,
        tenant_id: str,
        history: List[HistoryMessage],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> AgentResult:
        start = time.perf_counter()
        last_user = last_user_message(history)
        if wants_human(last_user):
            self.build_decision_log(tenant_id, "direct_handoff", conversation_id=conversation_id)
            return AgentResult(text=HANDOFF_TEXT, request_handoff=True)

        config = await self.tenants.get_config(tenant_id)
        orchestrator = ToolOrchestrator(
            tenant_id,
            config,
            services=self.services,
            conversation_id=conversation_id,
            user_id=user_id,
            diagnostics=self.diagnostics,
        )
        system_prompt = await self.build_system_prompt(tenant_id, config, history, last_user, orchestrator, conversation_id)
        llm = self.llm.with_options(provider=config.provider, model=config.model, temperature=config.temperature)

        try:
            loop = await run_tool_loop(
                llm,
                system_prompt,
                to_chat_messages(history),
                orchestrator,
                orchestrator.tool_schemas(),
                self.max_tool_rounds,
                plain_text_prompt=PLAIN_TEXT_RETRY,
            )
        except LLMError as exc:
            logger.warning("simple_agent_llm_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
            self.build_decision_log(
                tenant_id,
                "llm_failed",
                conversation_id=conversation_id,
                status="error",
                duration_ms=int((time.perf_counter() - start) * 1000),
                error=str(exc),
            )
            return AgentResult(text=DELAYED_TEXT if llm.available() else SAFE_FALLBACK_TEXT)

        text, marker = strip_handoff_marker(loop.text)
        request_handoff = marker or suggests_care_team(loop.text, include_recommendations=True)
        await self.services.analytics.record_usage(
            tenant_id, loop.provider, loop.model, loop.usage["input_tokens"], loop.usage["output_tokens"]
        )
        self.build_decision_log(
            tenant_id,
            "run_complete",
            conversation_id=conversation_id,
            tool_calls=[e.tool_call.name for e in orchestrator.execution_logs],
            duration_ms=int((time.perf_counter() - start) * 1000),
            metadata={"rounds": loop.rounds, "request_handoff": request_handoff},
        )
        return AgentResult(text=text or SAFE_FALLBACK_TEXT, request_handoff=request_handoff)

    async def build_system_prompt(
        self,
        tenant_id: str,
        config: TenantAgentConfig,
        history: List[HistoryMessage],
        last_user: str,
        orchestrator: ToolOrchestrator,
        conversation_id: str | None,
    ) -> str:
        follow_up = FOLLOW_UP_HINT if has_multiple_user_turns(history) and last_reply_unhelpful(history) else ""
        sections = [
            name_instruction(config.agent_name),
            config.system_prompt,
            HISTORY_INSTRUCTION,
            IMAGE_INSTRUCTION,
            TONE_INSTRUCTION,
            ESCALATION_INSTRUCTION + follow_up,
            f"How you should think: {config.thinking_instructions}",
            NOTEBOOK_INSTRUCTION + await self._existing_notes_block(tenant_id, conversation_id),
        ]

        if config.rag_enabled:
            rag_text = ""
            if last_user:
                try:
                    rag_text = await self.services.brain.knowledge_index.get_rag_context(tenant_id, last_user)
                except Exception as exc:
                    logger.warning("simple_agent_rag_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
            if rag_text:
                sections.append(
                    "Relevant context from this organization's knowledge base (use this for contact info, phone numbers, "
                    f"hours, locations, and other org-specific details):\n{rag_text}"
                )
            try:
                records = await self.services.brain.list_records(tenant_id)
            except Exception as exc:
                logger.warning("simple_agent_records_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
                records = []
            sections.append(records_prompt_block(records))
            sections.append(RECORD_RULES)

        if config.google_sheets:
            listing = "\n".join(
                f'- useWhen "{s.use_when}" -> use query_google_sheet with useWhen "{s.use_when}" when the user asks about: {s.use_when}'
                for s in config.google_sheets
            )
            sections.append(
                "This organization has connected Google Sheets. Only query the sheet that matches the user's question:\n"
                f"{listing}\nDo not call query_google_sheet for more than one sheet per turn."
            )
        if "web_search" in orchestrator.available_tool_names():
            sections.append("Use web_search only for public information that is not in the knowledge base.")
        return "\n\n".join(sections)

    async def _existing_notes_block(self, tenant_id: str, conversation_id: str | None) -> str:
        if not conversation_id:
            return ""
        try:
            notes = await self.services.notes.list_notes(tenant_id, conversation_id=conversation_id, limit=EXISTING_NOTES_LIMIT)
        except Exception as exc:
            logger.warning("simple_agent_notes_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
            return ""
        if not notes:
            return ""
        lines = "\n".join(
            f"{i}. [{n.category.value}] {n.content}" + (f" (User: {n.patient_name})" if n.patient_name else "")
            for i, n in enumerate(notes, start=1)
        )
        return (
            "\n\n--- Existing notes in this conversation (do NOT create duplicates) ---\n"
            f"{lines}\n--- End of existing notes ---\n\n"
            "Before creating a note, check the list above. Only create a note if it is genuinely new information."
        )
