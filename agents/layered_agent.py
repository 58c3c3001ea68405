from __future__ import annotations

import logging
import re
import time
from typing import List, Optional, Tuple

from agents.base import AgentPipeline
from agents.decomposer import QuestionDecomposer
from agents.escalation import (
    HANDOFF_MARKER,
    HANDOFF_TEXT,
    SAFE_FALLBACK_TEXT,
    last_user_message,
    strip_handoff_marker,
    suggests_care_team,
)
from agents.intent_agent import IntentAgent
from agents.llm_runtime import LLMRuntime, to_chat_messages
from agents.orchestrator import ToolOrchestrator, ToolServices
from agents.supervisor_agent import PlanSupervisor, StepOutcome
from agents.tool_loop import records_prompt_block, run_tool_loop
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.context_builder import MemoryBuilder, format_context_for_prompt, trim_conversation_history
from memory.plan_store import PlanStore
from models.errors import LLMError
from models.schemas import (
    AgentContext,
    AgentResult,
    DecomposedQuestion,
    ExecutionPlan,
    ExtractedIntent,
    HistoryMessage,
    IntentType,
    PlanStatus,
    StepStatus,
    TenantAgentConfig,
)
from settings import SETTINGS
from tenants.config_store import TenantConfigStore

logger = logging.getLogger(__name__)

CRITICAL_RULES = (
    "CRITICAL RULES:\n"
    "1. NEVER assume any action succeeded unless a tool explicitly returns success=true.\n"
    "2. NEVER confirm bookings unless the tool returned success=true AND verification passed.\n"
    "3. Trust the database, not your memory. Always verify state from tool results.\n"
    "4. If a tool returns success=false, inform the user the action failed.\n"
    "5. Binary state only: things either exist in the database or they don't."
)
RECORD_RULES = (
    "When the user provides information to remember:\n"
    "1) If it UPDATES an existing record -> use request_edit_record\n"
    "2) If a record is obsolete -> use request_delete_record\n"
    "3) Only use record_learned_knowledge for NEW information"
)
BOOKING_RULES = (
    "BOOKING RULES:\n"
    "- Use append_booking_row ONLY after user confirms a time\n"
    "- The orchestrator will automatically verify bookings\n"
    "- Only confirm if verification passes"
)
UNVERIFIED_BOOKING_TEXT = (
    "I attempted to save your appointment, but I wasn't able to verify it was successfully recorded. "
    "Please contact the care team to confirm your appointment."
)

_BOOKING_CLAIM = re.compile(r"\b(booked|booking confirmed|appointment (is )?(confirmed|scheduled|set))", re.IGNORECASE)


def guard_booking_claim(text: str, orchestrator: ToolOrchestrator) -> str:
    """Replace a booking confirmation the execution log cannot back up."""
    if not _BOOKING_CLAIM.search(text) or orchestrator.has_verified_booking():
        return text
    attempted = any(e.tool_call.name == "append_booking_row" for e in orchestrator.execution_logs)
    return UNVERIFIED_BOOKING_TEXT if attempted else text


class LayeredAgentPipeline(AgentPipeline):
    """Version 2: intent, decomposition, memory and plan layers around a verified tool loop.

    The model only suggests tool calls; the orchestrator decides, executes and
    verifies them, and the final text is checked against the execution log
    before it reaches the user.
    """

    def __init__(
        self,
        tenants: TenantConfigStore | None = None,
        llm: LLMRuntime | None = None,
        services: ToolServices | None = None,
        memory: MemoryBuilder | None = None,
        plans: PlanStore | None = None,
        max_tool_rounds: int | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="layered_agent", diagnostics=diagnostics)
        self.tenants = tenants or TenantConfigStore()
        self.llm = llm or LLMRuntime()
        self.services = services or ToolServices()
        self.plans = plans or PlanStore()
        self.memory = memory or MemoryBuilder(notes=self.services.notes, plans=self.plans)
        self.max_tool_rounds = max_tool_rounds if max_tool_rounds is not None else SETTINGS.max_tool_rounds

    async def run(
        self,
        tenant_id: str,
        history: List[HistoryMessage],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> AgentResult:
        start = time.perf_counter()
        config = await self.tenants.get_config(tenant_id)
        llm = self.llm.with_options(provider=config.provider, model=config.model, temperature=config.temperature)
        last_user = last_user_message(history)

        intent = await IntentAgent(llm=llm, diagnostics=self.diagnostics).extract_intent(last_user, history)
        if intent.intent == IntentType.REQUEST_HUMAN:
            self.build_decision_log(
                tenant_id, "intent_handoff", conversation_id=conversation_id, metadata={"confidence": intent.confidence}
            )
            return AgentResult(text=HANDOFF_TEXT, request_handoff=True)

        orchestrator = ToolOrchestrator(
            tenant_id,
            config,
            services=self.services,
            conversation_id=conversation_id,
            user_id=user_id,
            diagnostics=self.diagnostics,
        )
        orchestrator.clear_execution_logs()
        decomposition = await QuestionDecomposer(llm=llm, diagnostics=self.diagnostics).decompose(last_user, history)

        rag_text: Optional[str] = None
        if config.rag_enabled and last_user:
            try:
                rag_text = await self.services.brain.knowledge_index.get_rag_context(tenant_id, last_user)
            except Exception as exc:
                logger.warning("layered_agent_rag_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
        context = await self.memory.build_context(
            tenant_id, conversation_id, history, orchestrator.execution_logs, rag_text=rag_text, user_id=user_id
        )

        supervisor = PlanSupervisor(llm=llm, plans=self.plans, diagnostics=self.diagnostics)
        plan, plan_section = await self._plan_turn(
            supervisor, intent, decomposition, last_user, history, orchestrator, context, tenant_id, conversation_id
        )
        system_prompt = await self.build_system_prompt(tenant_id, config, context, orchestrator, decomposition, plan_section)
        recent = trim_conversation_history(history, self.memory.max_recent_messages).recent_messages

        try:
            loop = await run_tool_loop(
                llm,
                system_prompt,
                to_chat_messages(recent),
                orchestrator,
                orchestrator.tool_schemas(),
                self.max_tool_rounds,
            )
        except LLMError as exc:
            logger.warning("layered_agent_llm_failed", extra={"tenant_id": tenant_id, "error": str(exc)})
            self.build_decision_log(tenant_id, "llm_failed", conversation_id=conversation_id, status="error", error=str(exc))
            return AgentResult(text=SAFE_FALLBACK_TEXT)

        if plan is not None:
            await self._record_plan_progress(supervisor, plan, orchestrator)

        text = guard_booking_claim(loop.text, orchestrator)
        if text != loop.text:
            logger.warning("layered_agent_unverified_booking_claim", extra={"tenant_id": tenant_id, "conversation_id": conversation_id})
        text, marker = strip_handoff_marker(text)
        request_handoff = marker or suggests_care_team(loop.text)

        await self.services.analytics.record_usage(
            tenant_id, loop.provider, loop.model, loop.usage["input_tokens"], loop.usage["output_tokens"]
        )
        self.build_decision_log(
            tenant_id,
            "run_complete",
            conversation_id=conversation_id,
            tool_calls=[e.tool_call.name for e in orchestrator.execution_logs],
            duration_ms=int((time.perf_counter() - start) * 1000),
            metadata={
                "intent": intent.intent.value,
                "is_complex": decomposition.is_complex,
                "plan_id": plan.plan_id if plan else None,
                "rounds": loop.rounds,
                "request_handoff": request_handoff,
            },
        )
        return AgentResult(text=text or SAFE_FALLBACK_TEXT, request_handoff=request_handoff)

    async def _plan_turn(
        self,
        supervisor: PlanSupervisor,
        intent: ExtractedIntent,
        decomposition: DecomposedQuestion,
        message: str,
        history: List[HistoryMessage],
        orchestrator: ToolOrchestrator,
        context: AgentContext,
        tenant_id: str,
        conversation_id: str | None,
    ) -> Tuple[Optional[ExecutionPlan], str]:
        plan = context.structured_state.active_plan
        if plan is not None and intent.intent == IntentType.CONFIRM_ACTION and plan.status == PlanStatus.AWAITING_CONFIRMATION:
            plan = await supervisor.confirm_step(plan, plan.current_step)
        elif decomposition.is_complex or supervisor.needs_planning(intent, message):
            if plan is not None:
                logger.info("layered_agent_plan_replaced", extra={"tenant_id": tenant_id, "plan_id": plan.plan_id})
            plan = await supervisor.analyze_and_plan(
                message,
                history,
                orchestrator.available_tool_names(),
                tenant_id=tenant_id,
                conversation_id=conversation_id,
            )
        if plan is None or not plan.steps:
            return None, ""

        done = [s.step_number for s in plan.steps if s.status == StepStatus.COMPLETED]
        completed = [StepOutcome(step=n, result="completed", success=True) for n in done]
        progress = await supervisor.track_progress(plan, message, history, completed)
        lines = [f"{s.step_number}. [{s.status.value}] {s.action}" + (f" (tool: {s.tool_to_use})" if s.tool_to_use else "") for s in plan.steps]
        section = "Action plan for this request:\n" + "\n".join(lines) + f"\nGuidance: {progress.current_step_guidance}"
        missing = supervisor.check_missing_info(message, history, plan)
        if not missing.has_all_info and missing.prompt:
            section += f"\nMissing information. Ask the user for it before acting:\n{missing.prompt}"
        return plan, section

    async def _record_plan_progress(
        self, supervisor: PlanSupervisor, plan: ExecutionPlan, orchestrator: ToolOrchestrator
    ) -> ExecutionPlan:
        for entry in orchestrator.execution_logs:
            step = next(
                (
                    s
                    for s in plan.steps
                    if s.tool_to_use == entry.tool_call.name and s.status != StepStatus.COMPLETED
                ),
                None,
            )
            if step is None:
                continue
            try:
                plan = await supervisor.record_step_result(plan, step.step_number, entry.result.success)
            except OSError as exc:
                logger.warning("plan_progress_persist_failed", extra={"tenant_id": plan.tenant_id, "error": repr(exc)})
                break
        return plan

    async def build_system_prompt(
        self,
        tenant_id: str,
        config: TenantAgentConfig,
        context: AgentContext,
        orchestrator: ToolOrchestrator,
        decomposition: DecomposedQuestion,
        plan_section: str,
    ) -> str:
        sections = [
            f"Your name is {config.agent_name}. Always use this name when greeting or introducing yourself.",
            config.system_prompt,
            format_context_for_prompt(context),
            CRITICAL_RULES,
        ]
        if decomposition.is_complex:
            parts = "\n".join(f"- {q}" for q in decomposition.sub_questions)
            sections.append(f"The user asked several things. Answer each part:\n{parts}")
        if plan_section:
            sections.append(plan_section)
        if config.rag_enabled:
            try:
                records = await self.services.brain.list_records(tenant_id)
            except Exception as exc:
                logger.warning("layered_agent_records_unavailable", extra={"tenant_id": tenant_id, "error": repr(exc)})
                records = []
            sections.append(records_prompt_block(records))
            sections.append(RECORD_RULES)
        if config.google_sheets:
            listing = "\n".join(
                f'- useWhen "{s.use_when}" -> use query_google_sheet with useWhen "{s.use_when}"' for s in config.google_sheets
            )
            sections.append(f"Google Sheets available:\n{listing}")
            if orchestrator.bookings.bookings_sheet is not None:
                sections.append(BOOKING_RULES)
        sections.append(f"How you should think: {config.thinking_instructions}")
        sections.append(f'Escalation: If you cannot help or user wants a human, end your reply with "{HANDOFF_MARKER}"')
        return "\n\n".join(sections)
