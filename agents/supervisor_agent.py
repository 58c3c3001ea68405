from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.plan_store import PlanStore
from models.errors import LLMError
from models.schemas import (
    ExecutionPlan,
    ExtractedIntent,
    HistoryMessage,
    MissingInfoCheck,
    PlanStatus,
    PlanStep,
    ProgressReport,
    StepStatus,
)

logger = logging.getLogger(__name__)

PLANNER_SYSTEM_PROMPT = """You are a supervisor that creates high-level roadmaps to guide the main agent.
You do not call tools yourself. Break the user's request into clear, sequential steps that say
WHAT needs to be done; the main agent decides HOW. List any information that must still be
collected from the user as missing_info.

For booking requests a typical roadmap is:
1. Extract the user's details (name, phone)
2. Determine the specific date
3. Check which slots are taken on that date
4. Present the free slots and let the user choose
5. Create the booking once the user confirms

Available tools: {tools}"""

GUIDANCE_SYSTEM_PROMPT = """You track progress through an action plan and tell the main agent,
in one or two sentences, what to focus on next. You never block execution."""

CREATE_PLAN_TOOL: Dict[str, Any] = {
    "name": "create_action_plan",
    "description": "Create a step-by-step action plan for the user request.",
    "parameters": {
        "type": "object",
        "properties": {
            "actions_required": {"type": "boolean"},
            "steps": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "step_number": {"type": "integer"},
                        "action": {"type": "string"},
                        "description": {"type": "string"},
                        "tool_to_use": {"type": "string"},
                        "needs_user_input": {"type": "boolean"},
                        "user_prompt": {"type": "string"},
                        "requires_confirmation": {"type": "boolean"},
                    },
                    "required": ["step_number", "action", "description"],
                },
            },
            "missing_info": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["actions_required", "steps"],
    },
}

GUIDANCE_TOOL: Dict[str, Any] = {
    "name": "provide_guidance",
    "description": "Provide guidance on what the main agent should focus on next.",
    "parameters": {
        "type": "object",
        "properties": {"current_step_guidance": {"type": "string"}},
        "required": ["current_step_guidance"],
    },
}

_ACTION_KEYWORDS = re.compile(r"\b(book|schedule|appointment|create|add|update|delete|query|search|find)\b", re.IGNORECASE)
_MULTIPLE_ACTIONS = re.compile(r"\b(and|then|after|before|also|plus)\b", re.IGNORECASE)
_CONDITIONALS = re.compile(r"\b(if|when|check|verify|then)\b", re.IGNORECASE)

_STEP_ORDER = {StepStatus.PENDING: 0, StepStatus.IN_PROGRESS: 1, StepStatus.COMPLETED: 2}


@dataclass
class StepOutcome:
    step: int
    result: str
    success: bool


def _field_variants(field: str) -> List[str]:
    lower = field.lower()
    spaced = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", field).replace("_", " ").replace("-", " ").lower()
    return list(dict.fromkeys([lower, " ".join(spaced.split())]))


def _advance(step: PlanStep, status: StepStatus) -> PlanStep:
    if _STEP_ORDER[status] <= _STEP_ORDER[step.status]:
        return step
    return step.model_copy(update={"status": status})


class PlanSupervisor(BaseAgent):
    """Builds and tracks multi-step plans; never blocks or executes tools."""

    def __init__(
        self,
        llm: LLMRuntime | None = None,
        plans: PlanStore | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="plan_supervisor", diagnostics=diagnostics)
        self.llm = llm or LLMRuntime()
        self.plans = plans or PlanStore()

    def needs_planning(self, intent: ExtractedIntent, message: str) -> bool:
        return bool(
            _MULTIPLE_ACTIONS.search(message)
            or _CONDITIONALS.search(message)
            or len(intent.suggested_tools) > 2
        )

    async def analyze_and_plan(
        self,
        message: str,
        history: Sequence[HistoryMessage],
        available_tools: Sequence[str],
        tenant_id: str = "",
        conversation_id: str | None = None,
    ) -> ExecutionPlan:
        recent = "\n".join(f"{m.role.value}: {m.content}" for m in list(history)[-10:])
        prompt = f'User request: "{message}"\n\nRecent conversation history:\n{recent}'
        try:
            raw = await self.llm.call_structured(
                PLANNER_SYSTEM_PROMPT.format(tools=", ".join(available_tools)), prompt, CREATE_PLAN_TOOL
            )
            plan = self._plan_from_tool(raw)
        except (LLMError, ValidationError, ValueError, TypeError) as exc:
            logger.info("planner_llm_fallback", extra={"tenant_id": tenant_id, "error": repr(exc)})
            plan = self.fallback_plan(message)

        plan = plan.model_copy(
            update={"tenant_id": tenant_id, "conversation_id": conversation_id, "status": self._initial_status(plan)}
        )
        if conversation_id:
            try:
                plan = await self.plans.save_plan(plan)
            except OSError as exc:
                logger.warning("plan_persist_failed", extra={"tenant_id": tenant_id, "error": repr(exc)})
        return plan

    def _plan_from_tool(self, raw: Dict[str, Any]) -> ExecutionPlan:
        steps = [
            PlanStep.model_validate({**dict(s), "status": StepStatus.PENDING, "confirmed": False})
            for s in raw.get("steps") or []
        ]
        steps.sort(key=lambda s: s.step_number)
        return ExecutionPlan(
            description="Supervisor roadmap",
            actions_required=[s.action for s in steps] if raw.get("actions_required", bool(steps)) else [],
            steps=steps,
            current_step=1,
            missing_info=[str(m) for m in raw.get("missing_info") or []],
        )

    def fallback_plan(self, message: str) -> ExecutionPlan:
        if not _ACTION_KEYWORDS.search(message):
            return ExecutionPlan(description="No actions required", current_step=1)
        step = PlanStep(
            step_number=1,
            action="Analyze request",
            description="Extract information from user message and determine required actions",
        )
        return ExecutionPlan(
            description="Fallback roadmap",
            actions_required=[step.action],
            steps=[step],
            current_step=1,
        )

    def _initial_status(self, plan: ExecutionPlan) -> PlanStatus:
        if not plan.steps:
            return PlanStatus.COMPLETED
        if plan.missing_info:
            return PlanStatus.NEEDS_INFO
        if plan.steps[0].requires_confirmation:
            return PlanStatus.AWAITING_CONFIRMATION
        return PlanStatus.READY

    async def track_progress(
        self,
        plan: ExecutionPlan,
        message: str,
        history: Sequence[HistoryMessage],
        completed_steps: Sequence[StepOutcome] = (),
    ) -> ProgressReport:
        done = sorted({c.step for c in completed_steps if c.success})
        next_step = max(done) + 1 if done else 1
        by_number = {s.step_number: s for s in plan.steps}
        upcoming = by_number.get(next_step)
        if upcoming is not None:
            guidance = f"Focus on: {upcoming.action} - {upcoming.description}"
        else:
            guidance = "All steps appear to be completed. Review the conversation to ensure the task is finished."

        if self.llm.available() and plan.steps:
            status_lines = "\n".join(
                f"Step {s.step_number}: {s.action} - {'COMPLETED' if s.step_number in done else 'PENDING'}"
                for s in plan.steps
            )
            recent = "\n".join(f"{m.role.value}: {m.content}" for m in list(history)[-5:])
            prompt = (
                f"Action Plan Status:\n{status_lines}\n\nNext step to work on: {next_step}\n\n"
                f'User\'s latest message: "{message}"\n\nRecent conversation:\n{recent}'
            )
            try:
                raw = await self.llm.call_structured(GUIDANCE_SYSTEM_PROMPT, prompt, GUIDANCE_TOOL)
                guidance = str(raw.get("current_step_guidance") or "").strip() or guidance
            except LLMError as exc:
                logger.info("guidance_llm_fallback", extra={"tenant_id": plan.tenant_id, "error": repr(exc)})

        return ProgressReport(
            current_step_guidance=guidance,
            next_step=next_step if next_step <= len(plan.steps) else None,
            all_steps_completed=len(done) == len(plan.steps),
        )

    def check_missing_info(
        self, message: str, history: Sequence[HistoryMessage], plan: ExecutionPlan
    ) -> MissingInfoCheck:
        if not plan.missing_info:
            return MissingInfoCheck(has_all_info=True)
        haystack = " ".join(m.content.lower() for m in list(history)[-3:]) + " " + message.lower()
        still_missing = [
            field for field in plan.missing_info if not any(v in haystack for v in _field_variants(field))
        ]
        if not still_missing:
            return MissingInfoCheck(has_all_info=True)
        numbered = "\n".join(f"{i}. {field}" for i, field in enumerate(still_missing, start=1))
        return MissingInfoCheck(
            has_all_info=False,
            missing_fields=still_missing,
            prompt=f"To proceed with your request, I need a bit more information:\n{numbered}\n\nCould you please provide these details?",
        )

    async def record_step_result(self, plan: ExecutionPlan, step_number: int, success: bool) -> ExecutionPlan:
        """Store a new plan revision reflecting one step's outcome."""
        steps: List[PlanStep] = []
        for step in plan.steps:
            if step.step_number == step_number:
                step = _advance(step, StepStatus.COMPLETED if success else StepStatus.IN_PROGRESS)
            elif success and step.step_number == step_number + 1:
                step = _advance(step, StepStatus.IN_PROGRESS)
            steps.append(step)

        if all(s.status == StepStatus.COMPLETED for s in steps):
            status = PlanStatus.COMPLETED
        elif any(s.status == StepStatus.IN_PROGRESS and s.requires_confirmation and not s.confirmed for s in steps):
            status = PlanStatus.AWAITING_CONFIRMATION
        else:
            status = PlanStatus.EXECUTING
        pending = [s.step_number for s in steps if s.status != StepStatus.COMPLETED]
        revised = plan.model_copy(
            update={
                "steps": steps,
                "status": status,
                "current_step": pending[0] if pending else plan.current_step,
                "updated_at": datetime.utcnow(),
            }
        )
        return await self.plans.supersede(plan, revised)

    async def confirm_step(self, plan: ExecutionPlan, step_number: int) -> ExecutionPlan:
        steps = [
            _advance(s, StepStatus.IN_PROGRESS).model_copy(update={"confirmed": True})
            if s.step_number == step_number
            else s
            for s in plan.steps
        ]
        revised = plan.model_copy(
            update={"steps": steps, "status": PlanStatus.EXECUTING, "updated_at": datetime.utcnow()}
        )
        return await self.plans.supersede(plan, revised)
