from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime
from diagnostics.diagnostic_logger import DiagnosticLogger
from models.errors import LLMError
from models.schemas import ExtractedIntent, HistoryMessage, IntentEntities, IntentType

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.7

INTENT_SYSTEM_PROMPT = """You are an intent classifier for a customer support system.
Classify the user's latest message into exactly one intent and extract any entities.

Intents:
- book_appointment: the user wants to book, schedule, or change an appointment
- check_availability: the user asks when a doctor or slot is free
- query_information: the user asks about schedules, hours, policies, or other information
- create_note: the user asks to remember or record something
- general_conversation: greetings, thanks, or anything else
- request_human: the user wants to talk to a real person
- confirm_action: the user confirms a previously proposed action ("yes", "go ahead")

Only list tools that exist: query_google_sheet, check_availability, append_booking_row,
get_appointment_by_phone, create_note, web_search."""

EXTRACT_INTENT_TOOL: Dict[str, Any] = {
    "name": "extract_intent",
    "description": "Report the classified intent of the user's message.",
    "parameters": {
        "type": "object",
        "properties": {
            "intent": {"type": "string", "enum": [i.value for i in IntentType]},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "entities": {
                "type": "object",
                "properties": {
                    "patient_name": {"type": "string"},
                    "phone": {"type": "string"},
                    "date": {"type": "string"},
                    "time": {"type": "string"},
                    "doctor": {"type": "string"},
                    "notes": {"type": "string"},
                    "query": {"type": "string"},
                },
            },
            "requires_tools": {"type": "boolean"},
            "suggested_tools": {"type": "array", "items": {"type": "string"}},
            "reasoning": {"type": "string"},
        },
        "required": ["intent", "confidence", "requires_tools", "reasoning"],
    },
}

# Checked in order; the first match wins.
_INTENT_PATTERNS = [
    (
        IntentType.BOOK_APPOINTMENT,
        re.compile(r"\b(book|schedule|appointment|appt)\b"),
        ["query_google_sheet", "append_booking_row", "get_appointment_by_phone"],
    ),
    (
        IntentType.CHECK_AVAILABILITY,
        re.compile(r"\b(available|free|slot|when|is dr|is doctor)\b"),
        ["query_google_sheet", "get_appointment_by_phone"],
    ),
    (
        IntentType.QUERY_INFORMATION,
        re.compile(r"\b(schedule|time|info|policy|hours)\b"),
        ["query_google_sheet"],
    ),
    (
        IntentType.REQUEST_HUMAN,
        re.compile(r"\b(talk|speak|human|person|agent|representative)\b"),
        [],
    ),
    (
        IntentType.CONFIRM_ACTION,
        re.compile(r"^\s*(yes|yeah|yep|sure|ok|okay)\b|\b(proceed|do it|go ahead|that's correct|that is correct|confirm)\b"),
        [],
    ),
]

_PHONE = re.compile(r"\b\d{10,}\b")
_DATE = re.compile(
    r"\b(today|tomorrow|monday|tuesday|wednesday|thursday|friday|saturday|sunday|\d{1,2}/\d{1,2}/?\d{0,4})\b",
    re.IGNORECASE,
)
_TIME = re.compile(r"\b(\d{1,2}:\d{2}\s*(am|pm)?|\d{1,2}\s*(am|pm))\b", re.IGNORECASE)


class IntentAgent(BaseAgent):
    def __init__(self, llm: LLMRuntime | None = None, diagnostics: DiagnosticLogger | None = None) -> None:
        super().__init__(name="intent_agent", diagnostics=diagnostics)
        self.llm = llm or LLMRuntime()

    async def extract_intent(self, message: str, recent_history: Sequence[HistoryMessage] = ()) -> ExtractedIntent:
        """Classify ``message``; falls back to keyword rules when the model is unavailable."""
        try:
            raw = await self.llm.call_structured(
                INTENT_SYSTEM_PROMPT,
                self._build_prompt(message, recent_history),
                EXTRACT_INTENT_TOOL,
            )
            return self._coerce(raw)
        except (LLMError, ValidationError, ValueError, TypeError) as exc:
            logger.info("intent_llm_fallback", extra={"error": repr(exc)})
            return self.fallback_intent(message)

    def _build_prompt(self, message: str, recent_history: Sequence[HistoryMessage]) -> str:
        recent = "\n".join(f"{m.role.value}: {m.content}" for m in list(recent_history)[-5:])
        return f'User message: "{message}"\n\nRecent conversation:\n{recent}'

    def _coerce(self, raw: Dict[str, Any]) -> ExtractedIntent:
        # IntentType() raises ValueError for anything outside the enum.
        intent = IntentType(str(raw.get("intent", "")).strip().lower())
        confidence = max(0.0, min(1.0, float(raw.get("confidence", FALLBACK_CONFIDENCE))))
        entities = {k: str(v) for k, v in dict(raw.get("entities") or {}).items() if v not in (None, "")}
        return ExtractedIntent(
            intent=intent,
            confidence=confidence,
            entities=IntentEntities.model_validate(entities),
            requires_tools=bool(raw.get("requires_tools", False)),
            suggested_tools=[str(t) for t in raw.get("suggested_tools") or []],
            reasoning=str(raw.get("reasoning") or ""),
        )

    def fallback_intent(self, message: str) -> ExtractedIntent:
        lower = message.lower()
        intent = IntentType.GENERAL_CONVERSATION
        tools: List[str] = []
        for candidate, pattern, suggested in _INTENT_PATTERNS:
            if pattern.search(lower):
                intent, tools = candidate, list(suggested)
                break
        return ExtractedIntent(
            intent=intent,
            confidence=FALLBACK_CONFIDENCE,
            entities=self.extract_entities(message),
            requires_tools=bool(tools),
            suggested_tools=tools,
            reasoning="Fallback pattern matching",
        )

    def extract_entities(self, message: str) -> IntentEntities:
        entities = IntentEntities()
        phone = _PHONE.search(message)
        if phone:
            entities.phone = phone.group(0)
        date = _DATE.search(message)
        if date:
            entities.date = date.group(0)
        time = _TIME.search(message)
        if time:
            entities.time = time.group(0)
        return entities
