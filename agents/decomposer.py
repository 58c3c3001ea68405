from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Sequence

from pydantic import ValidationError

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime
from diagnostics.diagnostic_logger import DiagnosticLogger
from models.errors import LLMError
from models.schemas import DecomposedQuestion, HistoryMessage

logger = logging.getLogger(__name__)

DECOMPOSE_SYSTEM_PROMPT = """You break customer messages into independent sub-questions.
If the message asks for a single thing, return it unchanged as the only sub-question and
mark it as not complex. Otherwise list each distinct request as its own short question."""

DECOMPOSE_TOOL: Dict[str, Any] = {
    "name": "decompose_question",
    "description": "Report the sub-questions contained in the user's message.",
    "parameters": {
        "type": "object",
        "properties": {
            "sub_questions": {"type": "array", "items": {"type": "string"}},
            "is_complex": {"type": "boolean"},
            "reasoning": {"type": "string"},
        },
        "required": ["sub_questions", "is_complex", "reasoning"],
    },
}

_CONNECTORS = re.compile(r"\b(and|then|also|plus|as well as)\b", re.IGNORECASE)
_CONNECTOR_WORDS = {"and", "then", "also", "plus", "as well as"}


def split_on_connectors(message: str) -> List[str]:
    parts = [p.strip() for p in _CONNECTORS.split(message) if p]
    return [p for p in parts if len(p) > 5 and p.lower() not in _CONNECTOR_WORDS]


class QuestionDecomposer(BaseAgent):
    def __init__(self, llm: LLMRuntime | None = None, diagnostics: DiagnosticLogger | None = None) -> None:
        super().__init__(name="question_decomposer", diagnostics=diagnostics)
        self.llm = llm or LLMRuntime()

    async def decompose(self, message: str, recent_history: Sequence[HistoryMessage] = ()) -> DecomposedQuestion:
        recent = "\n".join(f"{m.role.value}: {m.content}" for m in list(recent_history)[-3:])
        prompt = f'User message: "{message}"\n\nRecent conversation:\n{recent}'
        try:
            raw = await self.llm.call_structured(DECOMPOSE_SYSTEM_PROMPT, prompt, DECOMPOSE_TOOL)
            return self._coerce(message, raw)
        except (LLMError, ValidationError, ValueError, TypeError) as exc:
            logger.info("decompose_llm_fallback", extra={"error": repr(exc)})
            return self.fallback_decompose(message)

    def _coerce(self, message: str, raw: Dict[str, Any]) -> DecomposedQuestion:
        sub_questions = raw.get("sub_questions")
        if not isinstance(sub_questions, list) or not all(isinstance(q, str) for q in sub_questions):
            raise TypeError(f"sub_questions must be a list of strings, got {type(sub_questions).__name__}")
        subs = [q.strip() for q in sub_questions if q.strip()]
        is_complex = bool(raw.get("is_complex")) and len(subs) > 1
        return DecomposedQuestion(
            original_question=message,
            sub_questions=subs if is_complex else [message],
            is_complex=is_complex,
            reasoning=str(raw.get("reasoning") or ""),
        )

    def fallback_decompose(self, message: str) -> DecomposedQuestion:
        parts = split_on_connectors(message)
        if len(parts) > 1:
            return DecomposedQuestion(
                original_question=message,
                sub_questions=parts,
                is_complex=True,
                reasoning="Heuristic-based decomposition",
            )
        return DecomposedQuestion(
            original_question=message,
            sub_questions=[message],
            is_complex=False,
            reasoning="Question appears simple",
        )
