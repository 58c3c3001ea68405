from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List

from diagnostics.diagnostic_logger import DiagnosticLogger
from models.schemas import AgentResult, DiagnosticEvent, HistoryMessage


class BaseAgent(ABC):
    def __init__(self, name: str, diagnostics: DiagnosticLogger | None = None) -> None:
        self.name = name
        self.diagnostics = diagnostics or DiagnosticLogger()

    def build_decision_log(
        self,
        tenant_id: str,
        step: str,
        conversation_id: str | None = None,
        status: str = "ok",
        tool_calls: Iterable[str] | None = None,
        duration_ms: int = 0,
        metadata: Dict[str, Any] | None = None,
        error: str | None = None,
    ) -> DiagnosticEvent:
        record = DiagnosticEvent(
            tenant_id=tenant_id,
            source=self.name,
            step=step,
            status=status,
            conversation_id=conversation_id,
            duration_ms=duration_ms,
            tool_calls=list(tool_calls or []),
            metadata=dict(metadata or {}),
            error=error,
        )
        self.diagnostics.record(record)
        return record


class AgentPipeline(BaseAgent):
    """One complete answer-generation strategy selectable per tenant."""

    @abstractmethod
    async def run(
        self,
        tenant_id: str,
        history: List[HistoryMessage],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> AgentResult:
        raise NotImplementedError
