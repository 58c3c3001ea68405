from __future__ import annotations

from typing import Any, Dict, List

import pytest

from agents.llm_runtime import LLMResult
from agents.orchestrator import ToolServices
from api.service_container import build_platform
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.agent_brain import AgentBrain
from memory.agent_notes import AgentNotesStore
from memory.conversation_store import ConversationStore
from memory.knowledge_index import KnowledgeIndex
from memory.plan_store import PlanStore
from memory.summary_store import SummaryStore
from models.errors import LLMError
from models.schemas import ToolCall
from tenants.config_store import TenantConfigStore
from tools.analytics_tools import AnalyticsTools
from tools.notification_tools import NotificationTools
from tools.search_tools import SearchTools
from tools.sheet_tools import InMemorySheetsClient


class ScriptedLLM:
    """Deterministic stand-in for LLMRuntime.

    ``structured`` maps a structured-output tool name to the arguments it returns;
    any other tool name raises LLMError like an unreachable model would.
    ``replies`` is consumed in order by ``invoke``.
    """

    provider = "scripted"
    model = "scripted-1"
    temperature = 0.0

    def __init__(self, replies: List[LLMResult] | None = None, structured: Dict[str, Dict[str, Any]] | None = None) -> None:
        self.replies = list(replies or [])
        self.structured = dict(structured or {})
        self.calls: List[Dict[str, Any]] = []

    def available(self) -> bool:
        return True

    def with_options(self, provider=None, model=None, temperature=None) -> "ScriptedLLM":
        return self

    async def invoke(self, system_prompt, messages, tools=None, tool_choice=None) -> LLMResult:
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "tools": tools})
        if not self.replies:
            raise LLMError("no scripted reply left")
        return self.replies.pop(0)

    async def call_structured(self, system_prompt, user_prompt, tool) -> Dict[str, Any]:
        if tool["name"] not in self.structured:
            raise LLMError(f"unscripted structured call: {tool['name']}")
        return dict(self.structured[tool["name"]])


def text_reply(text: str) -> LLMResult:
    return LLMResult(text=text, provider="scripted", model="scripted-1", raw={}, usage={"input_tokens": 10, "output_tokens": 5})


def tool_reply(*calls: ToolCall) -> LLMResult:
    return LLMResult(
        text="",
        provider="scripted",
        model="scripted-1",
        raw={},
        tool_calls=list(calls),
        usage={"input_tokens": 10, "output_tokens": 5},
    )


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def diagnostics(tmp_path):
    return DiagnosticLogger(str(tmp_path / "diagnostics.log.jsonl"))


@pytest.fixture
def tenants(tmp_path):
    return TenantConfigStore(str(tmp_path / "tenants.json"))


@pytest.fixture
def conversations(tmp_path):
    return ConversationStore(str(tmp_path / "conversations.json"), str(tmp_path / "messages.json"))


@pytest.fixture
def plans(tmp_path):
    return PlanStore(str(tmp_path / "plans.json"))


@pytest.fixture
def summaries(tmp_path):
    return SummaryStore(str(tmp_path / "summaries.json"))


@pytest.fixture
def sheets():
    return InMemorySheetsClient()


@pytest.fixture
def services(tmp_path, sheets):
    return ToolServices(
        notes=AgentNotesStore(str(tmp_path / "notes.json")),
        brain=AgentBrain(
            knowledge_index=KnowledgeIndex(str(tmp_path / "chunks.json")),
            path=str(tmp_path / "records.json"),
            requests_path=str(tmp_path / "requests.json"),
        ),
        sheets=sheets,
        analytics=AnalyticsTools(str(tmp_path / "analytics.log.jsonl")),
        search=SearchTools(serpapi_key="", serper_key=""),
        notifications=NotificationTools(account_sid="", auth_token="", from_number=""),
    )


@pytest.fixture
def platform_factory(data_dir, sheets):
    def _build(llm=None, notifications=None, rate_limit_per_minute=1000):
        return build_platform(
            data_dir=data_dir,
            llm=llm or ScriptedLLM(),
            sheets=sheets,
            notifications=notifications or NotificationTools(account_sid="", auth_token="", from_number=""),
            search=SearchTools(serpapi_key="", serper_key=""),
            rate_limit_per_minute=rate_limit_per_minute,
        )

    return _build
