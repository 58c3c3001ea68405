from __future__ import annotations

import os
from dataclasses import dataclass

from agents.dispatcher import AgentDispatcher
from agents.handoff import BackgroundTaskRunner, ConversationStateMachine
from agents.learning_agent import LearningAgent
from agents.llm_runtime import LLMRuntime
from agents.orchestrator import ToolServices
from api.middleware.rate_limiting import SlidingWindowLimiter
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.agent_brain import AgentBrain
from memory.agent_notes import AgentNotesStore
from memory.context_builder import MemoryBuilder
from memory.conversation_store import ConversationStore
from memory.knowledge_index import KnowledgeIndex
from memory.plan_store import PlanStore
from memory.summary_store import SummaryStore
from tenants.billing import BillingOracle
from tenants.config_store import TenantConfigStore
from tools.analytics_tools import AnalyticsTools
from tools.notification_tools import NotificationTools
from tools.search_tools import SearchTools
from tools.sheet_tools import GoogleSheetsClient, SheetsClient


@dataclass
class PlatformServices:
    """Every long-lived collaborator one app instance shares across requests."""

    tenants: TenantConfigStore
    billing: BillingOracle
    conversations: ConversationStore
    plans: PlanStore
    summaries: SummaryStore
    tools: ToolServices
    dispatcher: AgentDispatcher
    learning: LearningAgent
    background: BackgroundTaskRunner
    state_machine: ConversationStateMachine
    rate_limiter: SlidingWindowLimiter
    diagnostics: DiagnosticLogger
    llm: LLMRuntime


def _path(data_dir: str | None, filename: str) -> str | None:
    return os.path.join(data_dir, filename) if data_dir else None


def build_platform(
    data_dir: str | None = None,
    llm: LLMRuntime | None = None,
    sheets: SheetsClient | None = None,
    notifications: NotificationTools | None = None,
    search: SearchTools | None = None,
    rate_limit_per_minute: int | None = None,
) -> PlatformServices:
    """Wire the stores, pipelines and state machine; ``data_dir`` relocates every JSON file."""
    llm = llm or LLMRuntime()
    diagnostics = DiagnosticLogger(_path(data_dir, "diagnostics.log.jsonl"))
    tenants = TenantConfigStore(_path(data_dir, "tenants.json"))
    conversations = ConversationStore(_path(data_dir, "conversations.json"), _path(data_dir, "messages.json"))
    notes = AgentNotesStore(_path(data_dir, "agent_notes.json"))
    plans = PlanStore(_path(data_dir, "execution_plans.json"))
    summaries = SummaryStore(_path(data_dir, "conversation_summaries.json"))
    brain = AgentBrain(
        knowledge_index=KnowledgeIndex(_path(data_dir, "rag_chunks.json")),
        path=_path(data_dir, "agent_records.json"),
        requests_path=_path(data_dir, "record_modification_requests.json"),
    )
    tools = ToolServices(
        notes=notes,
        brain=brain,
        sheets=sheets or GoogleSheetsClient(),
        analytics=AnalyticsTools(_path(data_dir, "analytics.log.jsonl")),
        search=search or SearchTools(),
        notifications=notifications or NotificationTools(),
    )
    dispatcher = AgentDispatcher(
        tenants=tenants,
        llm=llm,
        services=tools,
        plans=plans,
        memory=MemoryBuilder(notes=notes, plans=plans, summaries=summaries),
        diagnostics=diagnostics,
    )
    learning = LearningAgent(tenants=tenants, llm=llm, services=tools, diagnostics=diagnostics)
    background = BackgroundTaskRunner()
    state_machine = ConversationStateMachine(
        conversations=conversations,
        dispatcher=dispatcher,
        learning=learning,
        notifications=tools.notifications,
        background=background,
    )
    return PlatformServices(
        tenants=tenants,
        billing=BillingOracle(tenants),
        conversations=conversations,
        plans=plans,
        summaries=summaries,
        tools=tools,
        dispatcher=dispatcher,
        learning=learning,
        background=background,
        state_machine=state_machine,
        rate_limiter=SlidingWindowLimiter(limit=rate_limit_per_minute),
        diagnostics=diagnostics,
        llm=llm,
    )
