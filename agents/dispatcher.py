from __future__ import annotations

import logging
from typing import Dict, List, Optional

from agents.base import AgentPipeline, BaseAgent
from agents.layered_agent import LayeredAgentPipeline
from agents.llm_runtime import LLMRuntime
from agents.orchestrator import ToolServices
from agents.simple_agent import SimpleAgentPipeline
from diagnostics.diagnostic_logger import DiagnosticLogger
from memory.context_builder import MemoryBuilder
from memory.plan_store import PlanStore
from models.schemas import AgentResult, AgentVersion, HistoryMessage
from settings import SETTINGS
from tenants.config_store import TenantConfigStore

logger = logging.getLogger(__name__)


def normalize_version(value: object) -> Optional[AgentVersion]:
    if not isinstance(value, str):
        return None
    try:
        return AgentVersion(value.strip().lower())
    except ValueError:
        return None


def build_pipelines(
    tenants: TenantConfigStore,
    llm: LLMRuntime,
    services: ToolServices,
    plans: PlanStore | None = None,
    memory: MemoryBuilder | None = None,
    diagnostics: DiagnosticLogger | None = None,
) -> Dict[AgentVersion, AgentPipeline]:
    return {
        AgentVersion.V1: SimpleAgentPipeline(tenants=tenants, llm=llm, services=services, diagnostics=diagnostics),
        AgentVersion.V2: LayeredAgentPipeline(
            tenants=tenants, llm=llm, services=services, memory=memory, plans=plans, diagnostics=diagnostics
        ),
    }


class AgentDispatcher(BaseAgent):
    """Picks the pipeline version for a tenant and runs it.

    Resolution order is the tenant's ``agent_version``, then the
    ``AGENT_VERSION`` environment default, then v1. Selection never raises.
    """

    def __init__(
        self,
        tenants: TenantConfigStore | None = None,
        pipelines: Dict[AgentVersion, AgentPipeline] | None = None,
        default_version: str | None = None,
        llm: LLMRuntime | None = None,
        services: ToolServices | None = None,
        plans: PlanStore | None = None,
        memory: MemoryBuilder | None = None,
        diagnostics: DiagnosticLogger | None = None,
    ) -> None:
        super().__init__(name="agent_dispatcher", diagnostics=diagnostics)
        self.tenants = tenants or TenantConfigStore()
        self.default_version = SETTINGS.agent_version if default_version is None else default_version
        self.pipelines = pipelines or build_pipelines(
            self.tenants,
            llm or LLMRuntime(),
            services or ToolServices(),
            plans=plans,
            memory=memory,
            diagnostics=self.diagnostics,
        )

    def versions(self) -> List[AgentVersion]:
        return list(self.pipelines)

    async def select_pipeline(self, tenant_id: str) -> AgentVersion:
        try:
            configured = normalize_version(await self.tenants.get_agent_version(tenant_id))
        except Exception as exc:
            logger.warning("agent_version_lookup_failed", extra={"tenant_id": tenant_id, "error": repr(exc)})
            configured = None
        if configured is not None and configured in self.pipelines:
            return configured
        env_version = normalize_version(self.default_version)
        if env_version is not None and env_version in self.pipelines:
            return env_version
        return AgentVersion.V1

    async def run_configured_agent(
        self,
        tenant_id: str,
        history: List[HistoryMessage],
        user_id: str | None = None,
        conversation_id: str | None = None,
    ) -> AgentResult:
        version = await self.select_pipeline(tenant_id)
        logger.info(
            "agent_pipeline_selected",
            extra={"tenant_id": tenant_id, "conversation_id": conversation_id, "version": version.value},
        )
        self.build_decision_log(
            tenant_id, "pipeline_selected", conversation_id=conversation_id, metadata={"version": version.value}
        )
        return await self.pipelines[version].run(tenant_id, history, user_id=user_id, conversation_id=conversation_id)
