from __future__ import annotations

import asyncio

from agents.base import AgentPipeline
from agents.dispatcher import AgentDispatcher, normalize_version
from models.schemas import AgentResult, AgentVersion, HistoryMessage, MessageRole


class EchoPipeline(AgentPipeline):
    async def run(self, tenant_id, history, user_id=None, conversation_id=None):
        return AgentResult(text=f"{self.name}:{tenant_id}")


class BrokenTenantStore:
    async def get_agent_version(self, tenant_id):
        raise OSError("tenant store offline")


def _dispatcher(tenants, diagnostics, default_version=""):
    pipelines = {
        AgentVersion.V1: EchoPipeline(name="v1", diagnostics=diagnostics),
        AgentVersion.V2: EchoPipeline(name="v2", diagnostics=diagnostics),
    }
    return AgentDispatcher(tenants=tenants, pipelines=pipelines, default_version=default_version, diagnostics=diagnostics)


def test_normalize_version_accepts_known_values_only():
    assert normalize_version(" V2 ") == AgentVersion.V2
    assert normalize_version("v1") == AgentVersion.V1
    assert normalize_version("v3") is None
    assert normalize_version(None) is None
    assert normalize_version(2) is None


def test_tenant_version_wins_over_environment(tenants, diagnostics):
    async def _run():
        await tenants.save_config("clinic-a", {"agent_version": "v2"})
        dispatcher = _dispatcher(tenants, diagnostics, default_version="v1")
        assert await dispatcher.select_pipeline("clinic-a") == AgentVersion.V2

    asyncio.run(_run())


def test_environment_default_used_when_tenant_has_none(tenants, diagnostics):
    async def _run():
        dispatcher = _dispatcher(tenants, diagnostics, default_version="v2")
        assert await dispatcher.select_pipeline("clinic-b") == AgentVersion.V2

    asyncio.run(_run())


def test_unknown_values_fall_back_to_v1(tenants, diagnostics):
    async def _run():
        await tenants.save_config("clinic-c", {"agent_version": "v9"})
        dispatcher = _dispatcher(tenants, diagnostics, default_version="beta")
        assert await dispatcher.select_pipeline("clinic-c") == AgentVersion.V1

    asyncio.run(_run())


def test_selection_never_raises_when_config_lookup_fails(diagnostics):
    async def _run():
        dispatcher = _dispatcher(BrokenTenantStore(), diagnostics, default_version="")
        assert await dispatcher.select_pipeline("clinic-d") == AgentVersion.V1

    asyncio.run(_run())


def test_run_configured_agent_delegates_to_selected_pipeline(tenants, diagnostics):
    async def _run():
        await tenants.save_config("clinic-e", {"agent_version": "v2"})
        dispatcher = _dispatcher(tenants, diagnostics)
        history = [HistoryMessage(role=MessageRole.USER, content="hello")]
        result = await dispatcher.run_configured_agent("clinic-e", history, conversation_id="c1")
        assert result.text == "v2:clinic-e"
        assert result.request_handoff is False

    asyncio.run(_run())
