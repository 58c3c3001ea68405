from __future__ import annotations

from fastapi import FastAPI

from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limiting import RateLimitMiddleware
from api.routers import agent_config, conversations, handoff, notes, records, webhooks
from api.service_container import PlatformServices, build_platform


def create_app(platform: PlatformServices | None = None) -> FastAPI:
    platform = platform or build_platform()
    app = FastAPI(title="CareMax Agent Platform", version="0.1.0")
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware, limiter=platform.rate_limiter)

    app.state.platform = platform
    app.state.tenants = platform.tenants
    app.state.billing = platform.billing
    app.state.conversations = platform.conversations
    app.state.plans = platform.plans
    app.state.summaries = platform.summaries
    app.state.services = platform.tools
    app.state.notes = platform.tools.notes
    app.state.brain = platform.tools.brain
    app.state.analytics = platform.tools.analytics
    app.state.dispatcher = platform.dispatcher
    app.state.learning = platform.learning
    app.state.background = platform.background
    app.state.state_machine = platform.state_machine
    app.state.rate_limiter = platform.rate_limiter

    api_prefix = "/api/v1"
    app.include_router(conversations.router, prefix=api_prefix)
    app.include_router(handoff.router, prefix=api_prefix)
    app.include_router(notes.router, prefix=api_prefix)
    app.include_router(records.router, prefix=api_prefix)
    app.include_router(agent_config.router, prefix=api_prefix)
    app.include_router(webhooks.router, prefix=api_prefix)

    @app.get("/health")
    async def health():
        llm = platform.llm
        return {
            "ok": True,
            "service": "caremax-agent-platform",
            "llm_provider": llm.provider,
            "llm_model": llm.model,
            "llm_runtime_available": llm.available(),
            "agent_versions": [v.value for v in platform.dispatcher.versions()],
            "background_tasks": platform.background.pending,
        }

    return app


app = create_app()
