from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from agents.dispatcher import normalize_version
from api.middleware.auth import STAFF_ROLES, require_role
from models.schemas import GoogleSheetEntry


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["agent-config"])


class AgentConfigUpdate(BaseModel):
    agent_name: Optional[str] = None
    system_prompt: Optional[str] = None
    thinking_instructions: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    rag_enabled: Optional[bool] = None
    web_search_enabled: Optional[bool] = None
    google_sheets: Optional[List[GoogleSheetEntry]] = None
    agent_version: Optional[str] = None
    learning_only_prompt: Optional[str] = None
    consolidation_prompt: Optional[str] = None
    whatsapp_from_number: Optional[str] = None


@router.get("/agent-config")
async def get_agent_config(tenant_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    config = await request.app.state.tenants.get_config(tenant_id)
    version = await request.app.state.dispatcher.select_pipeline(tenant_id)
    return {**config.model_dump(mode="json"), "effective_agent_version": version.value}


@router.put("/agent-config")
async def put_agent_config(
    tenant_id: str, payload: AgentConfigUpdate, request: Request, _role: str = Depends(require_role("ADMIN"))
):
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("agent_version") is not None and normalize_version(updates["agent_version"]) is None:
        raise HTTPException(status_code=400, detail="unknown_agent_version")
    if updates.get("temperature") is not None and not 0.0 <= updates["temperature"] <= 2.0:
        raise HTTPException(status_code=400, detail="temperature_out_of_range")
    config = await request.app.state.tenants.save_config(tenant_id, updates)
    await request.app.state.analytics.record_activity(tenant_id, "integrations")
    return config.model_dump(mode="json")


@router.get("/billing")
async def billing_status(tenant_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    status = await request.app.state.billing.status(tenant_id)
    return status.model_dump(mode="json")


@router.get("/analytics")
async def analytics_dashboard(tenant_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))):
    return await request.app.state.analytics.dashboard_metrics(tenant_id)
