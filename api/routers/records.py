from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from api.middleware.auth import STAFF_ROLES, get_operator_id, require_role
from models.schemas import ModificationStatus


router = APIRouter(prefix="/tenants/{tenant_id}/records", tags=["records"])


class RecordPayload(BaseModel):
    title: str
    content: str


class RecordUpdate(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None


@router.get("")
async def list_records(tenant_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    rows = await request.app.state.brain.list_records(tenant_id)
    return {"records": [r.model_dump(mode="json") for r in rows]}


@router.post("")
async def create_record(
    tenant_id: str, payload: RecordPayload, request: Request, _role: str = Depends(require_role("ADMIN"))
):
    if not payload.title.strip() or not payload.content.strip():
        raise HTTPException(status_code=400, detail="title_and_content_required")
    record = await request.app.state.brain.create_record(tenant_id, payload.title, payload.content)
    return record.model_dump(mode="json")


@router.get("/modification-requests")
async def list_modification_requests(
    tenant_id: str,
    request: Request,
    status: Optional[ModificationStatus] = ModificationStatus.PENDING,
    _role: str = Depends(require_role(*STAFF_ROLES)),
):
    rows = await request.app.state.brain.list_modification_requests(tenant_id, status=status)
    return {"requests": [r.model_dump(mode="json") for r in rows]}


@router.post("/modification-requests/{request_id}/approve")
async def approve_modification_request(
    tenant_id: str, request_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))
):
    outcome = await request.app.state.brain.approve_modification_request(tenant_id, request_id, get_operator_id(request))
    if not outcome.applied:
        code = 404 if outcome.error == "Request not found" else 409
        raise HTTPException(status_code=code, detail=outcome.error)
    return {"ok": True, "request_id": request_id}


@router.post("/modification-requests/{request_id}/reject")
async def reject_modification_request(
    tenant_id: str, request_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))
):
    if not await request.app.state.brain.reject_modification_request(tenant_id, request_id, get_operator_id(request)):
        raise HTTPException(status_code=404, detail="pending_request_not_found")
    return {"ok": True, "request_id": request_id}


@router.post("/consolidate")
async def consolidate_records(tenant_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))):
    proposed = await request.app.state.learning.consolidate_records(tenant_id)
    return {"ok": True, "requests_created": proposed}


@router.get("/{record_id}")
async def get_record(tenant_id: str, record_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    record = await request.app.state.brain.get_record(tenant_id, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="record_not_found")
    return record.model_dump(mode="json")


@router.put("/{record_id}")
async def update_record(
    tenant_id: str, record_id: str, payload: RecordUpdate, request: Request, _role: str = Depends(require_role("ADMIN"))
):
    record = await request.app.state.brain.update_record(tenant_id, record_id, title=payload.title, content=payload.content)
    if record is None:
        raise HTTPException(status_code=404, detail="record_not_found")
    return record.model_dump(mode="json")


@router.delete("/{record_id}")
async def delete_record(tenant_id: str, record_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))):
    if not await request.app.state.brain.delete_record(tenant_id, record_id):
        raise HTTPException(status_code=404, detail="record_not_found")
    return {"ok": True, "deleted": record_id}
