from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from api.middleware.auth import STAFF_ROLES, get_operator_id, require_role
from models.schemas import NoteStatus


router = APIRouter(prefix="/tenants/{tenant_id}/notes", tags=["notes"])


class NoteStatusUpdate(BaseModel):
    status: NoteStatus


@router.get("")
async def list_notes(
    tenant_id: str,
    request: Request,
    conversation_id: Optional[str] = None,
    status: Optional[NoteStatus] = None,
    patient_name: Optional[str] = None,
    limit: Optional[int] = None,
    _role: str = Depends(require_role(*STAFF_ROLES)),
):
    rows = await request.app.state.notes.list_notes(
        tenant_id, conversation_id=conversation_id, status=status, patient_name=patient_name, limit=limit
    )
    return {"notes": [n.model_dump(mode="json") for n in rows]}


@router.get("/{note_id}")
async def get_note(tenant_id: str, note_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    note = await request.app.state.notes.get_note(tenant_id, note_id)
    if note is None:
        raise HTTPException(status_code=404, detail="note_not_found")
    return note.model_dump(mode="json")


@router.patch("/{note_id}")
async def update_note_status(
    tenant_id: str,
    note_id: str,
    payload: NoteStatusUpdate,
    request: Request,
    _role: str = Depends(require_role(*STAFF_ROLES)),
):
    note = await request.app.state.notes.update_note_status(
        tenant_id, note_id, payload.status, reviewed_by=get_operator_id(request)
    )
    if note is None:
        raise HTTPException(status_code=404, detail="note_not_found")
    return note.model_dump(mode="json")


@router.delete("/{note_id}")
async def delete_note(tenant_id: str, note_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    if not await request.app.state.notes.delete_note(tenant_id, note_id):
        raise HTTPException(status_code=404, detail="note_not_found")
    return {"ok": True, "deleted": note_id}


@router.post("/consolidate")
async def consolidate_notes(tenant_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))):
    changed = await request.app.state.learning.consolidate_notes(tenant_id)
    return {"ok": True, "changes": changed}
