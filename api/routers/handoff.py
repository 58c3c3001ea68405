from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.middleware.auth import STAFF_ROLES, require_role
from models.schemas import ConversationStatus


router = APIRouter(prefix="/tenants/{tenant_id}/handoffs", tags=["handoff"])


@router.get("")
async def handoff_queue(tenant_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    """Conversations waiting for a human, oldest request first, plus the ones already joined."""
    store = request.app.state.conversations
    waiting = await store.list_conversations(tenant_id, status=ConversationStatus.HANDOFF_REQUESTED)
    waiting.sort(key=lambda c: c.handoff_requested_at or c.updated_at)
    joined = await store.list_conversations(tenant_id, status=ConversationStatus.HUMAN_JOINED)
    return {
        "waiting": [c.model_dump(mode="json") for c in waiting],
        "joined": [c.model_dump(mode="json") for c in joined],
    }
