from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from models.errors import ConversationNotFoundError
from tenants.billing import WIDGET_BILLING_ERROR

logger = logging.getLogger(__name__)


router = APIRouter(prefix="/tenants/{tenant_id}/webhooks", tags=["webhooks"])


@router.post("/whatsapp")
async def twilio_whatsapp_webhook(tenant_id: str, request: Request):
    data = await request.form()
    body = str(data.get("Body") or "").strip()
    from_number = str(data.get("From") or "").strip()
    if not from_number:
        raise HTTPException(status_code=400, detail="missing_from")
    if not body:
        return {"ok": True, "ignored": "empty_body"}
    if not await request.app.state.billing.is_active(tenant_id):
        logger.info("whatsapp_inbound_billing_inactive", extra={"tenant_id": tenant_id})
        return {"ok": False, "error": WIDGET_BILLING_ERROR}
    try:
        turn = await request.app.state.state_machine.handle_whatsapp_inbound(tenant_id, from_number, body)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    return {
        "ok": True,
        "conversation_id": turn.conversation_id,
        "reply": turn.assistant_content,
        "status": turn.status.value,
    }
