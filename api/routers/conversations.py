from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from api.middleware.auth import STAFF_ROLES, get_operator_id, require_role
from memory.context_builder import extract_key_topics
from models.errors import ConversationNotFoundError, InvalidTransitionError
from models.schemas import ChannelType
from tenants.billing import WIDGET_BILLING_ERROR
from tools.notification_tools import NotificationError


router = APIRouter(prefix="/tenants/{tenant_id}/conversations", tags=["conversations"])


class CreateConversationRequest(BaseModel):
    user_id: Optional[str] = None
    external_user_id: Optional[str] = None
    channel: ChannelType = ChannelType.WIDGET


class PostMessageRequest(BaseModel):
    content: str = ""
    image_urls: List[str] = Field(default_factory=list)


class HumanMessageRequest(BaseModel):
    content: str


class StoreSummaryRequest(BaseModel):
    summary: str
    key_topics: List[str] = Field(default_factory=list)


async def _require_active_billing(request: Request, tenant_id: str) -> None:
    status = await request.app.state.billing.status(tenant_id)
    if not status.is_active:
        raise HTTPException(
            status_code=402,
            detail={"error": WIDGET_BILLING_ERROR, "reason": status.expired_reason},
        )


async def _conversation_or_404(request: Request, tenant_id: str, conversation_id: str):
    try:
        return await request.app.state.conversations.get_conversation(tenant_id, conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")


@router.post("")
async def create_conversation(tenant_id: str, payload: CreateConversationRequest, request: Request):
    await _require_active_billing(request, tenant_id)
    conversation = await request.app.state.conversations.create_conversation(
        tenant_id,
        user_id=payload.user_id,
        external_user_id=payload.external_user_id,
        channel=payload.channel,
    )
    return conversation.model_dump(mode="json")


@router.get("")
async def list_conversations(tenant_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))):
    rows = await request.app.state.conversations.list_conversations(tenant_id)
    return {"conversations": [c.model_dump(mode="json") for c in rows]}


@router.get("/{conversation_id}")
async def get_conversation(tenant_id: str, conversation_id: str, request: Request):
    conversation = await _conversation_or_404(request, tenant_id, conversation_id)
    return conversation.model_dump(mode="json")


@router.post("/{conversation_id}/messages")
async def post_message(tenant_id: str, conversation_id: str, payload: PostMessageRequest, request: Request):
    if not payload.content.strip() and not payload.image_urls:
        raise HTTPException(status_code=400, detail="content_or_image_required")
    await _require_active_billing(request, tenant_id)
    try:
        turn = await request.app.state.state_machine.handle_inbound(
            tenant_id, conversation_id, payload.content, image_urls=payload.image_urls
        )
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    return turn.model_dump(mode="json")


@router.get("/{conversation_id}/messages")
async def list_messages(tenant_id: str, conversation_id: str, request: Request, limit: Optional[int] = None):
    try:
        rows = await request.app.state.conversations.list_messages(tenant_id, conversation_id, limit=limit)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    return {"messages": [m.model_dump(mode="json") for m in rows]}


@router.post("/{conversation_id}/join")
async def join_conversation(
    tenant_id: str, conversation_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))
):
    try:
        conversation = await request.app.state.state_machine.join(tenant_id, conversation_id, get_operator_id(request))
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    return conversation.model_dump(mode="json")


@router.post("/{conversation_id}/return-to-agent")
async def return_to_agent(
    tenant_id: str, conversation_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))
):
    try:
        conversation = await request.app.state.state_machine.return_to_agent(tenant_id, conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return conversation.model_dump(mode="json")


@router.post("/{conversation_id}/agent-message")
async def post_human_message(
    tenant_id: str,
    conversation_id: str,
    payload: HumanMessageRequest,
    request: Request,
    _role: str = Depends(require_role(*STAFF_ROLES)),
):
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="content_required")
    try:
        message = await request.app.state.state_machine.post_human_message(tenant_id, conversation_id, payload.content)
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="conversation_not_found")
    except NotificationError as exc:
        raise HTTPException(status_code=502, detail=f"whatsapp_send_failed: {exc}")
    return message.model_dump(mode="json")


@router.post("/{conversation_id}/summaries")
async def store_summary(
    tenant_id: str,
    conversation_id: str,
    payload: StoreSummaryRequest,
    request: Request,
    _role: str = Depends(require_role(*STAFF_ROLES)),
):
    conversation = await _conversation_or_404(request, tenant_id, conversation_id)
    topics = payload.key_topics
    if not topics:
        messages = await request.app.state.conversations.list_messages(tenant_id, conversation_id)
        topics = extract_key_topics([m.to_history() for m in messages])
    row = await request.app.state.summaries.store_summary(
        tenant_id, conversation_id, payload.summary, topics, user_id=conversation.user_id
    )
    return row.model_dump(mode="json")


@router.delete("/{conversation_id}")
async def delete_conversation(
    tenant_id: str, conversation_id: str, request: Request, _role: str = Depends(require_role(*STAFF_ROLES))
):
    if not await request.app.state.conversations.delete_conversation(tenant_id, conversation_id):
        raise HTTPException(status_code=404, detail="conversation_not_found")
    return {"ok": True, "deleted": conversation_id}
