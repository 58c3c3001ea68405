from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, List, Set

from agents.dispatcher import AgentDispatcher
from agents.escalation import REPEAT_HANDOFF_ACK, wants_human
from agents.learning_agent import LearningAgent
from memory.conversation_store import ConversationStore
from models.errors import InvalidTransitionError
from models.schemas import (
    ChannelType,
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
    TurnResult,
)
from tools.notification_tools import NotificationError, NotificationTools

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """Owns detached tasks so none of them fail unobserved."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("background_task_cancelled", extra={"task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                extra={"task": task.get_name(), "error": repr(exc)},
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def scoped_user_id(conversation: Conversation) -> str | None:
    if conversation.user_id:
        return conversation.user_id
    if conversation.external_user_id:
        return f"{conversation.channel.value}:{conversation.external_user_id}"
    return None


class ConversationStateMachine:
    """Inbound gate and status transitions for one conversation.

    open -> handoff_requested -> human_joined -> open. While a human has
    joined, user messages are stored but never answered automatically.
    """

    def __init__(
        self,
        conversations: ConversationStore | None = None,
        dispatcher: AgentDispatcher | None = None,
        learning: LearningAgent | None = None,
        notifications: NotificationTools | None = None,
        background: BackgroundTaskRunner | None = None,
    ) -> None:
        self.conversations = conversations or ConversationStore()
        self.dispatcher = dispatcher or AgentDispatcher()
        self.learning = learning or LearningAgent()
        self.notifications = notifications or NotificationTools()
        self.background = background or BackgroundTaskRunner()

    @staticmethod
    def wants_human(text: str) -> bool:
        return wants_human(text)

    async def handle_inbound(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        image_urls: List[str] | None = None,
    ) -> TurnResult:
        conversation = await self.conversations.get_conversation(tenant_id, conversation_id)
        user_message = await self.conversations.append_message(
            tenant_id, conversation_id, MessageRole.USER, content, image_urls=image_urls
        )
        status = conversation.status

        if status == ConversationStatus.HUMAN_JOINED:
            return TurnResult(conversation_id=conversation_id, user_message_id=user_message.message_id, status=status)

        asks_for_human = wants_human(content)
        if status == ConversationStatus.HANDOFF_REQUESTED and asks_for_human:
            return await self._acknowledge(tenant_id, conversation_id, user_message)

        if status == ConversationStatus.OPEN and asks_for_human:
            reserved = await self.conversations.compare_and_set_status(
                tenant_id, conversation_id, ConversationStatus.OPEN, ConversationStatus.HANDOFF_REQUESTED
            )
            if not reserved:
                logger.info("handoff_reservation_lost", extra={"tenant_id": tenant_id, "conversation_id": conversation_id})
                return await self._acknowledge(tenant_id, conversation_id, user_message)
            logger.info("handoff_reserved", extra={"tenant_id": tenant_id, "conversation_id": conversation_id})

        history = [m.to_history() for m in await self.conversations.list_messages(tenant_id, conversation_id)]
        result = await self.dispatcher.run_configured_agent(
            tenant_id, history, user_id=scoped_user_id(conversation), conversation_id=conversation_id
        )
        reply = await self.conversations.append_message(tenant_id, conversation_id, MessageRole.ASSISTANT, result.text)

        current = await self.conversations.get_conversation(tenant_id, conversation_id)
        if result.request_handoff and current.status == ConversationStatus.OPEN:
            current = await self.conversations.set_status(tenant_id, conversation_id, ConversationStatus.HANDOFF_REQUESTED)
            logger.info("handoff_requested_by_agent", extra={"tenant_id": tenant_id, "conversation_id": conversation_id})
        return TurnResult(
            conversation_id=conversation_id,
            user_message_id=user_message.message_id,
            assistant_message_id=reply.message_id,
            assistant_content=result.text,
            request_handoff=result.request_handoff,
            status=current.status,
        )

    async def _acknowledge(self, tenant_id: str, conversation_id: str, user_message: Message) -> TurnResult:
        ack = await self.conversations.append_message(tenant_id, conversation_id, MessageRole.ASSISTANT, REPEAT_HANDOFF_ACK)
        return TurnResult(
            conversation_id=conversation_id,
            user_message_id=user_message.message_id,
            assistant_message_id=ack.message_id,
            assistant_content=REPEAT_HANDOFF_ACK,
            request_handoff=False,
            status=ConversationStatus.HANDOFF_REQUESTED,
        )

    async def join(self, tenant_id: str, conversation_id: str, operator_id: str) -> Conversation:
        conversation = await self.conversations.set_status(
            tenant_id, conversation_id, ConversationStatus.HUMAN_JOINED, joined_by=operator_id
        )
        logger.info("human_joined", extra={"tenant_id": tenant_id, "conversation_id": conversation_id, "operator_id": operator_id})
        return conversation

    async def return_to_agent(self, tenant_id: str, conversation_id: str) -> Conversation:
        """Hand the conversation back to the agent and learn from the human exchange in the background."""
        conversation = await self.conversations.get_conversation(tenant_id, conversation_id)
        if conversation.status == ConversationStatus.OPEN:
            raise InvalidTransitionError(f"conversation {conversation_id} is already open")
        conversation = await self.conversations.set_status(tenant_id, conversation_id, ConversationStatus.OPEN)
        history = [m.to_history() for m in await self.conversations.list_messages(tenant_id, conversation_id)]
        self.background.schedule(
            self.learning.extract_learning(
                tenant_id, history, user_id=scoped_user_id(conversation), conversation_id=conversation_id
            ),
            name=f"learning:{tenant_id}:{conversation_id}",
        )
        return conversation

    async def post_human_message(self, tenant_id: str, conversation_id: str, content: str) -> Message:
        """Store a care team message, sending it over WhatsApp first for WhatsApp conversations.

        Raises :class:`NotificationError` when the WhatsApp send fails; nothing is stored then.
        """
        conversation = await self.conversations.get_conversation(tenant_id, conversation_id)
        if conversation.channel == ChannelType.WHATSAPP:
            if not conversation.external_user_id:
                raise NotificationError("WhatsApp conversation is missing externalUserId")
            config = await self.dispatcher.tenants.get_config(tenant_id)
            await self.notifications.send_whatsapp(
                conversation.external_user_id, content, from_number=config.whatsapp_from_number
            )
        return await self.conversations.append_message(tenant_id, conversation_id, MessageRole.HUMAN_AGENT, content)

    async def handle_whatsapp_inbound(self, tenant_id: str, from_number: str, body: str) -> TurnResult:
        """Route an inbound WhatsApp message to the sender's latest conversation and reply on WhatsApp."""
        external_id = from_number.replace("whatsapp:", "").strip()
        conversation = await self.conversations.find_latest_for_external_user(tenant_id, external_id, ChannelType.WHATSAPP)
        if conversation is None:
            conversation = await self.conversations.create_conversation(
                tenant_id, external_user_id=external_id, channel=ChannelType.WHATSAPP
            )
        turn = await self.handle_inbound(tenant_id, conversation.conversation_id, body)
        if turn.assistant_content:
            config = await self.dispatcher.tenants.get_config(tenant_id)
            try:
                await self.notifications.send_whatsapp(external_id, turn.assistant_content, from_number=config.whatsapp_from_number)
            except NotificationError as exc:
                logger.error(
                    "whatsapp_reply_failed",
                    extra={"tenant_id": tenant_id, "conversation_id": conversation.conversation_id, "error": str(exc)},
                )
        return turn
