from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from memory.json_store import JsonCollectionStore
from models.errors import ConversationNotFoundError
from models.schemas import ChannelType, Conversation, ConversationStatus, Message, MessageRole
from settings import SETTINGS


class _ConversationTable(JsonCollectionStore[Conversation]):
    collection = "conversations"
    model = Conversation
    id_field = "conversation_id"


class _MessageTable(JsonCollectionStore[Message]):
    collection = "messages"
    model = Message
    id_field = "message_id"


class ConversationStore:
    """Conversations and their append-only message log, scoped by tenant."""

    def __init__(self, path: str | None = None, messages_path: str | None = None) -> None:
        self._conversations = _ConversationTable(path or SETTINGS.conversation_store_path)
        self._messages = _MessageTable(messages_path or SETTINGS.message_store_path)

    async def create_conversation(
        self,
        tenant_id: str,
        user_id: str | None = None,
        external_user_id: str | None = None,
        channel: ChannelType = ChannelType.WIDGET,
    ) -> Conversation:
        conversation = Conversation(
            tenant_id=tenant_id,
            user_id=user_id,
            external_user_id=external_user_id,
            channel=channel,
        )
        with self._conversations._lock:
            self._conversations._put(conversation)
            self._conversations._persist()
        return conversation.model_copy()

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> Conversation:
        with self._conversations._lock:
            conversation = self._conversations._get(tenant_id, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            return conversation.model_copy()

    async def find_latest_for_external_user(
        self,
        tenant_id: str,
        external_user_id: str,
        channel: ChannelType,
    ) -> Optional[Conversation]:
        with self._conversations._lock:
            matches = [
                c
                for c in self._conversations._values(tenant_id)
                if c.external_user_id == external_user_id and c.channel == channel
            ]
        if not matches:
            return None
        matches.sort(key=lambda c: c.created_at, reverse=True)
        return matches[0].model_copy()

    async def list_conversations(self, tenant_id: str, status: ConversationStatus | None = None) -> List[Conversation]:
        with self._conversations._lock:
            rows = [c.model_copy() for c in self._conversations._values(tenant_id)]
        if status is not None:
            rows = [c for c in rows if c.status == status]
        rows.sort(key=lambda c: c.updated_at, reverse=True)
        return rows

    async def set_status(
        self,
        tenant_id: str,
        conversation_id: str,
        status: ConversationStatus,
        joined_by: str | None = None,
    ) -> Conversation:
        with self._conversations._lock:
            conversation = self._conversations._get(tenant_id, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            updated = self._apply_status(conversation, status, joined_by)
            self._conversations._persist()
            return updated.model_copy()

    async def compare_and_set_status(
        self,
        tenant_id: str,
        conversation_id: str,
        expected: ConversationStatus,
        new: ConversationStatus,
    ) -> bool:
        """Atomically move ``expected -> new``; False when another writer got there first."""
        with self._conversations._lock:
            conversation = self._conversations._get(tenant_id, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if conversation.status != expected:
                return False
            self._apply_status(conversation, new, None)
            self._conversations._persist()
            return True

    def _apply_status(self, conversation: Conversation, status: ConversationStatus, joined_by: str | None) -> Conversation:
        now = datetime.utcnow()
        update = {"status": status, "updated_at": now}
        if status == ConversationStatus.HANDOFF_REQUESTED:
            update["handoff_requested_at"] = now
        elif status == ConversationStatus.HUMAN_JOINED:
            update["joined_by"] = joined_by
        elif status == ConversationStatus.OPEN:
            update["joined_by"] = None
            update["handoff_requested_at"] = None
        updated = conversation.model_copy(update=update)
        return self._conversations._put(updated)

    async def append_message(
        self,
        tenant_id: str,
        conversation_id: str,
        role: MessageRole,
        content: str,
        image_urls: List[str] | None = None,
    ) -> Message:
        await self.get_conversation(tenant_id, conversation_id)
        with self._messages._lock:
            seq = sum(1 for m in self._messages._items.values() if m.conversation_id == conversation_id) + 1
            message = Message(
                conversation_id=conversation_id,
                tenant_id=tenant_id,
                role=role,
                content=content,
                image_urls=list(image_urls or []),
                seq=seq,
            )
            self._messages._put(message)
            self._messages._persist()
        with self._conversations._lock:
            conversation = self._conversations._get(tenant_id, conversation_id)
            if conversation is not None:
                self._conversations._put(conversation.model_copy(update={"updated_at": message.created_at}))
                self._conversations._persist()
        return message.model_copy()

    async def list_messages(self, tenant_id: str, conversation_id: str, limit: int | None = None) -> List[Message]:
        await self.get_conversation(tenant_id, conversation_id)
        with self._messages._lock:
            rows = [
                m.model_copy()
                for m in self._messages._values(tenant_id)
                if m.conversation_id == conversation_id
            ]
        rows.sort(key=lambda m: (m.created_at, m.seq))
        if limit is not None:
            rows = rows[-limit:]
        return rows

    async def delete_conversation(self, tenant_id: str, conversation_id: str) -> bool:
        with self._conversations._lock:
            if self._conversations._get(tenant_id, conversation_id) is None:
                return False
            self._conversations._remove_many([conversation_id])
            self._conversations._persist()
        with self._messages._lock:
            ids = [m.message_id for m in self._messages._values(tenant_id) if m.conversation_id == conversation_id]
            self._messages._remove_many(ids)
            self._messages._persist()
        return True
