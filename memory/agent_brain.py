from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from memory.json_store import JsonCollectionStore
from memory.knowledge_index import KnowledgeIndex, chunk_text
from models.schemas import AgentRecord, ModificationRequest, ModificationStatus, ModificationType
from settings import SETTINGS

logger = logging.getLogger(__name__)


class _RecordTable(JsonCollectionStore[AgentRecord]):
    collection = "records"
    model = AgentRecord
    id_field = "record_id"


class _RequestTable(JsonCollectionStore[ModificationRequest]):
    collection = "requests"
    model = ModificationRequest
    id_field = "request_id"


@dataclass
class ApprovalOutcome:
    applied: bool
    error: str | None = None


class AgentBrain:
    """Learned knowledge records plus the edit/delete requests that need staff approval.

    Records are chunked into the knowledge index so retrieval sees them. The agent
    can only create records directly; edits and deletes go through a pending
    request that an admin approves or rejects.
    """

    def __init__(
        self,
        knowledge_index: KnowledgeIndex | None = None,
        path: str | None = None,
        requests_path: str | None = None,
    ) -> None:
        self.knowledge_index = knowledge_index or KnowledgeIndex()
        self._records = _RecordTable(path or SETTINGS.records_store_path)
        self._requests = _RequestTable(requests_path or SETTINGS.modification_requests_path)

    async def create_record(self, tenant_id: str, title: str, content: str) -> AgentRecord:
        record = AgentRecord(tenant_id=tenant_id, title=title.strip(), content=content.strip())
        with self._records._lock:
            self._records._put(record)
            self._records._persist()
        await self.knowledge_index.index_document(tenant_id, record.record_id, chunk_text(record.content))
        return record.model_copy()

    async def list_records(self, tenant_id: str) -> List[AgentRecord]:
        with self._records._lock:
            rows = [r.model_copy() for r in self._records._values(tenant_id)]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    async def get_record(self, tenant_id: str, record_id: str) -> Optional[AgentRecord]:
        with self._records._lock:
            record = self._records._get(tenant_id, record_id)
            return record.model_copy() if record else None

    async def update_record(
        self,
        tenant_id: str,
        record_id: str,
        title: str | None = None,
        content: str | None = None,
    ) -> Optional[AgentRecord]:
        with self._records._lock:
            record = self._records._get(tenant_id, record_id)
            if record is None:
                return None
            update = {"updated_at": datetime.utcnow()}
            if title is not None:
                update["title"] = title.strip()
            if content is not None:
                update["content"] = content.strip()
            record = self._records._put(record.model_copy(update=update))
            self._records._persist()
        if content is not None:
            await self.knowledge_index.delete_source(tenant_id, record_id)
            await self.knowledge_index.index_document(tenant_id, record_id, chunk_text(record.content))
        return record.model_copy()

    async def delete_record(self, tenant_id: str, record_id: str) -> bool:
        with self._records._lock:
            if self._records._get(tenant_id, record_id) is None:
                return False
            self._records._remove_many([record_id])
            self._records._persist()
        await self.knowledge_index.delete_source(tenant_id, record_id)
        return True

    async def create_modification_request(
        self,
        tenant_id: str,
        request_type: ModificationType,
        record_id: str,
        title: str | None = None,
        content: str | None = None,
        reason: str | None = None,
    ) -> ModificationRequest:
        request = ModificationRequest(
            tenant_id=tenant_id,
            type=request_type,
            record_id=record_id,
            title=title,
            content=content,
            reason=reason,
        )
        with self._requests._lock:
            self._requests._put(request)
            self._requests._persist()
        return request.model_copy()

    async def list_modification_requests(
        self,
        tenant_id: str,
        status: ModificationStatus | None = ModificationStatus.PENDING,
    ) -> List[ModificationRequest]:
        with self._requests._lock:
            rows = [r.model_copy() for r in self._requests._values(tenant_id)]
        if status is not None:
            rows = [r for r in rows if r.status == status]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return rows

    def _close_request(self, request: ModificationRequest, status: ModificationStatus, reviewed_by: str) -> None:
        with self._requests._lock:
            self._requests._put(
                request.model_copy(update={"status": status, "reviewed_by": reviewed_by, "reviewed_at": datetime.utcnow()})
            )
            self._requests._persist()

    async def approve_modification_request(self, tenant_id: str, request_id: str, reviewed_by: str) -> ApprovalOutcome:
        with self._requests._lock:
            request = self._requests._get(tenant_id, request_id)
        if request is None:
            return ApprovalOutcome(applied=False, error="Request not found")
        if request.status != ModificationStatus.PENDING:
            return ApprovalOutcome(applied=False, error="Request already processed")

        if request.type == ModificationType.EDIT:
            updated = await self.update_record(tenant_id, request.record_id, title=request.title, content=request.content)
            if updated is None:
                self._close_request(request, ModificationStatus.REJECTED, reviewed_by)
                return ApprovalOutcome(applied=False, error="Record no longer exists")
        else:
            if not await self.delete_record(tenant_id, request.record_id):
                self._close_request(request, ModificationStatus.REJECTED, reviewed_by)
                return ApprovalOutcome(applied=False, error="Record not found or already deleted")

        self._close_request(request, ModificationStatus.APPROVED, reviewed_by)
        logger.info(
            "record_modification_applied",
            extra={"tenant_id": tenant_id, "request_id": request_id, "type": request.type.value},
        )
        return ApprovalOutcome(applied=True)

    async def reject_modification_request(self, tenant_id: str, request_id: str, reviewed_by: str) -> bool:
        with self._requests._lock:
            request = self._requests._get(tenant_id, request_id)
        if request is None or request.status != ModificationStatus.PENDING:
            return False
        self._close_request(request, ModificationStatus.REJECTED, reviewed_by)
        return True
