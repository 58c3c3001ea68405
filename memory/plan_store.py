from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

from memory.json_store import JsonCollectionStore
from models.schemas import ACTIVE_PLAN_STATUSES, ExecutionPlan, PlanStatus
from settings import SETTINGS


class PlanStore(JsonCollectionStore[ExecutionPlan]):
    """Execution plans. Plans are never edited in place; a change appends a revision."""

    collection = "plans"
    model = ExecutionPlan
    id_field = "plan_id"

    def __init__(self, path: str | None = None) -> None:
        super().__init__(path or SETTINGS.plan_store_path)

    async def save_plan(self, plan: ExecutionPlan) -> ExecutionPlan:
        with self._lock:
            stored = self._put(plan.model_copy())
            self._persist()
            return stored.model_copy()

    async def get_plan(self, tenant_id: str, plan_id: str) -> Optional[ExecutionPlan]:
        with self._lock:
            plan = self._get(tenant_id, plan_id)
            return plan.model_copy() if plan else None

    async def supersede(self, previous: ExecutionPlan, revised: ExecutionPlan) -> ExecutionPlan:
        now = datetime.utcnow()
        new_plan = revised.model_copy(
            update={
                "plan_id": uuid.uuid4().hex,
                "tenant_id": previous.tenant_id,
                "conversation_id": previous.conversation_id,
                "revision": previous.revision + 1,
                "supersedes": previous.plan_id,
                "created_at": now,
                "updated_at": now,
            }
        )
        with self._lock:
            old = self._get(previous.tenant_id, previous.plan_id)
            if old is not None:
                self._put(old.model_copy(update={"status": PlanStatus.SUPERSEDED, "updated_at": now}))
            self._put(new_plan)
            self._persist()
        return new_plan.model_copy()

    async def latest_active_plan(self, tenant_id: str, conversation_id: str) -> Optional[ExecutionPlan]:
        with self._lock:
            rows = [
                p
                for p in self._values(tenant_id)
                if p.conversation_id == conversation_id and p.status in ACTIVE_PLAN_STATUSES
            ]
        if not rows:
            return None
        rows.sort(key=lambda p: (p.created_at, p.revision), reverse=True)
        return rows[0].model_copy()

    async def list_plans(self, tenant_id: str, conversation_id: str) -> List[ExecutionPlan]:
        with self._lock:
            rows = [p.model_copy() for p in self._values(tenant_id) if p.conversation_id == conversation_id]
        rows.sort(key=lambda p: (p.created_at, p.revision))
        return rows
