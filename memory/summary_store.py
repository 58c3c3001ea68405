from __future__ import annotations

from typing import List

from memory.json_store import JsonCollectionStore
from models.schemas import ConversationSummary, SummaryScope
from settings import SETTINGS


class SummaryStore(JsonCollectionStore[ConversationSummary]):
    """Long-term memory: short summaries of finished conversations."""

    collection = "summaries"
    model = ConversationSummary
    id_field = "summary_id"

    def __init__(self, path: str | None = None) -> None:
        super().__init__(path or SETTINGS.summary_store_path)

    async def store_summary(
        self,
        tenant_id: str,
        conversation_id: str,
        summary: str,
        key_topics: List[str],
        user_id: str | None = None,
    ) -> ConversationSummary:
        row = ConversationSummary(
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            summary=summary,
            key_topics=list(key_topics),
            scope=SummaryScope.USER if user_id else SummaryScope.SHARED,
            user_id=user_id,
        )
        with self._lock:
            self._put(row)
            self._persist()
        return row.model_copy()

    async def recent_summaries(self, tenant_id: str, limit: int) -> List[ConversationSummary]:
        with self._lock:
            rows = [s.model_copy() for s in self._values(tenant_id)]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return rows[:limit]

    async def relevant_summaries(
        self,
        tenant_id: str,
        current_topics: List[str],
        limit: int = 3,
        user_id: str | None = None,
        include_shared: bool = True,
    ) -> List[ConversationSummary]:
        """Topical matches first, newest first; the newest non-matching summaries fill the rest.

        A ``user``-scoped summary is only ever visible to the user it belongs to.
        """
        current_user = (user_id or "").strip() or None
        wanted = [t.lower() for t in current_topics if t.strip()]
        matching: List[ConversationSummary] = []
        others: List[ConversationSummary] = []
        for row in await self.recent_summaries(tenant_id, limit * 2):
            if row.scope == SummaryScope.USER:
                if current_user is None or row.user_id != current_user:
                    continue
            elif not include_shared:
                continue
            if any(topic in summary_topic.lower() for topic in wanted for summary_topic in row.key_topics):
                matching.append(row)
            else:
                others.append(row)
        return (matching + others)[:limit]
