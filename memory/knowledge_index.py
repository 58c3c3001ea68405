from __future__ import annotations

import logging
import re
from typing import List

from memory.json_store import JsonCollectionStore
from models.schemas import RagChunk
from settings import SETTINGS

logger = logging.getLogger(__name__)

STOP_WORDS = set(
    "a an the is are was were be been being have has had do does did will would could should may might must can "
    "what which who when where why how i me my we our you your it its they them their".split()
)


def tokenize(text: str) -> List[str]:
    cleaned = re.sub(r"[^\w\s'-]", " ", text.lower())
    return [w for w in cleaned.split() if len(w) > 1 and w not in STOP_WORDS]


def chunk_text(text: str, size: int | None = None) -> List[str]:
    size = size or SETTINGS.record_chunk_size
    chunks = [text[i : i + size] for i in range(0, len(text), size)]
    return chunks or [text or " "]


class KnowledgeIndex(JsonCollectionStore[RagChunk]):
    """Tenant-scoped keyword index over knowledge chunks (documents and agent brain records)."""

    collection = "chunks"
    model = RagChunk
    id_field = "chunk_id"

    def __init__(self, path: str | None = None) -> None:
        super().__init__(path or SETTINGS.knowledge_store_path)

    async def index_document(self, tenant_id: str, source_id: str, chunks: List[str]) -> int:
        count = 0
        with self._lock:
            for text in chunks:
                if not text.strip():
                    continue
                self._put(RagChunk(tenant_id=tenant_id, source_id=source_id, text=text))
                count += 1
            self._persist()
        return count

    async def delete_source(self, tenant_id: str, source_id: str) -> int:
        with self._lock:
            ids = [c.chunk_id for c in self._values(tenant_id) if c.source_id == source_id]
            removed = self._remove_many(ids)
            self._persist()
        return removed

    async def query(self, tenant_id: str, query: str, limit: int | None = None) -> List[str]:
        """Best keyword matches first; when fewer match, remaining chunks pad the result."""
        limit = limit or SETTINGS.rag_max_results
        with self._lock:
            chunks = [c.text for c in self._values(tenant_id) if c.text.strip()]
        if not chunks:
            logger.info("rag_no_chunks", extra={"tenant_id": tenant_id})
            return []
        terms = tokenize(query)
        if not terms:
            return chunks[:limit]
        scored = [(sum(1 for t in terms if t in text.lower()), text) for text in chunks]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [text for _, text in scored[:limit]]

    async def get_rag_context(self, tenant_id: str, query: str, limit: int | None = None) -> str:
        return "\n\n".join(await self.query(tenant_id, query, limit))
