from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from memory.json_store import JsonCollectionStore
from models.schemas import AgentNote, NoteCategory, NoteStatus
from settings import SETTINGS

logger = logging.getLogger(__name__)


def significant_words(text: str) -> set[str]:
    return {w for w in text.strip().lower().split() if len(w) > 2}


def content_similarity(a: str, b: str) -> float:
    words_a = significant_words(a)
    words_b = significant_words(b)
    denominator = max(len(words_a), len(words_b))
    if denominator == 0:
        return 1.0 if a.strip().lower() == b.strip().lower() else 0.0
    return len(words_a & words_b) / denominator


class AgentNotesStore(JsonCollectionStore[AgentNote]):
    """Agent notebook: short observations the assistant leaves for staff review."""

    collection = "notes"
    model = AgentNote
    id_field = "note_id"

    def __init__(
        self,
        path: str | None = None,
        similarity_threshold: float | None = None,
        dedupe_window_seconds: int | None = None,
    ) -> None:
        super().__init__(path or SETTINGS.notes_store_path)
        self.similarity_threshold = similarity_threshold if similarity_threshold is not None else SETTINGS.note_dedupe_similarity
        self.dedupe_window_seconds = dedupe_window_seconds if dedupe_window_seconds is not None else SETTINGS.note_dedupe_window_seconds

    def _find_similar(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        patient_name: str | None,
        category: NoteCategory | None,
    ) -> Optional[AgentNote]:
        cutoff = datetime.utcnow() - timedelta(seconds=self.dedupe_window_seconds)
        wanted_patient = (patient_name or "").strip().lower()
        for note in self._values(tenant_id):
            if note.conversation_id != conversation_id or note.created_at < cutoff:
                continue
            if category is not None and note.category != category:
                continue
            existing_patient = (note.patient_name or "").strip().lower()
            if wanted_patient and existing_patient and wanted_patient != existing_patient:
                continue
            if content_similarity(content, note.content) >= self.similarity_threshold:
                return note
        return None

    async def create_note(
        self,
        tenant_id: str,
        conversation_id: str,
        content: str,
        user_id: str | None = None,
        patient_name: str | None = None,
        category: NoteCategory | None = None,
    ) -> AgentNote:
        """Create a note, or return the recent near-duplicate it would repeat."""
        with self._lock:
            existing = self._find_similar(tenant_id, conversation_id, content, patient_name, category)
            if existing is not None:
                logger.info("agent_note_duplicate_skipped", extra={"tenant_id": tenant_id, "note_id": existing.note_id})
                return existing.model_copy()
            note = AgentNote(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                user_id=user_id,
                patient_name=(patient_name or "").strip() or None,
                content=content.strip(),
                category=category or NoteCategory.OTHER,
            )
            self._put(note)
            self._persist()
            return note.model_copy()

    async def list_notes(
        self,
        tenant_id: str,
        conversation_id: str | None = None,
        status: NoteStatus | None = None,
        patient_name: str | None = None,
        limit: int | None = None,
    ) -> List[AgentNote]:
        with self._lock:
            rows = [n.model_copy() for n in self._values(tenant_id)]
        if conversation_id:
            rows = [n for n in rows if n.conversation_id == conversation_id]
        if status is not None:
            rows = [n for n in rows if n.status == status]
        if patient_name:
            rows = [n for n in rows if (n.patient_name or "") == patient_name.strip()]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows[:limit] if limit else rows

    async def get_note(self, tenant_id: str, note_id: str) -> Optional[AgentNote]:
        with self._lock:
            note = self._get(tenant_id, note_id)
            return note.model_copy() if note else None

    async def update_note_status(
        self,
        tenant_id: str,
        note_id: str,
        status: NoteStatus,
        reviewed_by: str | None = None,
    ) -> Optional[AgentNote]:
        with self._lock:
            note = self._get(tenant_id, note_id)
            if note is None:
                return None
            update = {"status": status, "updated_at": datetime.utcnow()}
            if status == NoteStatus.REVIEWED and reviewed_by:
                update["reviewed_by"] = reviewed_by
                update["reviewed_at"] = datetime.utcnow()
            elif status != NoteStatus.REVIEWED:
                update["reviewed_by"] = None
                update["reviewed_at"] = None
            updated = self._put(note.model_copy(update=update))
            self._persist()
            return updated.model_copy()

    async def update_note_content(self, tenant_id: str, note_id: str, content: str) -> Optional[AgentNote]:
        with self._lock:
            note = self._get(tenant_id, note_id)
            if note is None:
                return None
            updated = self._put(note.model_copy(update={"content": content.strip(), "updated_at": datetime.utcnow()}))
            self._persist()
            return updated.model_copy()

    async def delete_note(self, tenant_id: str, note_id: str) -> bool:
        with self._lock:
            if self._get(tenant_id, note_id) is None:
                return False
            self._remove_many([note_id])
            self._persist()
            return True

    async def tenant_ids(self) -> List[str]:
        with self._lock:
            return sorted({n.tenant_id for n in self._items.values()})
