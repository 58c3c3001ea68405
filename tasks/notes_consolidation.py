from __future__ import annotations

import asyncio
import logging
from typing import Dict

from celery import Celery

from agents.learning_agent import LearningAgent
from memory.agent_notes import AgentNotesStore
from settings import SETTINGS
from tools.analytics_tools import AnalyticsTools

logger = logging.getLogger(__name__)


celery_app = Celery("caremax_agent_platform")
if SETTINGS.redis_url:
    celery_app.conf.broker_url = SETTINGS.redis_url
    celery_app.conf.result_backend = SETTINGS.redis_url
celery_app.conf.beat_schedule = {
    "consolidate-agent-notes": {
        "task": "tasks.notes_consolidation.consolidate_all_notes",
        "schedule": float(SETTINGS.notes_consolidation_interval_seconds),
    }
}


class NotesConsolidationJob:
    """Runs the notebook consolidation pass for every tenant that has notes."""

    def __init__(
        self,
        learning: LearningAgent | None = None,
        notes: AgentNotesStore | None = None,
        analytics: AnalyticsTools | None = None,
    ) -> None:
        self.learning = learning or LearningAgent()
        self.notes = notes or self.learning.services.notes
        self.analytics = analytics or self.learning.services.analytics

    async def run_once(self) -> dict:
        results: Dict[str, int] = {}
        failed = []
        for tenant_id in await self.notes.tenant_ids():
            try:
                results[tenant_id] = await self.learning.consolidate_notes(tenant_id)
            except Exception as exc:
                # One tenant's bad data must not stop the batch.
                logger.error("notes_consolidation_failed", extra={"tenant_id": tenant_id, "error": repr(exc)}, exc_info=True)
                failed.append(tenant_id)
        await self.analytics.log_event(
            "notes_consolidation_run",
            {"tenants": len(results) + len(failed), "changes": sum(results.values()), "failed": failed},
        )
        return {"tenants": results, "failed": failed}


@celery_app.task(name="tasks.notes_consolidation.consolidate_all_notes")
def consolidate_all_notes() -> dict:
    job = NotesConsolidationJob()
    return asyncio.run(job.run_once())
