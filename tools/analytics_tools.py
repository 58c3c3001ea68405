from __future__ import annotations

import json
import logging
import os
from collections import Counter
from datetime import datetime
from threading import Lock
from typing import Dict, List

from settings import SETTINGS

logger = logging.getLogger(__name__)


class AnalyticsTools:
    """Append-only JSONL event log behind the dashboard counters."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or SETTINGS.analytics_log_path
        self._lock = Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    async def log_event(self, event_type: str, payload: Dict[str, object]) -> dict:
        record = {"ts": datetime.utcnow().isoformat(), "event_type": event_type, "payload": payload}
        try:
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")
        except OSError as exc:
            logger.warning("analytics_write_failed", extra={"event_type": event_type, "error": repr(exc)})
        return record

    async def record_activity(self, tenant_id: str, activity_type: str) -> dict:
        """``activity_type`` is ``integrations`` or ``agent-brain``."""
        return await self.log_event("agent_activity", {"tenant_id": tenant_id, "type": activity_type})

    async def record_usage(
        self, tenant_id: str, provider: str, model: str, input_tokens: int, output_tokens: int
    ) -> dict:
        return await self.log_event(
            "token_usage",
            {
                "tenant_id": tenant_id,
                "provider": provider,
                "model": model,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
            },
        )

    def _rows(self) -> List[dict]:
        rows: List[dict] = []
        if os.path.exists(self.path):
            with open(self.path, "r", encoding="utf-8") as fh:
                for line in fh:
                    try:
                        rows.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        return rows

    async def dashboard_metrics(self, tenant_id: str | None = None) -> Dict[str, object]:
        rows = self._rows()
        if tenant_id:
            rows = [r for r in rows if (r.get("payload") or {}).get("tenant_id") == tenant_id]
        by_type = Counter(r.get("event_type", "unknown") for r in rows)
        activities = Counter(
            (r.get("payload") or {}).get("type", "unknown") for r in rows if r.get("event_type") == "agent_activity"
        )
        usage = [r.get("payload") or {} for r in rows if r.get("event_type") == "token_usage"]
        return {
            "total_events": len(rows),
            "events_by_type": dict(by_type.most_common()),
            "activities": dict(activities),
            "input_tokens": sum(int(u.get("input_tokens", 0) or 0) for u in usage),
            "output_tokens": sum(int(u.get("output_tokens", 0) or 0) for u in usage),
        }
