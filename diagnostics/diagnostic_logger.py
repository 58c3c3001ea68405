from __future__ import annotations

import json
import logging
import os
from threading import Lock
from typing import Any, Dict

from models.schemas import DiagnosticEvent
from settings import SETTINGS

logger = logging.getLogger(__name__)


class DiagnosticLogger:
    """Append-only JSONL sink for per-turn pipeline diagnostics."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or SETTINGS.diagnostic_log_path
        self._lock = Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def record(self, event: DiagnosticEvent) -> None:
        self.log_json(event.model_dump(mode="json"))

    def log_json(self, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True, default=str)
        try:
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
        except OSError as exc:
            # Diagnostics must never break a customer turn.
            logger.error(
                "diagnostic_log_write_failed",
                extra={"path": self.path, "source": payload.get("source"), "step": payload.get("step"), "error": repr(exc)},
            )
