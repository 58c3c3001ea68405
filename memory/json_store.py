from __future__ import annotations

import json
import logging
import os
import time
import uuid
from threading import Lock
from typing import Dict, Generic, Iterable, List, Type, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class JsonCollectionStore(Generic[T]):
    """Keyed collection of pydantic models persisted to a single JSON file.

    Every mutation runs under ``self._lock`` and rewrites the file through a temp
    file plus ``os.replace``. Subclasses own the domain methods and the tenant
    filtering; this class only knows about ids.
    """

    collection: str = "items"
    model: Type[T]
    id_field: str

    def __init__(self, path: str) -> None:
        self.path = path
        self._items: Dict[str, T] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("json_store_load_failed", extra={"path": self.path, "error": repr(exc)})
            return
        for raw in payload.get(self.collection, []):
            try:
                item = self.model.model_validate(raw)
            except ValueError:
                continue
            self._items[str(getattr(item, self.id_field))] = item

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        payload = {self.collection: [item.model_dump(mode="json") for item in self._items.values()]}
        last_err: Exception | None = None
        for attempt in range(5):
            tmp = f"{self.path}.{uuid.uuid4().hex}.tmp"
            try:
                with open(tmp, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=True)
                os.replace(tmp, self.path)
                return
            except PermissionError as exc:
                last_err = exc
                self._discard(tmp)
                time.sleep(0.03 * (attempt + 1))
            except OSError as exc:
                last_err = exc
                self._discard(tmp)
                break
        logger.warning("json_store_persist_failed", extra={"path": self.path, "error": repr(last_err)})

    def _discard(self, tmp: str) -> None:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            logger.debug("json_store_tmp_cleanup_failed", extra={"path": tmp})

    def _put(self, item: T) -> T:
        self._items[str(getattr(item, self.id_field))] = item
        return item

    def _values(self, tenant_id: str) -> List[T]:
        return [item for item in self._items.values() if getattr(item, "tenant_id", None) == tenant_id]

    def _get(self, tenant_id: str, item_id: str) -> T | None:
        item = self._items.get(item_id)
        if item is None or getattr(item, "tenant_id", None) != tenant_id:
            return None
        return item

    def _remove_many(self, ids: Iterable[str]) -> int:
        removed = 0
        for item_id in ids:
            if self._items.pop(item_id, None) is not None:
                removed += 1
        return removed
