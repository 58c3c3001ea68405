from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Optional

from models.schemas import TenantAccount, TenantAgentConfig
from settings import SETTINGS

logger = logging.getLogger(__name__)


class TenantConfigStore:
    """Per-tenant agent configuration and billing account, cached in memory and kept in one JSON file."""

    def __init__(self, path: str | None = None) -> None:
        self.path = path or SETTINGS.tenant_store_path
        self._configs: Dict[str, TenantAgentConfig] = {}
        self._accounts: Dict[str, TenantAccount] = {}
        self._lock = Lock()
        self._load()

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("tenant_store_load_failed", extra={"path": self.path, "error": repr(exc)})
            return
        for raw in payload.get("configs", []):
            try:
                config = TenantAgentConfig.model_validate(raw)
            except ValueError:
                continue
            self._configs[config.tenant_id] = config
        for raw in payload.get("accounts", []):
            try:
                account = TenantAccount.model_validate(raw)
            except ValueError:
                continue
            self._accounts[account.tenant_id] = account

    def _persist(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        payload = {
            "configs": [c.model_dump(mode="json") for c in self._configs.values()],
            "accounts": [a.model_dump(mode="json") for a in self._accounts.values()],
        }
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, ensure_ascii=True)
        os.replace(tmp, self.path)

    async def get_config(self, tenant_id: str) -> TenantAgentConfig:
        """Stored config, or the defaults for a tenant that never saved one."""
        with self._lock:
            config = self._configs.get(tenant_id)
            return config.model_copy() if config else TenantAgentConfig(tenant_id=tenant_id)

    async def get_agent_version(self, tenant_id: str) -> Optional[str]:
        with self._lock:
            config = self._configs.get(tenant_id)
            return config.agent_version if config else None

    async def save_config(self, tenant_id: str, updates: Dict[str, Any]) -> TenantAgentConfig:
        current = await self.get_config(tenant_id)
        merged = {**current.model_dump(), **updates, "tenant_id": tenant_id, "updated_at": datetime.utcnow()}
        config = TenantAgentConfig.model_validate(merged)
        with self._lock:
            self._configs[tenant_id] = config
            self._accounts.setdefault(tenant_id, self._new_account(tenant_id))
            self._persist()
        return config.model_copy()

    def _new_account(self, tenant_id: str) -> TenantAccount:
        now = datetime.utcnow()
        return TenantAccount(tenant_id=tenant_id, created_at=now, trial_ends_at=now + timedelta(days=SETTINGS.trial_days))

    async def ensure_account(self, tenant_id: str) -> TenantAccount:
        with self._lock:
            account = self._accounts.get(tenant_id)
            if account is None:
                account = self._new_account(tenant_id)
                self._accounts[tenant_id] = account
                self._persist()
            return account.model_copy()

    async def get_account(self, tenant_id: str) -> Optional[TenantAccount]:
        with self._lock:
            account = self._accounts.get(tenant_id)
            return account.model_copy() if account else None

    async def save_account(self, account: TenantAccount) -> TenantAccount:
        with self._lock:
            self._accounts[account.tenant_id] = account.model_copy()
            self._persist()
        return account
