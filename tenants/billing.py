from __future__ import annotations

import math
from datetime import datetime, timedelta

from models.schemas import BillingStatus
from settings import SETTINGS
from tenants.config_store import TenantConfigStore

WIDGET_BILLING_ERROR = 'Widget Error 725 - "please contact admin"'


class BillingOracle:
    """Answers whether a tenant may currently receive automated support."""

    def __init__(self, tenants: TenantConfigStore | None = None) -> None:
        self.tenants = tenants or TenantConfigStore()

    async def status(self, tenant_id: str, now: datetime | None = None) -> BillingStatus:
        now = now or datetime.utcnow()
        account = await self.tenants.get_account(tenant_id)
        if account is None:
            return BillingStatus(tenant_id=tenant_id, is_active=False, expired_reason="tenant_not_found", days_remaining=0)

        if account.subscription_status == "expired":
            return BillingStatus(
                tenant_id=tenant_id,
                billing_plan_id=account.billing_plan_id,
                is_active=False,
                expired_reason="subscription_expired",
                days_remaining=0,
            )

        if account.billing_plan_id == "free":
            ends_at = account.trial_ends_at or account.created_at + timedelta(days=SETTINGS.trial_days)
            reason = "trial_ended"
        else:
            ends_at = account.subscription_ends_at or account.created_at + timedelta(days=30)
            reason = "subscription_ended"

        remaining = (ends_at - now).total_seconds()
        if remaining <= 0:
            return BillingStatus(
                tenant_id=tenant_id,
                billing_plan_id=account.billing_plan_id,
                is_active=False,
                expired_reason=reason,
                days_remaining=0,
            )
        return BillingStatus(
            tenant_id=tenant_id,
            billing_plan_id=account.billing_plan_id,
            is_active=True,
            days_remaining=math.ceil(remaining / 86400),
        )

    async def is_active(self, tenant_id: str) -> bool:
        return (await self.status(tenant_id)).is_active
