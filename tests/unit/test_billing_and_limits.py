from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from api.middleware.rate_limiting import SlidingWindowLimiter
from models.schemas import TenantAccount
from tenants.billing import BillingOracle

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _status(tenants, account=None, now=NOW):
    async def _run():
        if account is not None:
            await tenants.save_account(account)
        return await BillingOracle(tenants).status(account.tenant_id if account else "ghost", now=now)

    return asyncio.run(_run())


def test_unknown_tenant_is_inactive(tenants):
    status = _status(tenants)
    assert status.is_active is False
    assert status.expired_reason == "tenant_not_found"


def test_trial_counts_remaining_days_up(tenants):
    account = TenantAccount(tenant_id="t1", created_at=NOW - timedelta(days=3), trial_ends_at=NOW + timedelta(days=2, hours=1))
    status = _status(tenants, account)
    assert status.is_active
    assert status.days_remaining == 3


def test_ended_trial_and_subscription(tenants):
    trial = TenantAccount(tenant_id="t1", trial_ends_at=NOW - timedelta(seconds=1), created_at=NOW - timedelta(days=20))
    assert _status(tenants, trial).expired_reason == "trial_ended"

    paid = TenantAccount(
        tenant_id="t2",
        billing_plan_id="pro",
        subscription_ends_at=NOW,
        created_at=NOW - timedelta(days=40),
    )
    status = _status(tenants, paid)
    assert status.is_active is False
    assert status.expired_reason == "subscription_ended"


def test_paid_plan_without_end_date_gets_thirty_days(tenants):
    paid = TenantAccount(tenant_id="t1", billing_plan_id="pro", created_at=NOW - timedelta(days=10))
    status = _status(tenants, paid)
    assert status.is_active
    assert status.days_remaining == 20


def test_expired_subscription_overrides_dates(tenants):
    account = TenantAccount(
        tenant_id="t1",
        billing_plan_id="pro",
        subscription_status="expired",
        subscription_ends_at=NOW + timedelta(days=100),
    )
    status = _status(tenants, account)
    assert status.is_active is False
    assert status.expired_reason == "subscription_expired"


def test_saving_config_opens_a_trial(tenants):
    async def _run():
        await tenants.save_config("t1", {"agent_name": "Ava"})
        return await BillingOracle(tenants).is_active("t1")

    assert asyncio.run(_run())


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_limiter_blocks_over_limit_and_recovers_after_window():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=2, window_seconds=60, clock=clock)
    assert limiter.hit("1.2.3.4")
    assert limiter.hit("1.2.3.4")
    assert not limiter.hit("1.2.3.4")
    assert limiter.hit("5.6.7.8")
    clock.now += 61
    assert limiter.hit("1.2.3.4")


def test_limiter_reset():
    limiter = SlidingWindowLimiter(limit=1, clock=FakeClock())
    assert limiter.hit("a")
    assert not limiter.hit("a")
    limiter.reset("a")
    assert limiter.hit("a")
    limiter.reset()
    assert limiter.hit("a")


def test_limiter_forgets_clients_whose_window_elapsed():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(limit=5, window_seconds=60, clock=clock)
    for i in range(50):
        assert limiter.hit(f"10.0.0.{i}")
    assert limiter.tracked_keys() == 50
    clock.now += 61
    assert limiter.hit("10.0.1.1")
    assert limiter.tracked_keys() == 1
