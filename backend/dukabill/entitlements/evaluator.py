"""
Expiry evaluator.

effective_tier(subscription, now) is a pure function of the persisted
subscription and the clock. It never writes; a lapsed ACTIVE/TRIAL row reads
as EXPIRED before any background job has touched it.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from dukabill.config.plan_catalog import PlanCatalog, get_plan_catalog
from dukabill.models.base import as_utc
from dukabill.models.subscription import SubscriptionStatus

SECONDS_PER_DAY = 86400


class Tier(str, Enum):
    TRIAL = "TRIAL"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    EXPIRED = "EXPIRED"
    NONE = "NONE"


FULL_ACCESS_TIERS = {Tier.TRIAL, Tier.PREMIUM}
PAID_ACCESS_TIERS = {Tier.TRIAL, Tier.BASIC, Tier.PREMIUM}


@dataclass(frozen=True)
class EntitlementView:
    """Read model returned to clients."""
    store_id: Optional[str]
    tier: Tier
    status: Optional[str]
    expires_at: Optional[datetime]
    days_remaining: int
    plan_id: Optional[str]
    is_trial: bool

    @property
    def has_access(self) -> bool:
        return self.tier in PAID_ACCESS_TIERS

    @property
    def has_full_access(self) -> bool:
        return self.tier in FULL_ACCESS_TIERS

    @property
    def can_access_premium_features(self) -> bool:
        return self.tier in FULL_ACCESS_TIERS


def days_until(expires_at: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days from now to expires_at, floored (negative once lapsed)."""
    if expires_at is None:
        return None
    delta = as_utc(expires_at) - as_utc(now)
    return math.floor(delta.total_seconds() / SECONDS_PER_DAY)


def effective_tier(
    subscription,
    now: datetime,
    catalog: Optional[PlanCatalog] = None,
) -> Tier:
    """
    Compute the tier a store is entitled to right now.

    Args:
        subscription: Subscription row (or None when the store has none)
        now: Evaluation time
        catalog: Plan catalog for plan -> tier mapping

    Returns:
        Tier enum value
    """
    if subscription is None:
        return Tier.NONE

    status = subscription.status
    if status == SubscriptionStatus.CANCELLED.value:
        return Tier.NONE
    if status in (SubscriptionStatus.SUSPENDED.value, SubscriptionStatus.EXPIRED.value):
        return Tier.EXPIRED

    expires_at = as_utc(subscription.expires_at)
    if expires_at is None or expires_at <= as_utc(now):
        return Tier.EXPIRED

    if subscription.is_trial or status == SubscriptionStatus.TRIAL.value:
        return Tier.TRIAL

    catalog = catalog or get_plan_catalog()
    return Tier(catalog.tier_for_plan(subscription.plan_id))


def build_entitlement_view(
    subscription,
    now: datetime,
    store_id: Optional[str] = None,
    catalog: Optional[PlanCatalog] = None,
) -> EntitlementView:
    """Build the client-facing entitlement view for a subscription."""
    tier = effective_tier(subscription, now, catalog)
    if subscription is None:
        return EntitlementView(
            store_id=store_id,
            tier=tier,
            status=None,
            expires_at=None,
            days_remaining=0,
            plan_id=None,
            is_trial=False,
        )

    days = days_until(subscription.expires_at, now)
    return EntitlementView(
        store_id=store_id or subscription.store_id,
        tier=tier,
        status=subscription.status,
        expires_at=as_utc(subscription.expires_at),
        days_remaining=max(0, days) if days is not None else 0,
        plan_id=subscription.plan_id,
        is_trial=bool(subscription.is_trial),
    )
