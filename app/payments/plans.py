"""
Proxy plan catalog.

Plans are keyed by proxy type and tier. Prices are stored in cents so
the catalog never carries floating point amounts; ``ProxyPlan.price``
returns the major-unit Decimal that PaymentIntent records use.

Recurring plans (residential, mobile) are billed as subscriptions where
the provider supports it. One-time plans expire after a fixed period:
static residential plans after the number of days in their label, every
other one-time plan after 30 days.

Usage:
    from payments.plans import get_plan, compute_expiry

    plan = get_plan("datacenter", "pro")
    plan.price              # Decimal("50.00")
    compute_expiry(plan, timezone.now())
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from payments.exceptions import PaymentValidationError

PLAN_TIERS = ("basic", "pro", "enterprise")

DEFAULT_ONE_TIME_DURATION_DAYS = 30

_DURATION_PATTERN = re.compile(r"(\d+)\s+Days?")


@dataclass(frozen=True)
class ProxyPlan:
    """A purchasable proxy plan."""

    plan_type: str
    tier: str
    name: str
    price_cents: int
    bandwidth: str
    is_recurring: bool

    @property
    def price(self) -> Decimal:
        return (Decimal(self.price_cents) / 100).quantize(Decimal("0.01"))

    def to_dict(self) -> dict:
        return {
            "plan_type": self.plan_type,
            "tier": self.tier,
            "name": self.name,
            "price": str(self.price),
            "bandwidth": self.bandwidth,
            "is_recurring": self.is_recurring,
        }


def _tiers(plan_type: str, is_recurring: bool, rows: list[tuple[str, int, str]]) -> dict[str, ProxyPlan]:
    return {
        tier: ProxyPlan(plan_type, tier, name, price_cents, bandwidth, is_recurring)
        for tier, (name, price_cents, bandwidth) in zip(PLAN_TIERS, rows)
    }


PROXY_PLANS: dict[str, dict[str, ProxyPlan]] = {
    "residential": _tiers(
        "residential",
        True,
        [
            ("Residential Basic", 2750, "10GB"),
            ("Residential Pro", 6875, "25GB"),
            ("Residential Enterprise", 27500, "100GB"),
        ],
    ),
    "mobile": _tiers(
        "mobile",
        True,
        [
            ("Mobile Basic", 2500, "5GB"),
            ("Mobile Pro", 10000, "20GB"),
            ("Mobile Enterprise", 30000, "60GB"),
        ],
    ),
    "datacenter": _tiers(
        "datacenter",
        False,
        [
            ("Datacenter One-Time 10GB", 2000, "10GB"),
            ("Datacenter One-Time 25GB", 5000, "25GB"),
            ("Datacenter One-Time 100GB", 20000, "100GB"),
        ],
    ),
    "static_residential": _tiers(
        "static_residential",
        False,
        [
            ("Static Residential - 1 Day", 390, "1 Day"),
            ("Static Residential - 30 Days", 790, "30 Days"),
            ("Static Residential - 90 Days", 2100, "90 Days"),
        ],
    ),
}


def get_plan(plan_type: str, tier: str) -> ProxyPlan:
    """
    Look up a plan.

    Raises:
        PaymentValidationError: If the type/tier combination does not exist
    """
    plan = PROXY_PLANS.get(plan_type, {}).get(tier)
    if plan is None:
        raise PaymentValidationError(
            "Invalid plan selection",
            error_code="INVALID_PLAN",
            details={"plan_type": plan_type, "tier": tier},
        )
    return plan


def iter_plans():
    for tiers in PROXY_PLANS.values():
        yield from tiers.values()


def compute_expiry(plan: ProxyPlan, purchased_at: datetime) -> datetime | None:
    """
    Return when a purchased plan stops being active.

    Recurring plans have no fixed expiry; renewals push ``next_renewal_at``
    forward instead.
    """
    if plan.is_recurring:
        return None

    if plan.plan_type == "static_residential":
        match = _DURATION_PATTERN.search(plan.bandwidth)
        if match:
            return purchased_at + timedelta(days=int(match.group(1)))

    return purchased_at + timedelta(days=DEFAULT_ONE_TIME_DURATION_DAYS)
