# paygate/payments/plans.py
from __future__ import annotations
import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional, Tuple, TYPE_CHECKING

import structlog

from paygate.payments.types import BillingCycle, Plan, PaymentProviderName

if TYPE_CHECKING:
    from paygate.core.settings import Settings

logger = structlog.get_logger(__name__)

UNLIMITED = -1

PLAN_ORDER: Tuple[Plan, ...] = (Plan.FREE, Plan.STARTER, Plan.PRO, Plan.BUSINESS, Plan.ENTERPRISE)
PAID_PLANS: Tuple[Plan, ...] = PLAN_ORDER[1:]


@dataclass(frozen=True)
class PlanLimits:
    links_per_month: int
    clicks_tracked: int
    custom_domains: int
    team_members: int
    api_requests_per_day: int
    analytics_retention_days: int
    bulk_shorten_limit: int
    ab_tests: int
    bio_pages: int
    retargeting_pixels: int


@dataclass(frozen=True)
class PlanConfig:
    plan: Plan
    name: str
    description: str
    price: int          # USD per month
    yearly_price: int   # USD per year, discounted
    limits: PlanLimits
    features: Tuple[str, ...]
    popular: bool = False


PLANS: Dict[Plan, PlanConfig] = {
    Plan.FREE: PlanConfig(
        Plan.FREE, "Free", "Perfect for personal use", 0, 0,
        PlanLimits(100, 10_000, 0, 1, 100, 30, 10, 0, 1, 0),
        ("Basic Analytics", "QR Codes", "Custom Alias", "Password Protection",
         "Link Expiration", "30-day Analytics History"),
    ),
    Plan.STARTER: PlanConfig(
        Plan.STARTER, "Starter", "Great for small businesses", 5, 48,
        PlanLimits(1_000, 50_000, 1, 1, 1_000, 90, 50, 1, 2, 1),
        ("Everything in Free", "Advanced Analytics", "API Access", "No Branding",
         "1 Custom Domain", "90-day Analytics History", "UTM Builder", "Tags & Folders"),
    ),
    Plan.PRO: PlanConfig(
        Plan.PRO, "Pro", "For growing teams", 12, 120,
        PlanLimits(5_000, 250_000, 3, 5, 5_000, 180, 100, 5, 5, 5),
        ("Everything in Starter", "3 Custom Domains", "5 Team Members", "Device Targeting",
         "Geo Targeting", "180-day Analytics History", "Priority Support", "Webhooks"),
        popular=True,
    ),
    Plan.BUSINESS: PlanConfig(
        Plan.BUSINESS, "Business", "For larger organizations", 25, 240,
        PlanLimits(25_000, 1_000_000, 10, 20, 25_000, 365, 500, 20, 20, 20),
        ("Everything in Pro", "10 Custom Domains", "20 Team Members", "A/B Testing",
         "1-year Analytics History", "Custom Branding", "SSO (SAML)", "Dedicated Support"),
    ),
    Plan.ENTERPRISE: PlanConfig(
        Plan.ENTERPRISE, "Enterprise", "Custom solutions for large enterprises", 50, 480,
        PlanLimits(*([UNLIMITED] * 10)),
        ("Everything in Business", "Unlimited Links", "Unlimited Team Members",
         "Unlimited Custom Domains", "Unlimited Analytics History", "Custom Integrations",
         "SLA", "Dedicated Account Manager"),
    ),
}

# Paymob charges in EGP piasters
PAYMOB_PRICES_EGP: Dict[Plan, Dict[BillingCycle, int]] = {
    Plan.STARTER: {BillingCycle.MONTHLY: 25_000, BillingCycle.YEARLY: 240_000},
    Plan.PRO: {BillingCycle.MONTHLY: 60_000, BillingCycle.YEARLY: 600_000},
    Plan.BUSINESS: {BillingCycle.MONTHLY: 125_000, BillingCycle.YEARLY: 1_200_000},
    Plan.ENTERPRISE: {BillingCycle.MONTHLY: 250_000, BillingCycle.YEARLY: 2_400_000},
}

# PayTabs charges in the regional currency's major unit
PAYTABS_PRICES: Dict[Plan, Dict[BillingCycle, int]] = {
    Plan.STARTER: {BillingCycle.MONTHLY: 19, BillingCycle.YEARLY: 190},
    Plan.PRO: {BillingCycle.MONTHLY: 45, BillingCycle.YEARLY: 450},
    Plan.BUSINESS: {BillingCycle.MONTHLY: 94, BillingCycle.YEARLY: 940},
    Plan.ENTERPRISE: {BillingCycle.MONTHLY: 188, BillingCycle.YEARLY: 1_880},
}


def format_price(price: int, yearly: bool = False) -> str:
    if price == 0:
        return "Free"
    if yearly:
        per_month = (Decimal(price) / 12).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return f"${per_month}/mo"
    return f"${price}/mo"


def price_display(plan: Plan, billing_cycle: BillingCycle) -> str:
    cfg = PLANS[plan]
    if billing_cycle == BillingCycle.YEARLY:
        return format_price(cfg.yearly_price, yearly=True)
    return format_price(cfg.price)


def price_id_for(
    provider: PaymentProviderName, plan: Plan, billing_cycle: BillingCycle, settings: "Settings"
) -> Optional[str]:
    """Configured Stripe/Paddle price identifier; None when unset or not applicable."""
    cycle = billing_cycle.value.upper()
    if provider == PaymentProviderName.STRIPE:
        key = f"STRIPE_{plan.value}_{cycle}_PRICE_ID"
    elif provider == PaymentProviderName.PADDLE:
        key = f"PADDLE_PRICE_{plan.value}_{cycle}"
    else:
        return None
    return getattr(settings, key, "") or None


def plan_by_price_id(
    price_id: Optional[str], settings: "Settings", provider: PaymentProviderName = PaymentProviderName.STRIPE
) -> Optional[Plan]:
    if not price_id:
        return None
    for plan in PAID_PLANS:
        for cycle in BillingCycle:
            if price_id_for(provider, plan, cycle, settings) == price_id:
                return plan
    return None


def billing_cycle_for_price_id(
    price_id: Optional[str], settings: "Settings", provider: PaymentProviderName = PaymentProviderName.STRIPE
) -> Optional[BillingCycle]:
    if not price_id:
        return None
    for plan in PAID_PLANS:
        for cycle in BillingCycle:
            if price_id_for(provider, plan, cycle, settings) == price_id:
                return cycle
    return None


def map_plan_id(value: Optional[str]) -> Plan:
    """Unknown or missing plan identifiers never grant a paid tier."""
    try:
        return Plan((value or "").strip().upper())
    except ValueError:
        logger.warning("plan_unknown_mapped_to_free", plan=value)
        return Plan.FREE


def map_billing_cycle(value: Optional[str]) -> BillingCycle:
    if value and value.strip().lower() in ("yearly", "year", "annual"):
        return BillingCycle.YEARLY
    return BillingCycle.MONTHLY


def plan_limits(plan: Plan) -> PlanLimits:
    return PLANS[plan].limits


def plan_features(plan: Plan) -> Tuple[str, ...]:
    return PLANS[plan].features


def is_feature_available(plan: Plan, feature: str) -> bool:
    # a plan includes every feature of the tiers below it
    upto = PLAN_ORDER.index(plan)
    return any(feature in PLANS[p].features for p in PLAN_ORDER[: upto + 1])


def _add_months(dt: datetime, months: int) -> datetime:
    index = dt.month - 1 + months
    year, month = dt.year + index // 12, index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def billing_period(billing_cycle: BillingCycle, start: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Period for one-off charges (Paymob, PayTabs) that carry no provider period."""
    begin = start or datetime.now(tz=timezone.utc)
    months = 12 if billing_cycle == BillingCycle.YEARLY else 1
    return begin, _add_months(begin, months)
