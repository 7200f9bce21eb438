from datetime import datetime, timezone

from paygate.payments.plans import (
    billing_cycle_for_price_id,
    billing_period,
    format_price,
    is_feature_available,
    map_billing_cycle,
    map_plan_id,
    plan_by_price_id,
    price_display,
    price_id_for,
)
from paygate.payments.types import BillingCycle, PaymentProviderName, Plan


def test_format_price():
    assert format_price(0) == "Free"
    assert format_price(12) == "$12/mo"
    assert format_price(120, True) == "$10/mo"
    assert format_price(48, True) == "$4/mo"


def test_price_display():
    assert price_display(Plan.PRO, BillingCycle.MONTHLY) == "$12/mo"
    assert price_display(Plan.BUSINESS, BillingCycle.YEARLY) == "$20/mo"


def test_price_ids_from_settings(settings):
    assert price_id_for(PaymentProviderName.STRIPE, Plan.PRO, BillingCycle.YEARLY, settings) == "price_pro_y"
    assert price_id_for(PaymentProviderName.PADDLE, Plan.PRO, BillingCycle.MONTHLY, settings) == "pri_pro_m"
    assert price_id_for(PaymentProviderName.PAYMOB, Plan.PRO, BillingCycle.MONTHLY, settings) is None
    assert price_id_for(PaymentProviderName.STRIPE, Plan.ENTERPRISE, BillingCycle.MONTHLY, settings) is None


def test_reverse_price_lookup(settings):
    assert plan_by_price_id("price_starter_y", settings) == Plan.STARTER
    assert billing_cycle_for_price_id("price_starter_y", settings) == BillingCycle.YEARLY
    assert plan_by_price_id("pri_pro_y", settings, PaymentProviderName.PADDLE) == Plan.PRO
    assert plan_by_price_id("price_unknown", settings) is None
    assert plan_by_price_id(None, settings) is None


def test_unknown_plan_maps_to_free():
    assert map_plan_id("pro") == Plan.PRO
    assert map_plan_id("PLATINUM") == Plan.FREE
    assert map_plan_id(None) == Plan.FREE


def test_billing_cycle_mapping():
    assert map_billing_cycle("annual") == BillingCycle.YEARLY
    assert map_billing_cycle("monthly") == BillingCycle.MONTHLY
    assert map_billing_cycle(None) == BillingCycle.MONTHLY


def test_features_are_inherited():
    assert is_feature_available(Plan.PRO, "API Access")
    assert not is_feature_available(Plan.STARTER, "Webhooks")


def test_billing_period_clamps_month_end():
    start = datetime(2024, 1, 31, tzinfo=timezone.utc)
    assert billing_period(BillingCycle.MONTHLY, start) == (start, datetime(2024, 2, 29, tzinfo=timezone.utc))
    assert billing_period(BillingCycle.YEARLY, start)[1] == datetime(2025, 1, 31, tzinfo=timezone.utc)
