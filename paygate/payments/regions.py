# paygate/payments/regions.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from paygate.payments.types import PaymentProviderName as P

MENA_COUNTRIES: FrozenSet[str] = frozenset({"SA", "AE", "KW", "BH", "OM", "QA", "JO"})

EU_COUNTRIES: FrozenSet[str] = frozenset({
    "GB", "DE", "FR", "IT", "ES", "NL", "BE", "AT", "CH", "SE", "NO", "DK", "FI",
    "IE", "PT", "PL", "CZ", "HU", "RO", "BG", "HR", "SK", "SI", "LT", "LV", "EE",
})

DEFAULT_PREFERENCE: Tuple[P, ...] = (P.STRIPE, P.PADDLE)
DEFAULT_PROVIDER: P = P.STRIPE


def normalize_country(country_code: Optional[str]) -> Optional[str]:
    if not country_code:
        return None
    code = country_code.strip().upper()
    return code or None


def preferred_gateways(country_code: Optional[str]) -> Tuple[P, ...]:
    """Ordered provider preference for a country; pure and deterministic."""
    code = normalize_country(country_code)
    if code == "EG":
        return (P.PAYMOB, P.STRIPE)
    if code in MENA_COUNTRIES:
        return (P.PAYTABS, P.STRIPE)
    if code in EU_COUNTRIES:
        return (P.PADDLE, P.STRIPE)
    return DEFAULT_PREFERENCE


# -------------------------
# Payment methods per region
# -------------------------
@dataclass(frozen=True)
class PaymentMethodInfo:
    id: str
    name: str
    description: str


PAYMENT_METHODS: Dict[str, PaymentMethodInfo] = {
    m.id: m
    for m in (
        PaymentMethodInfo("card", "Credit / Debit Card", "Visa, Mastercard, Amex"),
        PaymentMethodInfo("wallet", "Mobile Wallet", "Vodafone Cash, Orange Money, Etisalat Cash"),
        PaymentMethodInfo("kiosk", "Cash at Kiosk", "Pay at Aman or Masary outlets"),
        PaymentMethodInfo("mada", "mada", "Saudi debit cards"),
        PaymentMethodInfo("apple_pay", "Apple Pay", "Pay with Apple Pay"),
        PaymentMethodInfo("google_pay", "Google Pay", "Pay with Google Pay"),
    )
}


def available_payment_methods(country_code: Optional[str]) -> Tuple[str, ...]:
    code = normalize_country(country_code)
    if code == "EG":
        return ("card", "wallet", "kiosk")
    if code == "SA":
        return ("card", "mada", "apple_pay", "google_pay")
    return ("card", "apple_pay", "google_pay")
