# paygate/payments/currency.py
"""
Currency registry.

Every conversion between major units (what people read) and minor units
(what we persist and what most providers report) goes through this table,
so 3-decimal Gulf currencies are never scaled by 100.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Literal, Union

import structlog

logger = structlog.get_logger(__name__)

Number = Union[int, float, str, Decimal]


@dataclass(frozen=True)
class CurrencyConfig:
    code: str
    symbol: str
    name: str
    decimals: int
    smallest_unit: int


CURRENCIES: Dict[str, CurrencyConfig] = {
    c.code: c
    for c in (
        CurrencyConfig("USD", "$", "US Dollar", 2, 100),
        CurrencyConfig("EUR", "€", "Euro", 2, 100),
        CurrencyConfig("GBP", "£", "British Pound", 2, 100),
        CurrencyConfig("EGP", "E£", "Egyptian Pound", 2, 100),
        CurrencyConfig("SAR", "SR", "Saudi Riyal", 2, 100),
        CurrencyConfig("AED", "AED", "UAE Dirham", 2, 100),
        CurrencyConfig("KWD", "KD", "Kuwaiti Dinar", 3, 1000),
        CurrencyConfig("BHD", "BD", "Bahraini Dinar", 3, 1000),
        CurrencyConfig("OMR", "OMR", "Omani Rial", 3, 1000),
        CurrencyConfig("QAR", "QR", "Qatari Riyal", 2, 100),
        CurrencyConfig("JOD", "JD", "Jordanian Dinar", 3, 1000),
    )
}

DEFAULT_CURRENCY = "USD"


def get_currency(code: str) -> CurrencyConfig:
    """Case-insensitive lookup; unknown codes fall back to USD."""
    cfg = CURRENCIES.get((code or "").upper())
    if cfg is None:
        logger.warning("currency_unknown_fallback", currency=code, fallback=DEFAULT_CURRENCY)
        return CURRENCIES[DEFAULT_CURRENCY]
    return cfg


def is_supported(code: str) -> bool:
    return (code or "").upper() in CURRENCIES


def to_smallest_unit(amount: Number, code: str) -> int:
    cfg = get_currency(code)
    scaled = Decimal(str(amount)) * cfg.smallest_unit
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_smallest_unit(amount: int, code: str) -> Decimal:
    cfg = get_currency(code)
    exponent = Decimal(1).scaleb(-cfg.decimals)
    return (Decimal(int(amount)) / cfg.smallest_unit).quantize(exponent)


def format_currency(amount: Number, code: str) -> str:
    """Render a major-unit amount, e.g. `$12.00`, `KD 1.500`."""
    cfg = get_currency(code)
    exponent = Decimal(1).scaleb(-cfg.decimals)
    value = Decimal(str(amount)).quantize(exponent, rounding=ROUND_HALF_UP)
    rendered = f"{value:,.{cfg.decimals}f}"
    sep = " " if cfg.symbol.isalpha() else ""
    return f"{cfg.symbol}{sep}{rendered}"


def normalize_amount(value: Number, code: str, unit: Literal["major", "minor"]) -> int:
    """
    Single entry point adapters use to turn a provider-reported amount into
    persisted minor units. Minor-unit values must already be whole numbers.
    """
    if unit == "major":
        return to_smallest_unit(value, code)
    minor = Decimal(str(value))
    if minor != minor.to_integral_value():
        raise ValueError(f"minor-unit amount {value!r} is not a whole number")
    return int(minor)
