from __future__ import annotations

from typing import Optional, Dict, Any, Literal, List
from pydantic import BaseModel, Field, field_validator


# -------------------------
# Checkout
# -------------------------
class CheckoutRequest(BaseModel):
    planId: Literal["STARTER", "PRO", "BUSINESS", "ENTERPRISE"]
    billingCycle: Literal["monthly", "yearly"] = "monthly"
    countryCode: Optional[str] = Field(None, pattern=r"^[A-Za-z]{2}$")
    provider: Optional[Literal["stripe", "paymob", "paytabs", "paddle"]] = None
    paymentMethod: Optional[str] = Field(None, min_length=1, max_length=32)

    @field_validator("planId", mode="before")
    @classmethod
    def _upper_plan(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("billingCycle", "provider", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("countryCode")
    @classmethod
    def _upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class CheckoutResponse(BaseModel):
    success: bool = True
    provider: str
    sessionId: str
    checkoutUrl: str
    expiresAt: Optional[str] = None   # ISO8601 or None
    priceDisplay: str
    kioskReference: Optional[str] = None


# -------------------------
# Billing
# -------------------------
class PaymentMethodItem(BaseModel):
    id: str
    name: str
    description: str


class PaymentMethodsResponse(BaseModel):
    countryCode: Optional[str] = None
    provider: str
    configured: bool
    preferredGateways: List[str] = Field(default_factory=list)
    configuredGateways: List[str] = Field(default_factory=list)
    methods: List[PaymentMethodItem]


class SubscriptionResponse(BaseModel):
    id: str
    plan: str
    status: str
    provider: Optional[str] = None
    providerSubscriptionId: Optional[str] = None
    currentPeriodStart: Optional[str] = None
    currentPeriodEnd: Optional[str] = None
    cancelAtPeriodEnd: bool = False


class PaymentResponse(BaseModel):
    id: str
    provider: str
    amount: int                 # minor units
    currency: str
    amountDisplay: str
    status: str
    paymentMethod: Optional[str] = None
    last4: Optional[str] = None
    brand: Optional[str] = None
    kioskBillRef: Optional[str] = None
    failureReason: Optional[str] = None
    createdAt: Optional[str] = None


class CancelRequest(BaseModel):
    immediate: bool = False


class KioskPaymentResponse(BaseModel):
    billReference: str
    amount: int
    currency: str
    amountDisplay: str
    status: str
    expiresAt: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
