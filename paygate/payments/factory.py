# paygate/payments/factory.py
from __future__ import annotations
from typing import Dict, List, Mapping, Optional, Union, TYPE_CHECKING

import structlog

from paygate.core.errors import UnknownProvider
from paygate.payments.regions import DEFAULT_PROVIDER, preferred_gateways
from paygate.payments.types import PaymentGateway, PaymentProviderName

if TYPE_CHECKING:
    from paygate.core.settings import Settings

logger = structlog.get_logger(__name__)

ProviderKey = Union[str, PaymentProviderName]


def _provider_name(provider: ProviderKey) -> PaymentProviderName:
    if isinstance(provider, PaymentProviderName):
        return provider
    try:
        return PaymentProviderName(str(provider).strip().lower())
    except ValueError:
        raise UnknownProvider(str(provider))


class GatewayFactory:
    """
    Holds one adapter per provider and picks one for a checkout.

    Adapters are built once at startup and injected here, so tests can swap
    any of them for a fake without touching module state.
    """

    def __init__(self, gateways: Mapping[PaymentProviderName, PaymentGateway]):
        self._gateways: Dict[PaymentProviderName, PaymentGateway] = dict(gateways)

    def get(self, provider: ProviderKey) -> PaymentGateway:
        name = _provider_name(provider)
        gateway = self._gateways.get(name)
        if gateway is None:
            raise UnknownProvider(name.value)
        return gateway

    def is_provider_configured(self, provider: ProviderKey) -> bool:
        try:
            return self.get(provider).is_configured()
        except UnknownProvider:
            return False

    def configured_gateways(self) -> List[PaymentProviderName]:
        return [name for name, gw in self._gateways.items() if gw.is_configured()]

    def resolve(self, provider: Optional[ProviderKey] = None, country_code: Optional[str] = None) -> PaymentGateway:
        # an explicit choice is honoured even when unconfigured; the caller reports it
        if provider:
            return self.get(provider)
        for name in preferred_gateways(country_code):
            if self.is_provider_configured(name):
                return self.get(name)
        logger.warning("no_configured_gateway_for_country", country_code=country_code)
        return self.get(DEFAULT_PROVIDER)

    def all(self) -> List[PaymentGateway]:
        return list(self._gateways.values())


def build_gateways(settings: "Settings") -> Dict[PaymentProviderName, PaymentGateway]:
    from paygate.payments.paddle_provider import PaddlePaymentProvider
    from paygate.payments.paymob_provider import PaymobPaymentProvider
    from paygate.payments.paytabs_provider import PayTabsPaymentProvider
    from paygate.payments.stripe_provider import StripePaymentProvider

    return {
        PaymentProviderName.STRIPE: StripePaymentProvider(settings),
        PaymentProviderName.PAYMOB: PaymobPaymentProvider(settings),
        PaymentProviderName.PAYTABS: PayTabsPaymentProvider(settings),
        PaymentProviderName.PADDLE: PaddlePaymentProvider(settings),
    }
