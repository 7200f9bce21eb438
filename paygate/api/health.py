# paygate/api/health.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from paygate.core.deps import get_gateway_factory
from paygate.core.settings import settings
from paygate.payments.factory import GatewayFactory

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health(factory: GatewayFactory = Depends(get_gateway_factory)):
    return {
        "status": "ok",
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "configuredGateways": [p.value for p in factory.configured_gateways()],
    }
