# paygate/main.py
from __future__ import annotations
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from paygate.core.deps import engine, get_gateway_factory
from paygate.core.errors import PaymentError, payment_error_handler
from paygate.core.logger import bind_request, setup_logging
from paygate.core.security import mint_dev_token
from paygate.core.settings import settings
from paygate.persistence.base import Base
from paygate.api import (
    billing,
    checkout,
    health,
    payment_webhooks,
)

setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.DB_AUTO_CREATE:
        from paygate.persistence import models  # noqa: F401  registers tables
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    factory = get_gateway_factory()
    logger.info("startup", env=settings.ENV, configured_gateways=[p.value for p in factory.configured_gateways()])
    yield
    for gateway in factory.all():
        close = getattr(gateway, "aclose", None)
        if close is not None:
            await close()
    await engine.dispose()


app = FastAPI(title="Unified Payment Gateway", version="1.0.0", lifespan=lifespan)

# --- CORS ---
allow_origins = ["*"] if settings.CORS_ORIGINS == "*" else [o.strip() for o in settings.CORS_ORIGINS.split(",")]
allow_methods = ["*"] if settings.CORS_ALLOW_METHODS == "*" else [m.strip() for m in settings.CORS_ALLOW_METHODS.split(",")]
allow_headers = ["*"] if settings.CORS_ALLOW_HEADERS == "*" else [h.strip() for h in settings.CORS_ALLOW_HEADERS.split(",")]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=allow_methods,
    allow_headers=allow_headers,
)

@app.middleware("http")
async def request_context(request: Request, call_next):
    # X-Request-Id is echoed on every response
    rid = bind_request(request.method, request.url.path, request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response

# --- Errors ---
app.add_exception_handler(PaymentError, payment_error_handler)

# --- Routers ---
app.include_router(checkout.router)
app.include_router(payment_webhooks.router)
app.include_router(billing.router)
app.include_router(health.router)

# --- Dev-only token minting (for Postman) ---
if settings.DEV_MODE:
    from fastapi import APIRouter, Query
    dev_auth = APIRouter(prefix="/auth", tags=["Auth (dev)"])

    @dev_auth.get("/dev-token")
    def get_dev_token(
        sub: str = Query(default=None),
        email: str = Query(default=None),
        ttl: int = Query(default=3600, ge=60, le=86400),
    ):
        """
        Mint a short-lived JWT for local testing.
        """
        token = mint_dev_token(sub=sub, email=email, ttl_seconds=ttl)
        return {"token": token, "expiresIn": ttl}

    app.include_router(dev_auth)
