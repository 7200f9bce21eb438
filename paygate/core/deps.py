# paygate/core/deps.py
from functools import lru_cache
from collections.abc import AsyncGenerator
from fastapi import Depends
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from paygate.core.settings import settings
from paygate.engine.checkout import CheckoutOrchestrator
from paygate.engine.reconciliation import ReconciliationService
from paygate.payments.factory import GatewayFactory, build_gateways
from paygate.persistence.event_store import DatabaseEventStore, InMemoryEventStore, ProcessedEventStore
from paygate.persistence.repo import PaymentRepo, SubscriptionRepo

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True, echo=settings.DB_ECHO)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

@lru_cache(maxsize=1)
def _gateway_factory_singleton() -> GatewayFactory:
    return GatewayFactory(build_gateways(settings))

def get_gateway_factory() -> GatewayFactory:
    # FastAPI calls this per request; adapters and their HTTP clients are built once
    return _gateway_factory_singleton()

@lru_cache(maxsize=1)
def _memory_event_store() -> InMemoryEventStore:
    return InMemoryEventStore()

def get_event_store(db: AsyncSession = Depends(get_db)) -> ProcessedEventStore:
    if settings.WEBHOOK_DEDUP_BACKEND == "memory":
        return _memory_event_store()
    return DatabaseEventStore(db)

def get_reconciler(db: AsyncSession = Depends(get_db)) -> ReconciliationService:
    return ReconciliationService(PaymentRepo(db), SubscriptionRepo(db))

def get_checkout_orchestrator(
    factory: GatewayFactory = Depends(get_gateway_factory),
    reconciler: ReconciliationService = Depends(get_reconciler),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(factory, reconciler, settings)
