from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from paygate.engine.reconciliation import PaymentEventData, ReconciliationService, SubscriptionEventData
from paygate.payments.types import PaymentStatus, Plan, SubscriptionStatus
from paygate.persistence.event_store import DatabaseEventStore, InMemoryEventStore
from paygate.persistence.models import Payment, Subscription
from paygate.persistence.repo import PaymentRepo, SubscriptionRepo


def _service(db):
    return ReconciliationService(PaymentRepo(db), SubscriptionRepo(db))


async def test_upsert_keeps_one_row_per_user_and_provider(db):
    svc = _service(db)
    for status in (SubscriptionStatus.INCOMPLETE, SubscriptionStatus.ACTIVE, SubscriptionStatus.ACTIVE):
        await svc.handle_subscription_event(
            SubscriptionEventData(user_id="user-1", provider="stripe", status=status, plan=Plan.PRO, provider_subscription_id="sub_1")
        )
    await svc.handle_subscription_event(
        SubscriptionEventData(user_id="user-1", provider="paddle", status=SubscriptionStatus.ACTIVE, plan=Plan.STARTER)
    )
    await db.commit()

    count = await db.scalar(select(func.count()).select_from(Subscription))
    assert count == 2
    sub = await SubscriptionRepo(db).get_for_user_provider("user-1", "stripe")
    assert (sub.plan, sub.status, sub.provider_subscription_id) == ("PRO", "ACTIVE", "sub_1")


async def test_upsert_leaves_unset_fields_alone(db):
    svc = _service(db)
    await svc.handle_subscription_event(
        SubscriptionEventData(user_id="user-2", provider="stripe", status=SubscriptionStatus.ACTIVE, plan=Plan.BUSINESS,
                              provider_customer_id="cus_2")
    )
    await svc.handle_subscription_event(
        SubscriptionEventData(user_id="user-2", provider="stripe", status=SubscriptionStatus.PAST_DUE)
    )
    sub = await SubscriptionRepo(db).get_for_user_provider("user-2", "stripe")
    assert (sub.plan, sub.status, sub.provider_customer_id) == ("BUSINESS", "PAST_DUE", "cus_2")


async def test_update_status_by_payment_and_order_id(db):
    svc = _service(db)
    await svc.record_payment(PaymentEventData(
        user_id="user-1", provider="paymob", amount=60000, currency="EGP",
        status=PaymentStatus.PENDING, provider_payment_id="tx_1", provider_order_id="ord_1",
    ))
    assert await svc.update_payment_status("tx_1", "stripe", PaymentStatus.COMPLETED) == 0
    assert await svc.update_order_payment_status("ord_1", "paymob", PaymentStatus.COMPLETED) == 1
    await db.commit()

    row = (await db.execute(select(Payment))).scalar_one()
    await db.refresh(row)
    assert row.status == "COMPLETED"


async def test_kiosk_lookup_against_database(db):
    svc = _service(db)
    now = datetime.now(tz=timezone.utc)
    await svc.create_kiosk_payment_record(
        user_id="user-1", amount=60000, currency="EGP", bill_reference="BILL9", expires_at=now + timedelta(hours=48)
    )
    await db.commit()
    found = await svc.get_kiosk_payment_by_bill_ref("BILL9")
    assert found is not None and found.amount == 60000


async def test_database_event_store_dedups(db):
    store = DatabaseEventStore(db)
    assert await store.record_if_new(provider="stripe", event_id="evt_1", event_type="invoice.payment_succeeded")
    assert not await store.record_if_new(provider="stripe", event_id="evt_1", event_type="invoice.payment_succeeded")
    assert await store.record_if_new(provider="paddle", event_id="evt_1", event_type="transaction.completed")


async def test_memory_event_store_release():
    store = InMemoryEventStore()
    assert await store.record_if_new(provider="stripe", event_id="evt_1", event_type="x")
    assert not await store.record_if_new(provider="stripe", event_id="evt_1", event_type="x")
    await store.release(provider="stripe", event_id="evt_1")
    assert await store.record_if_new(provider="stripe", event_id="evt_1", event_type="x")


async def test_memory_event_store_forgets_oldest_past_capacity():
    store = InMemoryEventStore(max_entries=2)
    for event_id in ("evt_1", "evt_2", "evt_3"):
        assert await store.record_if_new(provider="paymob", event_id=event_id, event_type="TRANSACTION")
    assert len(store._seen) == 2

    assert not await store.record_if_new(provider="paymob", event_id="evt_2", event_type="TRANSACTION")
    assert not await store.record_if_new(provider="paymob", event_id="evt_3", event_type="TRANSACTION")
    assert await store.record_if_new(provider="paymob", event_id="evt_1", event_type="TRANSACTION")
