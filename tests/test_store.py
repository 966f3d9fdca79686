import asyncio
from datetime import datetime

import pytest
from pymongo.errors import DuplicateKeyError

from app.models.schemas import Message, MessageDirection, Order, OrderStatus, Platform
from app.services.store import (
    BusinessDirectory,
    CatalogAccessor,
    CustomerDirectory,
    MessageStore,
    OrderRepository,
)
from app.utils.errors import DuplicateDelivery

from tests.factories import BUSINESS_ID, IG_ACCOUNT


def incoming(customer_id="c1", key="mid.1", minute=0):
    return Message(
        customer_id=customer_id,
        business_id=BUSINESS_ID,
        direction=MessageDirection.incoming,
        platform=Platform.instagram,
        content="hello",
        external_message_id=key,
        dedup_key=key,
        created_at=datetime(2024, 1, 1, 12, minute),
    )


def test_business_routing_by_account_id(db):
    directory = BusinessDirectory(db)
    business = asyncio.run(directory.resolve(IG_ACCOUNT))
    assert business.id == BUSINESS_ID
    assert asyncio.run(directory.resolve("unknown-page")) is None
    assert asyncio.run(directory.resolve("unknown-page", default_business_id=BUSINESS_ID)).id == BUSINESS_ID


def test_customer_resolve_is_find_or_create(db):
    customers = CustomerDirectory(db)
    first = asyncio.run(customers.resolve(BUSINESS_ID, Platform.instagram, "u-1", "Anu"))
    again = asyncio.run(customers.resolve(BUSINESS_ID, Platform.instagram, "u-1", "Someone Else"))
    assert first.id == again.id
    assert again.display_name == "Anu"
    assert len(db.customers.docs) == 1


def test_customer_gets_synthetic_name_without_profile(db):
    customer = asyncio.run(CustomerDirectory(db).resolve(BUSINESS_ID, Platform.whatsapp, "919800000000"))
    assert customer.display_name == "Whatsapp Customer 919800000000"
    assert customer.total_orders == 0


def test_concurrent_customer_resolves_create_one_record(db):
    customers = CustomerDirectory(db)

    async def both():
        return await asyncio.gather(
            customers.resolve(BUSINESS_ID, Platform.instagram, "u-2"),
            customers.resolve(BUSINESS_ID, Platform.instagram, "u-2"),
        )

    a, b = asyncio.run(both())
    assert a.id == b.id
    assert len(db.customers.docs) == 1


def test_incoming_message_is_stored_once(db):
    store = MessageStore(db)
    asyncio.run(store.insert_incoming(incoming()))
    assert asyncio.run(store.seen(Platform.instagram, "mid.1"))
    with pytest.raises(DuplicateDelivery):
        asyncio.run(store.insert_incoming(incoming()))
    assert len(db.messages.docs) == 1


def test_outgoing_messages_are_not_deduplicated(db):
    store = MessageStore(db)
    for _ in range(2):
        asyncio.run(store.append(Message(customer_id="c1", business_id=BUSINESS_ID,
                                         direction=MessageDirection.outgoing, platform=Platform.instagram,
                                         content="hi")))
    assert len(db.messages.docs) == 2


def test_recent_returns_oldest_first(db):
    store = MessageStore(db)
    for i in range(4):
        asyncio.run(store.insert_incoming(incoming(key=f"mid.{i}", minute=i)))
    recent = asyncio.run(store.recent("c1", limit=3))
    assert [m.dedup_key for m in recent] == ["mid.1", "mid.2", "mid.3"]


def test_catalog_skips_inactive_products_and_keeps_order(db):
    products = asyncio.run(CatalogAccessor(db).active_products(BUSINESS_ID))
    assert [p.id for p in products] == ["p-shirt", "p-jeans", "p-linen", "p-saree"]


def test_second_active_order_is_rejected(db):
    orders = OrderRepository(db)
    asyncio.run(orders.create(Order(customer_id="c1", business_id=BUSINESS_ID)))
    with pytest.raises(DuplicateKeyError):
        asyncio.run(orders.create(Order(customer_id="c1", business_id=BUSINESS_ID)))
    asyncio.run(orders.create(Order(customer_id="c2", business_id=BUSINESS_ID)))
    assert asyncio.run(db.orders.count_documents({"active": True})) == 2


def test_transition_is_conditional_on_status(db):
    orders = OrderRepository(db)
    order = asyncio.run(orders.create(Order(customer_id="c1", business_id=BUSINESS_ID)))
    moved = asyncio.run(orders.transition(order.id, [OrderStatus.pending], OrderStatus.awaiting_payment))
    assert moved.status == OrderStatus.awaiting_payment
    assert moved.active is True
    assert asyncio.run(orders.transition(order.id, [OrderStatus.pending], OrderStatus.cancelled)) is None
    done = asyncio.run(orders.transition(order.id, [OrderStatus.awaiting_payment], OrderStatus.cancelled))
    assert done.active is False
    # A terminal order frees the slot for a new one
    asyncio.run(orders.create(Order(customer_id="c1", business_id=BUSINESS_ID)))
