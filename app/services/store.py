from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.models.schemas import (
    ACTIVE_STATUSES,
    Business,
    Customer,
    Message,
    Order,
    OrderStatus,
    PaymentAttempt,
    Platform,
    PostMapping,
    Product,
)
from app.utils.errors import DuplicateDelivery

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_doc(model) -> Dict[str, Any]:
    data = model.model_dump(exclude_none=True)
    data["_id"] = data.pop("id")
    for key, value in data.items():
        if isinstance(value, Enum):
            data[key] = value.value
    return data


def from_doc(model_cls, doc: Optional[Dict[str, Any]]):
    if not doc:
        return None
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model_cls(**data)


async def read_with_retry(fn: Callable[[], Awaitable[T]], backoff: float = 0.2) -> T:
    """Idempotent reads get exactly one retry after a short backoff."""
    try:
        return await fn()
    except (PyMongoError, asyncio.TimeoutError) as e:
        logger.warning("read failed, retrying once: %s", e)
        await asyncio.sleep(backoff)
        return await fn()


class BusinessDirectory:
    def __init__(self, db):
        self.db = db

    async def resolve(self, account_id: Optional[str], default_business_id: Optional[str] = None) -> Optional[Business]:
        doc = None
        if account_id:
            doc = await self.db.businesses.find_one({"platform_account_ids": account_id, "is_active": True})
        if not doc and default_business_id:
            doc = await self.db.businesses.find_one({"_id": default_business_id})
        return from_doc(Business, doc)

    async def save(self, business: Business) -> Business:
        doc = to_doc(business)
        await self.db.businesses.update_one({"_id": doc["_id"]}, {"$set": doc}, upsert=True)
        return business


class CustomerDirectory:
    def __init__(self, db):
        self.db = db

    async def get(self, customer_id: str) -> Optional[Customer]:
        return from_doc(Customer, await self.db.customers.find_one({"_id": customer_id}))

    async def find(self, business_id: str, platform: Platform, platform_user_id: str) -> Optional[Customer]:
        doc = await self.db.customers.find_one(
            {"business_id": business_id, "platform": platform.value, "platform_user_id": platform_user_id}
        )
        return from_doc(Customer, doc)

    async def resolve(
        self,
        business_id: str,
        platform: Platform,
        platform_user_id: str,
        display_name: Optional[str] = None,
    ) -> Customer:
        """Atomic find-or-create keyed by the platform sender id."""
        now = datetime.utcnow()
        fresh = Customer(
            business_id=business_id,
            platform=platform,
            platform_user_id=platform_user_id,
            display_name=display_name or f"{platform.value.title()} Customer {platform_user_id}",
        )
        on_insert = to_doc(fresh)
        on_insert.pop("last_interaction_at", None)
        key = {"business_id": business_id, "platform": platform.value, "platform_user_id": platform_user_id}
        try:
            doc = await self.db.customers.find_one_and_update(
                key,
                {"$setOnInsert": on_insert, "$set": {"last_interaction_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost an upsert race with another process; the winner's record is authoritative
            doc = await self.db.customers.find_one_and_update(
                key, {"$set": {"last_interaction_at": now}}, return_document=ReturnDocument.AFTER
            )
        return from_doc(Customer, doc)

    async def update(self, customer_id: str, updates: Dict[str, Any]):
        await self.db.customers.update_one({"_id": customer_id}, {"$set": updates})

    async def remember_products(self, customer_id: str, product_ids: List[str]):
        if product_ids:
            await self.update(customer_id, {"last_product_ids": product_ids[:3]})

    async def record_purchase(self, customer_id: str, amount: float):
        await self.db.customers.update_one(
            {"_id": customer_id},
            {"$inc": {"total_orders": 1, "total_spent": amount}, "$set": {"active_order_id": None}},
        )


class MessageStore:
    def __init__(self, db):
        self.db = db

    async def seen(self, platform: Platform, dedup_key: str) -> bool:
        doc = await self.db.messages.find_one({"platform": platform.value, "dedup_key": dedup_key})
        return doc is not None

    async def insert_incoming(self, message: Message) -> Message:
        """Idempotent insert; raises DuplicateDelivery if the key was already stored."""
        try:
            await self.db.messages.insert_one(to_doc(message))
        except DuplicateKeyError as e:
            raise DuplicateDelivery(message.dedup_key) from e
        return message

    async def append(self, message: Message) -> Message:
        await self.db.messages.insert_one(to_doc(message))
        return message

    async def recent(self, customer_id: str, limit: int = 6) -> List[Message]:
        cursor = self.db.messages.find({"customer_id": customer_id}).sort("created_at", -1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [from_doc(Message, d) for d in reversed(docs)]


class CatalogAccessor:
    """Read-only view over a business's active products."""

    def __init__(self, db):
        self.db = db

    async def active_products(self, business_id: str) -> List[Product]:
        async def load():
            cursor = self.db.products.find({"business_id": business_id, "is_active": True}).sort("position", 1)
            return await cursor.to_list(length=1000)

        docs = await read_with_retry(load)
        return [from_doc(Product, d) for d in docs]

    async def post_products(self, business_id: str, shortcode: str) -> List[str]:
        doc = await self.db.post_mappings.find_one({"business_id": business_id, "shortcode": shortcode})
        if not doc:
            return []
        return PostMapping(**{k: v for k, v in doc.items() if k != "_id"}).product_ids


class OrderRepository:
    def __init__(self, db):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        return from_doc(Order, await self.db.orders.find_one({"_id": order_id}))

    async def active_for(self, customer_id: str) -> Optional[Order]:
        doc = await self.db.orders.find_one({"customer_id": customer_id, "active": True})
        return from_doc(Order, doc)

    async def create(self, order: Order) -> Order:
        """Raises DuplicateKeyError when the customer already has an active order."""
        await self.db.orders.insert_one(to_doc(order))
        return order

    async def transition(
        self,
        order_id: str,
        from_statuses,
        to_status: OrderStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        """Conditional status update; returns None if the order was not in from_statuses."""
        updates: Dict[str, Any] = {
            "status": to_status.value,
            "active": to_status.value in ACTIVE_STATUSES,
            "updated_at": datetime.utcnow(),
        }
        updates.update(extra or {})
        doc = await self.db.orders.find_one_and_update(
            {"_id": order_id, "status": {"$in": [s.value for s in from_statuses]}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        return from_doc(Order, doc)

    async def update(self, order_id: str, updates: Dict[str, Any]) -> Optional[Order]:
        updates = dict(updates, updated_at=datetime.utcnow())
        doc = await self.db.orders.find_one_and_update(
            {"_id": order_id}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
        return from_doc(Order, doc)

    async def list_orders(self, status: Optional[str] = None, limit: int = 50) -> List[Order]:
        criteria: Dict[str, Any] = {"status": status} if status else {}
        docs = await self.db.orders.find(criteria).sort("created_at", -1).limit(limit).to_list(length=limit)
        return [from_doc(Order, d) for d in docs]

    async def add_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt:
        await self.db.payment_attempts.insert_one(to_doc(attempt))
        return attempt

    async def attempts(self, order_id: str) -> List[PaymentAttempt]:
        docs = await self.db.payment_attempts.find({"order_id": order_id}).sort("verified_at", 1).to_list(length=100)
        return [from_doc(PaymentAttempt, d) for d in docs]

    async def get_attempt(self, attempt_id: str) -> Optional[PaymentAttempt]:
        return from_doc(PaymentAttempt, await self.db.payment_attempts.find_one({"_id": attempt_id}))
