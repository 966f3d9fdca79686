from __future__ import annotations

import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from fastapi import FastAPI
from pymongo import ASCENDING, DESCENDING

from app.config.settings import Settings

logger = logging.getLogger(__name__)


class Mongo:
    client: Optional[AsyncIOMotorClient] = None
    db: Optional[AsyncIOMotorDatabase] = None


mongo = Mongo()


async def ensure_indexes(db) -> None:
    """Create the unique indexes the pipeline relies on for idempotency."""
    await db.customers.create_index(
        [("business_id", ASCENDING), ("platform", ASCENDING), ("platform_user_id", ASCENDING)],
        unique=True,
        name="customer_identity",
    )
    # At most one stored inbound record per delivery key
    await db.messages.create_index(
        [("platform", ASCENDING), ("dedup_key", ASCENDING)],
        unique=True,
        partialFilterExpression={"dedup_key": {"$exists": True}},
        name="message_dedup",
    )
    await db.messages.create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)], name="message_history")
    # At most one pending/awaiting_payment order per customer
    await db.orders.create_index(
        [("customer_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"active": True},
        name="one_active_order",
    )
    await db.payment_attempts.create_index([("order_id", ASCENDING), ("verified_at", ASCENDING)], name="attempts_by_order")
    await db.products.create_index([("business_id", ASCENDING), ("position", ASCENDING)], name="catalog_order")
    await db.post_mappings.create_index(
        [("business_id", ASCENDING), ("shortcode", ASCENDING)], unique=True, name="post_shortcode"
    )
    await db.businesses.create_index([("platform_account_ids", ASCENDING)], name="business_routing")


async def connect_to_mongo(app: FastAPI, settings: Settings):
    mongo.client = AsyncIOMotorClient(settings.mongo_uri)
    mongo.db = mongo.client.get_default_database()
    app.state.mongo = mongo
    await ensure_indexes(mongo.db)
    logger.info("Mongo connected and indexes ensured")


async def close_mongo_connection(app: FastAPI):
    if mongo.client:
        mongo.client.close()
