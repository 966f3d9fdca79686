import asyncio
import os

import pytest

os.environ.setdefault("MONGO_URI", "mongodb://localhost:27017/dm_assistant_test")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "verify-me")

from app.config.db import ensure_indexes, mongo  # noqa: E402
from app.config.settings import get_settings  # noqa: E402
from app.models.schemas import Business  # noqa: E402
from app.services.pipeline import MessagePipeline  # noqa: E402
from app.services.store import to_doc  # noqa: E402

from tests.factories import BUSINESS_ID, CATALOG, IG_ACCOUNT, WA_PHONE_ID, make_settings  # noqa: E402
from tests.fakes import FakeAI, FakeDatabase, FakeGraph, FakeOutbox  # noqa: E402


async def seed(db):
    await ensure_indexes(db)
    business = Business(id=BUSINESS_ID, name="Kochi Threads", platform_account_ids=[IG_ACCOUNT, WA_PHONE_ID],
                        upi_id="kochithreads@upi", qr_image_url="https://cdn.example.com/qr.png")
    await db.businesses.insert_one(to_doc(business))
    for product in CATALOG:
        await db.products.insert_one(to_doc(product))


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def db():
    fake = FakeDatabase()
    asyncio.run(seed(fake))
    return fake


@pytest.fixture
def outbox():
    return FakeOutbox()


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def fake_ai():
    return FakeAI(verification={"isValid": True, "amount": 499, "confidence": 95, "issues": []})


@pytest.fixture
def pipeline(db, settings, fake_ai, graph, outbox):
    return MessagePipeline(db, settings, ai_service=fake_ai, graph=graph, outbox=outbox)


@pytest.fixture
def client(db, settings, pipeline):
    from fastapi.testclient import TestClient

    from app.main import app
    from app.routers.webhook import get_pipeline

    previous = mongo.db
    mongo.db = db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()
    mongo.db = previous
