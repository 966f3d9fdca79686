import json

import aiohttp
import pytest

from app.config.settings import get_settings
from app.models.schemas import PostMapping
from app.utils.signature import compute_signature

from tests.factories import (
    BUSINESS_ID,
    WA_PHONE_ID,
    ig_delivery,
    ig_event,
    image_attachment,
    make_settings,
)


def deliver(client, *events):
    resp = client.post("/webhook", json=ig_delivery(*events))
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    return resp


def incoming(db):
    return [d for d in db.messages.docs if d["direction"] == "incoming"]


def outgoing(db):
    return [d for d in db.messages.docs if d["direction"] == "outgoing"]


def test_handshake_returns_challenge(client):
    resp = client.get(
        "/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"}
    )
    assert resp.status_code == 200
    assert resp.text == "1158201444"
    assert resp.headers["content-type"].startswith("text/plain")


def test_handshake_rejects_bad_token(client):
    resp = client.get("/webhook", params={"hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "1"})
    assert resp.status_code == 403
    resp = client.get("/webhook", params={"hub.mode": "unsubscribe", "hub.verify_token": "verify-me",
                                          "hub.challenge": "1"})
    assert resp.status_code == 403


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_product_question_gets_price(client, db, outbox):
    deliver(client, ig_event(text="do you have cotton shirts", mid="m-1"))
    assert len(outbox.sent) == 1
    assert "₹499" in outbox.sent[0]["text"]
    assert incoming(db)[0]["category"] == "general_inquiry"
    assert outgoing(db)[0]["template"] == "product_info"
    assert db.customers.docs[0]["last_product_ids"] == ["p-shirt", "p-linen"]


def test_order_then_screenshot_marks_paid(client, db, outbox):
    deliver(client, ig_event(text="do you have cotton shirts", mid="m-1"))
    deliver(client, ig_event(text="I want to order the cotton shirt", mid="m-2"))

    orders = db.orders.docs
    assert len(orders) == 1
    assert orders[0]["status"] == "awaiting_payment"
    assert orders[0]["total_amount"] == 499
    confirmation = outbox.sent[-1]
    assert "₹499" in confirmation["text"]
    assert "kochithreads@upi" in confirmation["text"]
    assert confirmation["media_url"] == "https://cdn.example.com/qr.png"

    deliver(client, ig_event(text="", mid="m-3", attachments=image_attachment()))
    order = db.orders.docs[0]
    assert order["status"] == "paid"
    assert order["active"] is False
    customer = db.customers.docs[0]
    assert customer["total_orders"] == 1
    assert customer["total_spent"] == 499
    assert "Payment Confirmed" in outbox.sent[-1]["text"]
    assert len(db.payment_attempts.docs) == 1


def test_redelivery_is_ignored(client, db, outbox):
    event = ig_event(text="do you have cotton shirts", mid="m-dup")
    deliver(client, event)
    deliver(client, event)
    deliver(client, event, event)
    assert len(incoming(db)) == 1
    assert len(outbox.sent) == 1


def test_echo_is_ignored(client, db, outbox):
    deliver(client, ig_event(text="Here's what we have for you:", mid="m-echo", is_echo=True))
    assert db.messages.docs == []
    assert db.customers.docs == []
    assert outbox.sent == []


def test_events_without_mid_dedup_on_sender_and_timestamp(client, db, outbox):
    deliver(client, ig_event(text="hi", timestamp=1))
    deliver(client, ig_event(text="hi", timestamp=1))
    deliver(client, ig_event(text="hi", timestamp=2))
    assert [d["dedup_key"] for d in incoming(db)] == ["cust-1:1", "cust-1:2"]
    assert len(outbox.sent) == 2


def test_malformed_bodies_are_acknowledged(client, outbox):
    resp = client.post("/webhook", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    resp = client.post("/webhook", json={"object": "page", "entry": [{"messaging": [{"postback": {}}]}]})
    assert resp.json() == {"status": "ok"}
    resp = client.post("/webhook", json={"object": "unknown"})
    assert resp.json() == {"status": "ok"}
    assert outbox.sent == []


def test_signature_is_checked_when_secret_configured(client, settings, outbox):
    secured = make_settings(meta_app_secret="app-secret")
    client.app.dependency_overrides[get_settings] = lambda: secured
    body = json.dumps(ig_delivery(ig_event(text="hi", mid="m-sig"))).encode()

    resp = client.post("/webhook", content=body, headers={"content-type": "application/json"})
    assert resp.status_code == 403
    resp = client.post("/webhook", content=body, headers={"content-type": "application/json",
                                                         "X-Hub-Signature-256": "sha256=deadbeef"})
    assert resp.status_code == 403
    assert outbox.sent == []

    good = compute_signature("app-secret", body)
    resp = client.post("/webhook", content=body, headers={"content-type": "application/json",
                                                         "X-Hub-Signature-256": good})
    assert resp.status_code == 200
    assert len(outbox.sent) == 1


def test_one_failing_event_does_not_block_the_rest(client, db, pipeline, outbox, monkeypatch):
    real_resolve = pipeline.customers.resolve

    async def flaky(business_id, platform, platform_user_id, display_name=None):
        if platform_user_id == "broken":
            raise RuntimeError("customer store down")
        return await real_resolve(business_id, platform, platform_user_id, display_name)

    monkeypatch.setattr(pipeline.customers, "resolve", flaky)
    deliver(
        client,
        ig_event(sender="broken", text="do you have cotton shirts", mid="m-a"),
        ig_event(sender="fine", text="do you have cotton shirts", mid="m-b"),
    )
    assert [s["recipient_id"] for s in outbox.sent] == ["fine"]


def test_malformed_event_is_skipped_alone(client, db, outbox):
    bad = ig_event(sender="cust-bad", text="hello", mid="m-bad")
    bad["message"]["attachments"] = ["oops"]
    deliver(client, ig_event(sender="cust-good", text="do you have cotton shirts", mid="m-good"), bad)
    assert [s["recipient_id"] for s in outbox.sent] == ["cust-good"]
    assert [d["dedup_key"] for d in incoming(db)] == ["m-good"]


def test_null_whatsapp_change_is_skipped_alone(client, outbox):
    valid = {"field": "messages", "value": {
        "metadata": {"phone_number_id": WA_PHONE_ID},
        "messages": [{"from": "919800000000", "id": "wamid.ok", "type": "text",
                      "text": {"body": "do you have cotton shirts"}}],
    }}
    payload = {"object": "whatsapp_business_account", "entry": [{"changes": [None, {"value": None}, valid]}]}
    assert client.post("/webhook", json=payload).json() == {"status": "ok"}
    assert [s["recipient_id"] for s in outbox.sent] == ["919800000000"]


@pytest.mark.parametrize("error", [aiohttp.ClientError("graph unavailable"), RuntimeError("unexpected payload")])
def test_profile_lookup_failure_uses_synthetic_name(client, db, graph, outbox, error):
    graph.profile_error = error
    deliver(client, ig_event(sender="4455", text="hi", mid="m-1"))
    assert db.customers.docs[0]["display_name"] == "Instagram Customer 4455"
    assert len(incoming(db)) == 1
    assert len(outbox.sent) == 1


def test_ai_timeout_still_answers(client, db, fake_ai, outbox):
    fake_ai.delay = 1.0
    deliver(client, ig_event(text="what are your shop timings", mid="m-1"))
    assert len(outbox.sent) == 1
    assert outgoing(db)[0]["template"] == "apology"
    assert outgoing(db)[0]["ai_used"] is False


def test_ai_answers_open_questions(client, db, fake_ai, outbox):
    deliver(client, ig_event(text="what are your shop timings", mid="m-1"))
    assert outbox.sent[0]["text"] == "Happy to help!"
    assert outgoing(db)[0]["ai_used"] is True
    context = fake_ai.prompts[0]["context"]
    assert context["business_name"] == "Kochi Threads"
    assert "Cotton Shirt" in context["product_names"]
    assert context["recent_history"] == []


def test_failed_send_is_recorded(client, db, outbox):
    outbox.ok = False
    deliver(client, ig_event(text="do you have cotton shirts", mid="m-1"))
    assert len(outbox.sent) == 1
    assert outgoing(db)[0]["send_ok"] is False


def test_unroutable_event_is_dropped(client, db, outbox):
    deliver(client, ig_event(text="hi", mid="m-1", recipient="some-other-page"))
    assert db.messages.docs == []
    assert outbox.sent == []


def test_two_order_messages_in_one_delivery_open_one_order(client, db, outbox):
    deliver(
        client,
        ig_event(text="I want to order the cotton shirt", mid="m-1"),
        ig_event(text="I want to order the denim jeans", mid="m-2"),
    )
    active = [o for o in db.orders.docs if o["active"]]
    assert len(active) == 1
    assert active[0]["items"][0]["product_id"] == "p-shirt"
    assert len(outbox.sent) == 2
    assert "Reminder" in outbox.sent[1]["text"]


def test_unrelated_inquiry_while_awaiting_payment(client, db, outbox):
    deliver(client, ig_event(text="I want to order the cotton shirt", mid="m-1"))
    before = dict(db.orders.docs[0])
    deliver(client, ig_event(text="do you have denim jeans", mid="m-2"))
    assert "Denim Jeans" in outbox.sent[-1]["text"]
    assert "Reminder" in outbox.sent[-1]["text"]
    assert db.orders.docs[0] == before


def test_payment_question_gets_instructions(client, db, outbox):
    deliver(client, ig_event(text="I want to order the cotton shirt", mid="m-1"))
    deliver(client, ig_event(text="how do I pay?", mid="m-2"))
    reply = outbox.sent[-1]
    assert "kochithreads@upi" in reply["text"]
    assert "₹499" in reply["text"]
    assert reply["media_url"] == "https://cdn.example.com/qr.png"


def test_customer_can_cancel(client, db, outbox):
    deliver(client, ig_event(text="I want to order the cotton shirt", mid="m-1"))
    deliver(client, ig_event(text="please cancel my order", mid="m-2"))
    assert db.orders.docs[0]["status"] == "cancelled"
    assert db.orders.docs[0]["cancel_reason"] == "customer"
    assert "cancelled" in outbox.sent[-1]["text"]
    deliver(client, ig_event(text="cancel", mid="m-3"))
    assert "open order" in outbox.sent[-1]["text"]


def test_history_lets_customer_order_it(client, db, outbox):
    deliver(client, ig_event(text="do you have denim jeans", mid="m-1"))
    deliver(client, ig_event(text="ok I want to order it", mid="m-2"))
    assert db.orders.docs[0]["items"][0]["product_id"] == "p-jeans"
    assert db.orders.docs[0]["total_amount"] == 1299


def test_manglish_customer_gets_manglish_reply(client, db, outbox):
    deliver(client, ig_event(text="silk saree undo? ethra aanu", mid="m-1"))
    assert "Ningalkku vendi" in outbox.sent[0]["text"]
    assert db.customers.docs[0]["preferred_language"] == "manglish"


def test_shared_post_resolves_to_mapped_product(client, db, outbox):
    db.post_mappings.docs.append(
        dict(PostMapping(business_id=BUSINESS_ID, shortcode="C3xYz", product_ids=["p-saree"]).model_dump(),
             _id="pm-1")
    )
    deliver(client, ig_event(text="https://www.instagram.com/p/C3xYz/", mid="m-1"))
    assert "Silk Saree" in outbox.sent[0]["text"]
    assert db.orders.docs == []

    deliver(client, ig_event(text="want to buy this https://www.instagram.com/p/C3xYz/", mid="m-2"))
    assert db.orders.docs[0]["items"][0]["product_id"] == "p-saree"


def test_whatsapp_delivery_shape(client, db, outbox):
    payload = {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "waba-1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "metadata": {"display_phone_number": "919000000000", "phone_number_id": WA_PHONE_ID},
                    "contacts": [{"profile": {"name": "Meera"}, "wa_id": "919800000000"}],
                    "messages": [{
                        "from": "919800000000",
                        "id": "wamid.HBgLOTE5ODAwMDAwMDAwFQIAEhgg",
                        "timestamp": "1700000000",
                        "type": "text",
                        "text": {"body": "do you have cotton shirts"},
                    }],
                },
            }],
        }],
    }
    assert client.post("/webhook", json=payload).json() == {"status": "ok"}
    assert outbox.sent[0]["recipient_id"] == "919800000000"
    assert outbox.sent[0]["account_id"] == WA_PHONE_ID
    assert db.customers.docs[0]["platform"] == "whatsapp"
    assert "₹499" in outbox.sent[0]["text"]
