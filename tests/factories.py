from app.config.settings import Settings
from app.models.schemas import Product

BUSINESS_ID = "biz-1"
IG_ACCOUNT = "17841400000000001"
WA_PHONE_ID = "109876543210"

CATALOG = [
    Product(id="p-shirt", business_id=BUSINESS_ID, name="Cotton Shirt", category="Shirts",
            description="Breathable cotton shirt for everyday wear", tags=["casual"], price=499,
            media_refs=["https://cdn.example.com/cotton-shirt.jpg"], position=0),
    Product(id="p-jeans", business_id=BUSINESS_ID, name="Denim Jeans", category="Pants",
            description="Slim fit blue denim", tags=["denim", "blue"], price=1299, position=1),
    Product(id="p-linen", business_id=BUSINESS_ID, name="Linen Shirt", category="Shirts",
            description="Light summer linen", tags=["summer"], price=799, position=2),
    Product(id="p-saree", business_id=BUSINESS_ID, name="Silk Saree", category="Sarees",
            description="Handwoven Kerala silk", tags=["festive", "kerala"], price=2499, position=3),
    Product(id="p-old", business_id=BUSINESS_ID, name="Wool Shirt", category="Shirts", price=999,
            is_active=False, position=4),
]


def make_settings(**overrides) -> Settings:
    values = dict(
        mongo_uri="mongodb://localhost:27017/dm_assistant_test",
        webhook_verify_token="verify-me",
        meta_app_secret=None,
        openai_api_key=None,
        admin_token="admin-secret",
        default_business_id=None,
        business_upi_id="fallback@upi",
        require_contact_phone=False,
        payment_auto_verify=True,
        ai_timeout_seconds=0.2,
        vision_timeout_seconds=0.2,
        event_budget_seconds=5.0,
    )
    values.update(overrides)
    return Settings(**values)


def ig_event(sender="cust-1", text="", mid=None, attachments=None, is_echo=False, recipient=IG_ACCOUNT,
             timestamp=1700000000000):
    message = {"text": text}
    if mid:
        message["mid"] = mid
    if attachments:
        message["attachments"] = attachments
    if is_echo:
        message["is_echo"] = True
    return {"sender": {"id": sender}, "recipient": {"id": recipient}, "timestamp": timestamp, "message": message}


def ig_delivery(*events):
    return {"object": "instagram", "entry": [{"id": IG_ACCOUNT, "time": 1700000000000, "messaging": list(events)}]}


def image_attachment(url="https://lookaside.fbsbx.com/ig_messaging_cdn/?asset_id=1"):
    return [{"type": "image", "payload": {"url": url}}]
