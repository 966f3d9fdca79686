from datetime import datetime
from enum import Enum
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, Field


def new_id() -> str:
    return str(ObjectId())


class Platform(str, Enum):
    instagram = "instagram"
    whatsapp = "whatsapp"


class MessageDirection(str, Enum):
    incoming = "incoming"
    outgoing = "outgoing"


class Intent(str, Enum):
    post_inquiry = "post_inquiry"
    payment_screenshot = "payment_screenshot"
    payment_inquiry = "payment_inquiry"
    cancel_request = "cancel_request"
    order_inquiry = "order_inquiry"
    general_inquiry = "general_inquiry"


class OrderStatus(str, Enum):
    pending = "pending"
    awaiting_payment = "awaiting_payment"
    paid = "paid"
    cancelled = "cancelled"


ACTIVE_STATUSES = (OrderStatus.pending.value, OrderStatus.awaiting_payment.value)
TERMINAL_STATUSES = (OrderStatus.paid.value, OrderStatus.cancelled.value)


class Verdict(str, Enum):
    accepted = "accepted"
    rejected = "rejected"
    needs_review = "needs_review"


class Business(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    platform_account_ids: List[str] = Field(default_factory=list)
    upi_id: Optional[str] = None
    qr_image_url: Optional[str] = None
    access_token: Optional[str] = None
    default_language: Optional[str] = None
    is_active: bool = True


class Customer(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    platform: Platform
    platform_user_id: str
    display_name: str
    total_orders: int = 0
    total_spent: float = 0.0
    preferred_language: Optional[str] = None
    contact_phone: Optional[str] = None
    active_order_id: Optional[str] = None
    last_product_ids: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_interaction_at: datetime = Field(default_factory=datetime.utcnow)


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    customer_id: str
    business_id: str
    direction: MessageDirection
    platform: Platform
    content: str = ""
    category: Optional[str] = None
    external_message_id: Optional[str] = None
    dedup_key: Optional[str] = None
    attachment_ref: Optional[str] = None
    ai_used: bool = False
    template: Optional[str] = None
    send_ok: Optional[bool] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Product(BaseModel):
    id: str = Field(default_factory=new_id)
    business_id: str
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    price: float
    stock: Optional[int] = None
    media_refs: List[str] = Field(default_factory=list)
    is_active: bool = True
    position: int = 0


class PostMapping(BaseModel):
    business_id: str
    shortcode: str
    product_ids: List[str] = Field(default_factory=list)


class OrderItem(BaseModel):
    product_id: str
    name: str
    qty: int = 1
    price: float


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    customer_id: str
    business_id: str
    items: List[OrderItem] = Field(default_factory=list)
    total_amount: float = 0.0
    status: OrderStatus = OrderStatus.pending
    active: bool = True
    contact_phone: Optional[str] = None
    needs_review: bool = False
    payment_screenshot_ref: Optional[str] = None
    paid_attempt_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def item_summary(self) -> str:
        return ", ".join(f"{it.name} x{it.qty}" for it in self.items)


class PaymentAttempt(BaseModel):
    id: str = Field(default_factory=new_id)
    order_id: str
    customer_id: str
    image_ref: Optional[str] = None
    verdict: Verdict
    confidence: float = 0.0
    reason: Optional[str] = None
    source: str = "auto"
    verified_at: datetime = Field(default_factory=datetime.utcnow)
