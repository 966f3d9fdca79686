"""
Order state machine.

    none -> inquiry -> pending -> awaiting_payment -> paid
                                                   \\-> cancelled
    pending -> cancelled

``none`` and ``inquiry`` live on the customer (no order record yet). Every
transition on a stored order is a conditional update on its current status,
and a unique partial index keeps at most one active order per customer.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from app.config.settings import Settings
from app.models.schemas import (
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    Verdict,
)
from app.services.matcher import ProductMatch
from app.services.store import CustomerDirectory, OrderRepository
from app.utils.errors import Err, ErrorKind, Ok, Result
from app.utils.locks import shielded
from app.utils.text import extract_phone

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.awaiting_payment, OrderStatus.cancelled},
    OrderStatus.awaiting_payment: {OrderStatus.paid, OrderStatus.cancelled},
    OrderStatus.paid: set(),
    OrderStatus.cancelled: set(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(OrderStatus(current), set())


def customer_state(customer: Customer, active_order: Optional[Order]) -> str:
    if active_order is not None:
        return OrderStatus(active_order.status).value
    if customer.last_product_ids:
        return "inquiry"
    return "none"


class OrderFlowController:
    def __init__(self, orders: OrderRepository, customers: CustomerDirectory, settings: Settings):
        self.orders = orders
        self.customers = customers
        self.settings = settings

    def has_required_fields(self, order: Order, customer: Customer) -> bool:
        if not order.items:
            return False
        if self.settings.require_contact_phone:
            return bool(order.contact_phone or customer.contact_phone)
        # The sender id is a reachable contact on the channel itself
        return True

    @shielded
    async def start_order(self, customer: Customer, matches: List[ProductMatch], quantity: int = 1) -> Result:
        """none|inquiry -> pending. Creates the order from the best match."""
        if not matches:
            return Err(ErrorKind.no_product_match)
        product = matches[0].product
        qty = max(1, int(quantity))
        item = OrderItem(product_id=product.id, name=product.name, qty=qty, price=product.price)
        order = Order(
            customer_id=customer.id,
            business_id=customer.business_id,
            items=[item],
            total_amount=round(product.price * qty, 2),
            status=OrderStatus.pending,
            contact_phone=customer.contact_phone,
        )
        try:
            await self.orders.create(order)
        except DuplicateKeyError:
            existing = await self.orders.active_for(customer.id)
            return Err(ErrorKind.active_order_exists, "customer already has an active order", value=existing)
        await self.customers.update(customer.id, {"active_order_id": order.id})
        customer.active_order_id = order.id
        logger.info("order %s created for customer %s (%s)", order.id, customer.id, order.item_summary)
        return Ok(order)

    @shielded
    async def capture_contact(self, order: Order, text: Optional[str]) -> Result:
        phone = extract_phone(text)
        if not phone:
            return Err(ErrorKind.missing_contact)
        updated = await self.orders.update(order.id, {"contact_phone": phone})
        await self.customers.update(order.customer_id, {"contact_phone": phone})
        return Ok(updated)

    async def advance(self, order: Order, customer: Customer) -> Result:
        """pending -> awaiting_payment once item and contact are known."""
        if OrderStatus(order.status) == OrderStatus.awaiting_payment:
            return Ok(order)
        if not can_transition(order.status, OrderStatus.awaiting_payment):
            return Err(ErrorKind.illegal_transition, f"{order.status} -> awaiting_payment")
        if not self.has_required_fields(order, customer):
            return Err(ErrorKind.missing_contact, value=order)
        moved = await self.orders.transition(order.id, [OrderStatus.pending], OrderStatus.awaiting_payment)
        if moved is None:
            current = await self.orders.get(order.id)
            if current and OrderStatus(current.status) == OrderStatus.awaiting_payment:
                return Ok(current)
            return Err(ErrorKind.illegal_transition, "order moved concurrently", value=current)
        return Ok(moved)

    @shielded
    async def mark_paid(self, order: Order, attempt: PaymentAttempt) -> Result:
        """awaiting_payment -> paid; requires an accepted attempt for this order."""
        if attempt.order_id != order.id or Verdict(attempt.verdict) != Verdict.accepted:
            return Err(ErrorKind.illegal_transition, "paid requires an accepted attempt for this order")
        moved = await self.orders.transition(
            order.id,
            [OrderStatus.awaiting_payment],
            OrderStatus.paid,
            {"paid_attempt_id": attempt.id, "needs_review": False},
        )
        if moved is None:
            return Err(ErrorKind.illegal_transition, f"order {order.id} is not awaiting payment")
        await self.customers.record_purchase(order.customer_id, moved.total_amount)
        logger.info("order %s paid (attempt %s)", order.id, attempt.id)
        return Ok(moved)

    @shielded
    async def cancel(self, order_id: str, reason: str = "customer") -> Result:
        """Idempotent: cancelling a cancelled order succeeds without changes."""
        order = await self.orders.get(order_id)
        if order is None:
            return Err(ErrorKind.not_found, order_id)
        if OrderStatus(order.status) == OrderStatus.cancelled:
            return Ok(order)
        if not can_transition(order.status, OrderStatus.cancelled):
            return Err(ErrorKind.illegal_transition, f"{order.status} -> cancelled", value=order)
        moved = await self.orders.transition(
            order_id,
            [OrderStatus.pending, OrderStatus.awaiting_payment],
            OrderStatus.cancelled,
            {"cancel_reason": reason, "needs_review": False},
        )
        if moved is None:
            current = await self.orders.get(order_id)
            if current and OrderStatus(current.status) == OrderStatus.cancelled:
                return Ok(current)
            return Err(ErrorKind.illegal_transition, "order moved concurrently", value=current)
        await self.customers.update(order.customer_id, {"active_order_id": None})
        logger.info("order %s cancelled (%s)", order_id, reason)
        return Ok(moved)
