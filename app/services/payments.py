import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from app.config.settings import Settings
from app.models.schemas import (
    Business,
    Customer,
    Order,
    OrderStatus,
    PaymentAttempt,
    Platform,
    Verdict,
)
from app.services.order_flow import OrderFlowController
from app.services.store import OrderRepository
from app.utils.errors import Err, ErrorKind, Ok, PaymentVerificationTimeout, Result
from app.utils.locks import shielded

logger = logging.getLogger(__name__)


def map_verdict(analysis: Optional[Dict[str, Any]], accept_confidence: float) -> Tuple[Verdict, float, Optional[str]]:
    """Turn the vision model's JSON into (verdict, confidence, reason)."""
    if not analysis:
        return Verdict.needs_review, 0.0, "no analysis"
    try:
        confidence = float(analysis.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0.0
    issues = analysis.get("issues") or []
    reason = "; ".join(str(i) for i in issues) if isinstance(issues, list) else str(issues)
    is_valid = analysis.get("isValid")
    if confidence >= accept_confidence and is_valid is True:
        return Verdict.accepted, confidence, reason or None
    if confidence >= accept_confidence and is_valid is False:
        return Verdict.rejected, confidence, reason or "payment not valid"
    return Verdict.needs_review, confidence, reason or "low confidence"


class PaymentVerifier:
    """Records every screenshot as a PaymentAttempt and applies the verdict.

    The verdict itself comes from the vision collaborator (or a human through
    ``review``); this class only consumes it.
    """

    def __init__(self, orders: OrderRepository, flow: OrderFlowController, settings: Settings,
                 graph=None, ai_service=None):
        self.orders = orders
        self.flow = flow
        self.settings = settings
        self.graph = graph
        self.ai = ai_service

    async def _analyse(self, image_ref: str, order: Order, platform: Platform,
                       business: Optional[Business]) -> Optional[Dict[str, Any]]:
        if not image_ref or not self.settings.payment_auto_verify or self.ai is None or self.graph is None:
            return None
        upi_id = (business.upi_id if business else None) or self.settings.business_upi_id

        async def run():
            image_b64 = await self.graph.fetch_image_base64(image_ref, platform, business)
            return await self.ai.verify_payment_screenshot(image_b64, order.total_amount, upi_id)

        try:
            return await asyncio.wait_for(run(), timeout=self.settings.vision_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise PaymentVerificationTimeout(order.id) from e

    async def verify(self, order: Order, customer: Customer, image_ref: Optional[str],
                     business: Optional[Business] = None) -> Result:
        """Returns Ok((attempt, order)) with the order as it stands afterwards."""
        if OrderStatus(order.status) != OrderStatus.awaiting_payment:
            return Err(ErrorKind.illegal_transition, f"order {order.id} is {order.status}")

        try:
            analysis = await self._analyse(image_ref, order, customer.platform, business)
            verdict, confidence, reason = map_verdict(analysis, self.settings.payment_accept_confidence)
        except PaymentVerificationTimeout:
            logger.warning("payment verification timed out for order %s", order.id)
            verdict, confidence, reason = Verdict.needs_review, 0.0, "verification timed out"
        except (aiohttp.ClientError, KeyError, ValueError) as e:
            logger.warning("payment screenshot for order %s could not be fetched: %s", order.id, e)
            verdict, confidence, reason = Verdict.needs_review, 0.0, "image unavailable"

        attempt = PaymentAttempt(
            order_id=order.id,
            customer_id=customer.id,
            image_ref=image_ref,
            verdict=verdict,
            confidence=confidence,
            reason=reason,
        )
        logger.info("payment attempt %s for order %s: %s (%.0f)", attempt.id, order.id, verdict.value, confidence)
        return await self._record(order, attempt, {"payment_screenshot_ref": image_ref})

    @shielded
    async def _record(self, order: Order, attempt: PaymentAttempt, updates: Dict[str, Any]) -> Result:
        """Store the attempt and apply its verdict as one unit."""
        await self.orders.add_attempt(attempt)
        order = await self.orders.update(order.id, updates) or order
        return await self._apply(order, attempt)

    async def _apply(self, order: Order, attempt: PaymentAttempt) -> Result:
        if attempt.verdict == Verdict.accepted:
            paid = await self.flow.mark_paid(order, attempt)
            if not paid.ok:
                return Err(paid.error, paid.detail, value=(attempt, order))
            return Ok((attempt, paid.value))
        if attempt.verdict == Verdict.needs_review:
            order = await self.orders.update(order.id, {"needs_review": True}) or order
            return Ok((attempt, order))
        order = await self.orders.update(order.id, {"needs_review": False}) or order
        return Ok((attempt, order))

    async def review(self, order_id: str, verdict: Verdict, reason: Optional[str] = None) -> Result:
        """Manual verdict for an order waiting on review."""
        verdict = Verdict(verdict)
        if verdict == Verdict.needs_review:
            return Err(ErrorKind.illegal_transition, "a review must accept or reject")
        order = await self.orders.get(order_id)
        if order is None:
            return Err(ErrorKind.not_found, order_id)
        if OrderStatus(order.status) != OrderStatus.awaiting_payment:
            return Err(ErrorKind.illegal_transition, f"order {order_id} is {order.status}", value=(None, order))
        attempt = PaymentAttempt(
            order_id=order.id,
            customer_id=order.customer_id,
            image_ref=order.payment_screenshot_ref,
            verdict=verdict,
            confidence=100.0,
            reason=reason or "manual review",
            source="manual",
        )
        return await self._record(order, attempt, {"needs_review": False})
