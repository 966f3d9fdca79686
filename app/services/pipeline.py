from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.config.settings import Settings
from app.models.events import EventOutcome, InboundEvent, Reply
from app.models.schemas import (
    Business,
    Customer,
    Intent,
    Message,
    MessageDirection,
    Order,
    OrderStatus,
    Platform,
    Verdict,
)
from app.services.ai import AIService
from app.services.classifier import classify, extract_post_shortcode, extract_quantity, has_order_intent
from app.services.matcher import MatchContext, ProductMatch, ProductMatcher
from app.services.messaging import GraphClient, Outbox
from app.services.order_flow import OrderFlowController, customer_state
from app.services.payments import PaymentVerifier
from app.services.responder import (
    ResponseGenerator,
    get_template,
    history_for_ai,
    order_values,
    select_template,
)
from app.services.store import (
    BusinessDirectory,
    CatalogAccessor,
    CustomerDirectory,
    MessageStore,
    OrderRepository,
)
from app.utils.errors import DuplicateDelivery, Err, ErrorKind, Ok, Result, UnresolvableCustomer
from app.utils.locks import customer_locks
from app.utils.text import detect_language, extract_phone

logger = logging.getLogger(__name__)


def order_state(customer: Customer, order: Optional[Order]) -> str:
    """Customer-level state, with needs_review split out of awaiting_payment."""
    if order is not None and OrderStatus(order.status) == OrderStatus.awaiting_payment and order.needs_review:
        return "needs_review"
    return customer_state(customer, order)


def lock_key(platform: Platform, sender_id: str):
    return (Platform(platform).value, sender_id)


class MessagePipeline:
    """Runs one inbound event end to end: dedup, customer, classify, route, reply."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        settings: Settings,
        ai_service: Optional[AIService] = None,
        graph: Optional[GraphClient] = None,
        outbox: Optional[Outbox] = None,
    ):
        self.db = db
        self.settings = settings
        self.ai = ai_service
        self.graph = graph or GraphClient(settings)
        self.outbox = outbox or Outbox(settings)

        self.businesses = BusinessDirectory(db)
        self.customers = CustomerDirectory(db)
        self.messages = MessageStore(db)
        self.catalog = CatalogAccessor(db)
        self.orders = OrderRepository(db)

        self.flow = OrderFlowController(self.orders, self.customers, settings)
        self.payments = PaymentVerifier(self.orders, self.flow, settings, graph=self.graph, ai_service=ai_service)
        self.matcher = ProductMatcher(self.catalog, self.graph, min_score=settings.match_min_score)
        self.responder = ResponseGenerator(settings, ai_service)

    # ---- resolution ----

    def fallback_business(self) -> Optional[Business]:
        if not self.settings.default_business_id:
            return None
        return Business(
            id=self.settings.default_business_id,
            name=self.settings.default_business_name,
            upi_id=self.settings.business_upi_id,
            qr_image_url=self.settings.payment_qr_url,
            default_language=self.settings.default_language,
        )

    async def resolve_business(self, account_id: Optional[str]) -> Optional[Business]:
        business = await self.businesses.resolve(account_id, self.settings.default_business_id)
        return business or self.fallback_business()

    async def business_by_id(self, business_id: str) -> Optional[Business]:
        business = await self.businesses.resolve(None, business_id)
        if business is None and business_id == self.settings.default_business_id:
            return self.fallback_business()
        return business

    async def resolve_customer(self, business: Business, event: InboundEvent) -> Customer:
        existing = await self.customers.find(business.id, event.platform, event.sender_id)
        display_name = None
        if existing is None:
            try:
                display_name = await self.graph.fetch_profile(event.platform, event.sender_id, business)
            except Exception as e:
                err = UnresolvableCustomer(event.sender_id)
                logger.warning("%s: profile lookup failed, using synthetic name: %s", err.kind.value, e)
        return await self.customers.resolve(business.id, event.platform, event.sender_id, display_name)

    def upi_for(self, business: Business) -> str:
        return business.upi_id or self.settings.business_upi_id

    def qr_for(self, business: Business) -> Optional[str]:
        return business.qr_image_url or self.settings.payment_qr_url

    async def choose_language(self, customer: Customer, business: Business, text: str) -> str:
        detected = detect_language(text)
        if detected != "english":
            if detected != customer.preferred_language:
                await self.customers.update(customer.id, {"preferred_language": detected})
                customer.preferred_language = detected
            return detected
        return customer.preferred_language or business.default_language or self.settings.default_language

    # ---- entry points ----

    async def process_event(self, event: InboundEvent, deadline: Optional[float] = None) -> Result:
        """Handle a single inbound event. Never raises for per-event failures.

        ``deadline`` is an event-loop time shared by every event of one
        delivery; whatever is left of it when routing starts caps the event
        budget.
        """
        if event.is_echo:
            return Ok(EventOutcome(dedup_key=event.dedup_key, status="echo"))
        async with customer_locks.hold(lock_key(event.platform, event.sender_id)):
            business = await self.resolve_business(event.recipient_id)
            if business is None:
                logger.warning("no business for %s account %s; event dropped", event.platform.value, event.recipient_id)
                return Err(ErrorKind.unroutable, event.recipient_id)
            return await self._process(business, event, deadline)

    async def _process(self, business: Business, event: InboundEvent, deadline: Optional[float] = None) -> Result:
        if await self.messages.seen(event.platform, event.dedup_key):
            logger.info("duplicate delivery %s ignored", event.dedup_key)
            return Ok(EventOutcome(dedup_key=event.dedup_key, status="duplicate"))

        customer = await self.resolve_customer(business, event)
        order = await self.orders.active_for(customer.id)
        awaiting = order is not None and OrderStatus(order.status) == OrderStatus.awaiting_payment
        intent = classify(event.text, event.attachment_types, awaiting)

        incoming = Message(
            customer_id=customer.id,
            business_id=business.id,
            direction=MessageDirection.incoming,
            platform=event.platform,
            content=event.text,
            category=intent.value,
            external_message_id=event.external_message_id,
            dedup_key=event.dedup_key,
            attachment_ref=event.attachments[0].url if event.attachments else None,
        )
        try:
            await self.messages.insert_incoming(incoming)
        except DuplicateDelivery:
            logger.info("duplicate delivery %s lost the insert race", event.dedup_key)
            return Ok(EventOutcome(dedup_key=event.dedup_key, status="duplicate"))

        # From here on the message is stored, so every path must end in a reply
        fallback_language = business.default_language or self.settings.default_language
        budget = self.settings.event_budget_seconds
        if deadline is not None:
            budget = max(0.0, min(budget, deadline - asyncio.get_running_loop().time()))
        try:
            reply = await asyncio.wait_for(
                self.answer(business, customer, order, intent, event, incoming),
                timeout=budget,
            )
        except asyncio.TimeoutError:
            logger.warning("event %s exceeded its %.2fs budget, sending fallback", event.dedup_key, budget)
            reply = self.responder.apology(customer.preferred_language or fallback_language)
        except Exception:
            logger.exception("event %s failed while routing", event.dedup_key)
            reply = self.responder.apology(customer.preferred_language or fallback_language)

        sent = await self.deliver(business, customer, reply, account_id=event.recipient_id)
        if reply.product_ids:
            try:
                await self.customers.remember_products(customer.id, reply.product_ids)
            except Exception:
                logger.exception("could not remember products shown to %s", customer.id)
        logger.info(
            "business=%s platform=%s sender=%s category=%s template=%s ai_used=%s sent=%s",
            business.id, event.platform.value, event.sender_id, intent.value, reply.template, reply.ai_used, sent,
        )
        return Ok(EventOutcome(dedup_key=event.dedup_key, status="processed", category=intent.value, reply_sent=sent))

    async def deliver(self, business: Business, customer: Customer, reply: Reply,
                      account_id: Optional[str] = None) -> bool:
        """Send once and store the outbound record whatever the result."""
        sent = await self.outbox.send(
            business, customer.platform, customer.platform_user_id, reply.text, reply.media_url, account_id=account_id
        )
        if not sent:
            logger.warning("%s: reply to %s not delivered", ErrorKind.outbound_send_failure.value,
                           customer.platform_user_id)
        outgoing = Message(
            customer_id=customer.id,
            business_id=business.id,
            direction=MessageDirection.outgoing,
            platform=customer.platform,
            content=reply.text,
            category=reply.category,
            ai_used=reply.ai_used,
            template=reply.template,
            send_ok=sent,
        )
        try:
            await self.messages.append(outgoing)
        except Exception:
            # Already sent; never raise past this point
            logger.exception("outbound message to %s sent=%s but not stored", customer.platform_user_id, sent)
        return sent

    async def answer(self, business: Business, customer: Customer, order: Optional[Order], intent: Intent,
                     event: InboundEvent, incoming: Message) -> Reply:
        language = await self.choose_language(customer, business, event.text)
        return await self.route(business, customer, order, intent, event, language, incoming)

    # ---- routing ----

    async def route(
        self,
        business: Business,
        customer: Customer,
        order: Optional[Order],
        intent: Intent,
        event: InboundEvent,
        language: str,
        incoming: Message,
    ) -> Reply:
        state = order_state(customer, order)

        if intent == Intent.payment_screenshot:
            return await self.handle_screenshot(business, customer, order, event, language)
        if intent == Intent.cancel_request:
            return await self.handle_cancel(business, customer, order, language)
        if intent == Intent.payment_inquiry:
            template = select_template(intent, state, language)
            media = self.qr_for(business) if state == "awaiting_payment" else None
            return self.responder.render(template, media_url=media, **order_values(order, self.upi_for(business)))

        if order is not None and OrderStatus(order.status) == OrderStatus.pending and extract_phone(event.text):
            captured = await self.flow.capture_contact(order, event.text)
            if captured.ok:
                return await self.advance_and_reply(business, customer, captured.value, language)

        catalog = await self.catalog.active_products(business.id)
        context = MatchContext(
            business_name=business.name,
            language=language,
            recent_product_ids=customer.last_product_ids,
            use_history=intent == Intent.order_inquiry,
        )
        post_ref = extract_post_shortcode(event.text) if intent == Intent.post_inquiry else None
        matches = await self.matcher.match(event.text, catalog, context, post_ref=post_ref, business=business)

        wants_order = intent == Intent.order_inquiry or (intent == Intent.post_inquiry and has_order_intent(event.text))
        if matches and wants_order:
            return await self.handle_order(business, customer, order, matches, event, language)
        if matches:
            return self.responder.products(matches, language, reminder=self.reminder(business, order, state, language))

        logger.info("%s for %s, answering with AI", ErrorKind.no_product_match.value, customer.id)
        ai_context = await self.ai_context(business, customer, catalog, language, incoming)
        category = "order" if intent == Intent.order_inquiry else "inquiry"
        return await self.responder.ai_reply(event.text or "[image]", ai_context, category=category)

    def reminder(self, business: Business, order: Optional[Order], state: str, language: str) -> Optional[str]:
        if state != "awaiting_payment":
            return None
        return get_template("active_order_reminder", language).render(**order_values(order, self.upi_for(business)))

    async def ai_context(self, business: Business, customer: Customer, catalog: List, language: str,
                         incoming: Message) -> Dict[str, Any]:
        history = await self.messages.recent(customer.id, self.settings.history_window)
        return {
            "business_id": business.id,
            "business_name": business.name,
            "product_names": [p.name for p in catalog[:20]],
            "language": language,
            "recent_history": history_for_ai([m for m in history if m.id != incoming.id]),
        }

    async def handle_order(
        self,
        business: Business,
        customer: Customer,
        order: Optional[Order],
        matches: List[ProductMatch],
        event: InboundEvent,
        language: str,
    ) -> Reply:
        if order is not None:
            if OrderStatus(order.status) == OrderStatus.pending:
                return await self.advance_and_reply(business, customer, order, language)
            # Active order stays untouched; answer informationally
            return self.responder.products(
                matches, language, reminder=self.reminder(business, order, order_state(customer, order), language)
            )

        started = await self.flow.start_order(customer, matches, extract_quantity(event.text))
        if not started.ok:
            if started.error == ErrorKind.active_order_exists and started.value is not None:
                existing = started.value
                return self.responder.products(
                    matches, language,
                    reminder=self.reminder(business, existing, order_state(customer, existing), language),
                )
            logger.warning("order not started for %s: %s", customer.id, started.error.value)
            return self.responder.apology(language)
        return await self.advance_and_reply(business, customer, started.value, language)

    async def advance_and_reply(self, business: Business, customer: Customer, order: Order, language: str) -> Reply:
        values = order_values(order, self.upi_for(business))
        advanced = await self.flow.advance(order, customer)
        if advanced.ok:
            values = order_values(advanced.value, self.upi_for(business))
            template = select_template(Intent.order_inquiry, "awaiting_payment", language, outcome="order_created")
            return self.responder.render(template, media_url=self.qr_for(business), **values)
        if advanced.error == ErrorKind.missing_contact:
            template = select_template(Intent.order_inquiry, "pending", language, outcome="contact_needed")
            return self.responder.render(template, **values)
        logger.warning("order %s not advanced: %s", order.id, advanced.error.value)
        return self.responder.apology(language)

    async def handle_screenshot(self, business: Business, customer: Customer, order: Order,
                                event: InboundEvent, language: str) -> Reply:
        image = event.first_image
        result = await self.payments.verify(order, customer, image.url if image else None, business)
        if not result.ok:
            logger.warning("screenshot for order %s not applied: %s", order.id, result.error.value)
            return self.responder.apology(language)
        attempt, order = result.value
        template = select_template(Intent.payment_screenshot, order_state(customer, order), language,
                                   outcome=Verdict(attempt.verdict).value)
        return self.responder.render(template, **order_values(order, self.upi_for(business)))

    async def handle_cancel(self, business: Business, customer: Customer, order: Optional[Order],
                            language: str) -> Reply:
        if order is None:
            template = select_template(Intent.cancel_request, order_state(customer, None), language)
            return self.responder.render(template, **order_values(None, self.upi_for(business)))
        result = await self.flow.cancel(order.id, reason="customer")
        if not result.ok:
            logger.warning("order %s not cancelled: %s", order.id, result.error.value)
            return self.responder.apology(language)
        template = select_template(Intent.cancel_request, "none", language, outcome="cancelled")
        return self.responder.render(template, **order_values(result.value, self.upi_for(business)))

    # ---- operator actions ----

    async def _notify(self, order: Order, outcome: str) -> Optional[bool]:
        customer = await self.customers.get(order.customer_id)
        business = await self.business_by_id(order.business_id)
        if customer is None or business is None:
            logger.warning("order %s: customer or business missing, no notification", order.id)
            return None
        language = customer.preferred_language or business.default_language or self.settings.default_language
        template = select_template(Intent.general_inquiry, order_state(customer, order), language, outcome=outcome)
        reply = self.responder.render(template, **order_values(order, self.upi_for(business)))
        return await self.deliver(business, customer, reply)

    async def review_payment(self, order_id: str, verdict: Verdict, reason: Optional[str] = None) -> Result:
        """Apply a manual verdict and tell the customer."""
        existing = await self.orders.get(order_id)
        if existing is None:
            return Err(ErrorKind.not_found, order_id)
        customer = await self.customers.get(existing.customer_id)
        key = lock_key(customer.platform, customer.platform_user_id) if customer else ("order", order_id)
        async with customer_locks.hold(key):
            result = await self.payments.review(order_id, verdict, reason=reason)
            if not result.ok:
                return result
            attempt, order = result.value
            await self._notify(order, Verdict(attempt.verdict).value)
            return Ok(order)

    async def cancel_order(self, order_id: str, reason: str = "timeout") -> Result:
        """Idempotent cancel; the customer is only told the first time."""
        existing = await self.orders.get(order_id)
        if existing is None:
            return Err(ErrorKind.not_found, order_id)
        customer = await self.customers.get(existing.customer_id)
        key = lock_key(customer.platform, customer.platform_user_id) if customer else ("order", order_id)
        async with customer_locks.hold(key):
            was_active = (await self.orders.get(order_id)).active
            result = await self.flow.cancel(order_id, reason=reason)
            if result.ok and was_active:
                await self._notify(result.value, "cancelled")
            return result
