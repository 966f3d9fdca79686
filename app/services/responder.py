"""
Reply selection.

Order-state templates always win over AI text. ``select_template`` is a pure
function of the intent, the customer's order state and the language (plus the
outcome of the step the pipeline just ran, when there was one). Product lists
are templated too; only open questions go to the AI model, and a static
apology covers any AI failure so every inbound message gets a reply.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from app.config.settings import Settings
from app.models.events import Reply
from app.models.schemas import Intent, Order
from app.utils.text import SUPPORTED_LANGUAGES, format_price

logger = logging.getLogger(__name__)

TEMPLATES: Dict[str, Dict[str, str]] = {
    "order_confirmed": {
        "english": (
            "🎉 *Order Confirmed!*\n\n"
            "📦 {items}\n"
            "💰 Total: *{amount}*\n"
            "🆔 Order ID: {order_ref}\n\n"
            "💳 *Payment Details:*\n"
            "• UPI ID: {upi_id}\n"
            "• Amount: {amount}\n\n"
            "📱 Please share the payment screenshot after paying!"
        ),
        "manglish": (
            "🎉 *Order Confirmed!*\n\n"
            "📦 {items}\n"
            "💰 Total: *{amount}*\n"
            "🆔 Order ID: {order_ref}\n\n"
            "💳 *Payment Details:*\n"
            "• UPI ID: {upi_id}\n"
            "• Amount: {amount}\n\n"
            "📱 Payment complete cheythal screenshot share cheyyamo!"
        ),
        "hinglish": (
            "🎉 *Order Confirmed!*\n\n"
            "📦 {items}\n"
            "💰 Total: *{amount}*\n"
            "🆔 Order ID: {order_ref}\n\n"
            "💳 *Payment Details:*\n"
            "• UPI ID: {upi_id}\n"
            "• Amount: {amount}\n\n"
            "📱 Payment karne ke baad screenshot bhej dijiye!"
        ),
    },
    "payment_instructions": {
        "english": (
            "💳 Please pay *{amount}* for order {order_ref} to UPI ID *{upi_id}*.\n"
            "📱 Share the payment screenshot here once done!"
        ),
        "manglish": (
            "💳 Order {order_ref}-nu *{amount}* UPI ID *{upi_id}*-lekku pay cheyyamo.\n"
            "📱 Payment kazhinjal screenshot ivide share cheyyu!"
        ),
        "hinglish": (
            "💳 Order {order_ref} ke liye *{amount}* UPI ID *{upi_id}* par pay kijiye.\n"
            "📱 Payment ke baad screenshot yahan bhej dijiye!"
        ),
    },
    "payment_no_order": {
        "english": "We accept UPI payments 💳 Tell me which product you'd like and I'll set up your order first!",
        "manglish": "UPI payment accept cheyyum 💳 Ethu product aanu vende ennu paranjal order set cheyyam!",
        "hinglish": "Hum UPI payment lete hain 💳 Pehle bataiye kaunsa product chahiye, main order bana deta hoon!",
    },
    "contact_request": {
        "english": "📞 Almost done! Please share a phone number we can reach you on for order {order_ref}.",
        "manglish": "📞 Order {order_ref}-nu vendi oru phone number share cheyyamo?",
        "hinglish": "📞 Order {order_ref} ke liye apna phone number bhej dijiye.",
    },
    "payment_confirmed": {
        "english": (
            "✅ *Payment Confirmed!*\n\n"
            "🆔 Order: {order_ref}\n"
            "💰 Amount: {amount}\n\n"
            "📦 We've started processing your order. Thank you for choosing us! 😊"
        ),
        "manglish": (
            "✅ *Payment Confirmed!*\n\n"
            "🆔 Order: {order_ref}\n"
            "💰 Amount: {amount}\n\n"
            "📦 Order processing start cheythu! Thank you! 😊"
        ),
        "hinglish": (
            "✅ *Payment Confirmed!*\n\n"
            "🆔 Order: {order_ref}\n"
            "💰 Amount: {amount}\n\n"
            "📦 Aapka order process ho raha hai. Dhanyavaad! 😊"
        ),
    },
    "payment_retry": {
        "english": (
            "❌ We couldn't confirm that payment for order {order_ref}. Please check the amount ({amount}) "
            "and UPI ID ({upi_id}) and send a clear screenshot again."
        ),
        "manglish": (
            "❌ Order {order_ref}-nte payment confirm aayilla. Amount ({amount}) um UPI ID ({upi_id}) um "
            "check cheythu clear screenshot veendum ayakkamo?"
        ),
        "hinglish": (
            "❌ Order {order_ref} ka payment confirm nahi hua. Amount ({amount}) aur UPI ID ({upi_id}) "
            "check karke saaf screenshot dobara bhejiye."
        ),
    },
    "payment_checking": {
        "english": "⏳ Thanks! We're still checking your payment for order {order_ref}. Our team will confirm shortly.",
        "manglish": "⏳ Thanks! Order {order_ref}-nte payment check cheyyunnu. Udane confirm cheyyam.",
        "hinglish": "⏳ Thanks! Order {order_ref} ka payment check ho raha hai. Jaldi confirm karenge.",
    },
    "payment_under_review": {
        "english": "⏳ Your payment for order {order_ref} is being reviewed by our team. We'll update you soon!",
        "manglish": "⏳ Order {order_ref}-nte payment team review cheyyunnu. Udane update tharam!",
        "hinglish": "⏳ Order {order_ref} ka payment team review kar rahi hai. Jaldi update denge!",
    },
    "order_cancelled": {
        "english": "🛑 Order {order_ref} has been cancelled. Let us know if you'd like anything else!",
        "manglish": "🛑 Order {order_ref} cancel cheythu. Vere enthenkilum venel parayu!",
        "hinglish": "🛑 Order {order_ref} cancel ho gaya. Kuch aur chahiye to bataiye!",
    },
    "nothing_to_cancel": {
        "english": "You don't have an open order right now. Anything I can help you find?",
        "manglish": "Ippo open order onnum illa. Enthenkilum help veno?",
        "hinglish": "Abhi koi open order nahi hai. Kuch dhoondhne mein madad karoon?",
    },
    "active_order_reminder": {
        "english": "📌 Reminder: order {order_ref} ({amount}) is waiting for payment to {upi_id}.",
        "manglish": "📌 Reminder: order {order_ref} ({amount}) payment {upi_id}-lekku pending aanu.",
        "hinglish": "📌 Reminder: order {order_ref} ({amount}) ka payment {upi_id} par pending hai.",
    },
    "apology": {
        "english": "Sorry, I couldn't get that just now 🙏 Our team will get back to you shortly.",
        "manglish": "Sorry, ippo manassilayilla 🙏 Njangalude team udane reply cheyyum.",
        "hinglish": "Sorry, abhi samajh nahi aaya 🙏 Hamari team jaldi reply karegi.",
    },
}

PRODUCT_HEADER = {
    "english": "Here's what we have for you:",
    "manglish": "Ningalkku vendi ithokke undu:",
    "hinglish": "Aapke liye yeh available hai:",
}
PRODUCT_FOOTER = {
    "english": "Reply \"order {name}\" to buy! 😊",
    "manglish": "Order cheyyan \"order {name}\" ennu ayakku! 😊",
    "hinglish": "Lene ke liye \"order {name}\" bhejiye! 😊",
}

TEMPLATE_CATEGORY = {
    "order_confirmed": "order",
    "contact_request": "order",
    "active_order_reminder": "order",
    "order_cancelled": "order",
    "nothing_to_cancel": "order",
    "payment_instructions": "payment",
    "payment_no_order": "payment",
    "payment_confirmed": "payment",
    "payment_retry": "payment",
    "payment_checking": "payment",
    "payment_under_review": "payment",
    "apology": "support",
}

# Step outcomes reported by the pipeline
OUTCOME_TEMPLATES = {
    "order_created": "order_confirmed",
    "contact_needed": "contact_request",
    "active_order_exists": "active_order_reminder",
    "accepted": "payment_confirmed",
    "rejected": "payment_retry",
    "needs_review": "payment_checking",
    "cancelled": "order_cancelled",
    "nothing_to_cancel": "nothing_to_cancel",
}


@dataclass(frozen=True)
class Template:
    name: str
    language: str
    body: str

    def render(self, **values: Any) -> str:
        return self.body.format(**values)


def resolve_language(language: Optional[str]) -> str:
    return language if language in SUPPORTED_LANGUAGES else "english"


def get_template(name: str, language: Optional[str]) -> Template:
    lang = resolve_language(language)
    variants = TEMPLATES[name]
    return Template(name=name, language=lang, body=variants.get(lang) or variants["english"])


def select_template(
    intent: Intent,
    order_state: str,
    language: Optional[str],
    outcome: Optional[str] = None,
) -> Optional[Template]:
    """Pick the state template for a message, or None to fall through to products/AI.

    ``order_state`` is one of none, inquiry, pending, awaiting_payment or
    needs_review.
    """
    if outcome in OUTCOME_TEMPLATES:
        return get_template(OUTCOME_TEMPLATES[outcome], language)
    intent = Intent(intent)
    if intent == Intent.payment_inquiry:
        if order_state == "needs_review":
            return get_template("payment_under_review", language)
        if order_state == "awaiting_payment":
            return get_template("payment_instructions", language)
        if order_state == "pending":
            return get_template("contact_request", language)
        return get_template("payment_no_order", language)
    if intent == Intent.cancel_request and order_state in ("none", "inquiry"):
        return get_template("nothing_to_cancel", language)
    return None


def order_values(order: Optional[Order], upi_id: str) -> Dict[str, str]:
    if order is None:
        return {"order_ref": "", "amount": "", "items": "", "upi_id": upi_id}
    return {
        "order_ref": order.id[-6:].upper(),
        "amount": format_price(order.total_amount),
        "items": order.item_summary,
        "upi_id": upi_id,
    }


class ResponseGenerator:
    def __init__(self, settings: Settings, ai_service=None):
        self.settings = settings
        self.ai = ai_service

    def render(self, template: Template, category: Optional[str] = None, media_url: Optional[str] = None,
               **values: Any) -> Reply:
        return Reply(
            text=template.render(**values),
            category=category or TEMPLATE_CATEGORY.get(template.name, "support"),
            media_url=media_url,
            template=template.name,
        )

    def products(self, matches: Sequence, language: Optional[str], reminder: Optional[str] = None) -> Reply:
        """Price list for the top matches, with an optional active-order reminder appended."""
        lang = resolve_language(language)
        shown = list(matches)[:3]
        lines = [PRODUCT_HEADER[lang], ""]
        for m in shown:
            p = m.product
            lines.append(f"• *{p.name}* - {format_price(p.price)}")
            if p.description:
                lines.append(f"  {p.description}")
        lines.append("")
        lines.append(PRODUCT_FOOTER[lang].format(name=shown[0].product.name.lower()))
        if reminder:
            lines.append("")
            lines.append(reminder)
        media = shown[0].product.media_refs[0] if shown[0].product.media_refs else None
        return Reply(
            text="\n".join(lines),
            category="inquiry",
            media_url=media,
            template="product_info",
            product_ids=[m.product.id for m in shown],
        )

    def apology(self, language: Optional[str]) -> Reply:
        return self.render(get_template("apology", language))

    async def ai_reply(self, text: str, context: Dict[str, Any], category: str = "support") -> Reply:
        """Free-text answer under the AI timeout; any failure becomes the apology template."""
        language = context.get("language")
        if self.ai is None:
            return self.apology(language)
        try:
            result = await asyncio.wait_for(
                self.ai.complete(text, dict(context, category=category)),
                timeout=self.settings.ai_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("AI reply timed out after %ss", self.settings.ai_timeout_seconds)
            return self.apology(language)
        if not result or not (result.get("response") or "").strip():
            logger.warning("AI reply unavailable, sending apology")
            return self.apology(language)
        return Reply(text=result["response"].strip(), category=result.get("category") or category, ai_used=True)


def history_for_ai(messages: List[Any]) -> List[Dict[str, str]]:
    turns = []
    for m in messages:
        role = "user" if getattr(m.direction, "value", m.direction) == "incoming" else "assistant"
        if m.content:
            turns.append({"role": role, "content": m.content})
    return turns
