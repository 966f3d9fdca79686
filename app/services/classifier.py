"""
Rule-first intent classification.

Every inbound message is classified by walking ``RULES`` in priority order;
the first rule whose predicate fires decides the category. Only messages that
fall through to ``general_inquiry`` ever reach the AI model.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence

from app.models.schemas import Intent
from app.utils.text import normalize

POST_URL = re.compile(r"https?://(?:www\.)?instagram\.com/(?:p|reel|reels|tv)/([A-Za-z0-9_-]+)", re.IGNORECASE)


def _keyword_pattern(phrases: Iterable[str]) -> re.Pattern:
    ordered = sorted({p.strip().lower() for p in phrases if p.strip()}, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(p) for p in ordered) + r")\b")


PAYMENT_KEYWORDS = _keyword_pattern(
    [
        "how to pay", "where to pay", "payment", "pay", "upi", "upi id", "qr", "qr code", "pay link",
        "payment link", "payment method", "how to send money", "gpay", "google pay", "phonepe", "paytm",
        "account number", "bank details", "paisa kaise", "payment cheyyan", "engane pay",
    ]
)

CANCEL_KEYWORDS = _keyword_pattern(
    [
        "cancel", "cancel order", "cancel my order", "dont want", "don t want", "do not want",
        "no longer want", "venda", "cancel cheyyu", "cancel cheyyanam", "nahi chahiye", "cancel karo",
    ]
)

ORDER_KEYWORDS = _keyword_pattern(
    [
        "order", "buy", "purchase", "want to order", "want to buy", "i ll take", "ill take",
        "book", "add to cart", "checkout", "place an order",
        # Manglish
        "vanganam", "venam", "order cheyyanam", "buy cheyyanam", "tharanam", "edukkanam", "edukkam",
        # Hinglish
        "chahiye", "lena hai", "kharidna", "order karna", "mangwana",
    ]
)

_QUANTITY_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "onnu": 1, "randu": 2, "moonnu": 3, "naalu": 4, "anchu": 5,
    "ek": 1, "teen": 3, "paanch": 5,
}
_QUANTITY_DIGITS = re.compile(r"\b(\d{1,2})\s*(?:x|pcs|pieces|nos|qty|units?)?\b")


@dataclass(frozen=True)
class ClassifierInput:
    text: str
    attachment_types: Sequence[str] = ()
    has_awaiting_payment_order: bool = False

    @property
    def normalized(self) -> str:
        return normalize(self.text)

    @property
    def has_image(self) -> bool:
        return any(t in {"image", "photo"} for t in self.attachment_types)


@dataclass(frozen=True)
class Rule:
    intent: Intent
    test: Callable[[ClassifierInput], bool]


RULES: List[Rule] = [
    Rule(Intent.post_inquiry, lambda m: POST_URL.search(m.text or "") is not None),
    Rule(Intent.payment_screenshot, lambda m: m.has_image and m.has_awaiting_payment_order),
    Rule(Intent.payment_inquiry, lambda m: PAYMENT_KEYWORDS.search(m.normalized) is not None),
    Rule(Intent.cancel_request, lambda m: CANCEL_KEYWORDS.search(m.normalized) is not None),
    Rule(Intent.order_inquiry, lambda m: ORDER_KEYWORDS.search(m.normalized) is not None),
]


def classify(
    text: Optional[str],
    attachment_types: Sequence[str] = (),
    has_awaiting_payment_order: bool = False,
) -> Intent:
    message = ClassifierInput(text or "", tuple(t.lower() for t in attachment_types), has_awaiting_payment_order)
    for rule in RULES:
        if rule.test(message):
            return rule.intent
    return Intent.general_inquiry


def has_order_intent(text: Optional[str]) -> bool:
    return ORDER_KEYWORDS.search(normalize(text)) is not None


def extract_post_shortcode(text: Optional[str]) -> Optional[str]:
    m = POST_URL.search(text or "")
    return m.group(1) if m else None


def extract_quantity(text: Optional[str], default: int = 1) -> int:
    """Read a quantity from digits or number words.

    Numbers above 20 or right after "size" are treated as sizes or prices,
    not quantities.
    """
    norm = normalize(POST_URL.sub(" ", text or ""))
    for m in _QUANTITY_DIGITS.finditer(norm):
        before = norm[: m.start()].split()
        if before and before[-1] == "size":
            continue
        qty = int(m.group(1))
        if 1 <= qty <= 20:
            return qty
    for word in norm.split():
        if word in _QUANTITY_WORDS:
            return _QUANTITY_WORDS[word]
    return default
