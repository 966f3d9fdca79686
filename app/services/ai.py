import json
import logging
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

logger = logging.getLogger(__name__)

LANGUAGE_STYLE = {
    "english": "Reply in simple English.",
    "manglish": "Reply in Manglish (Malayalam words written in English letters, mixed with English).",
    "hinglish": "Reply in Hinglish (Hindi words written in English letters, mixed with English).",
}

REPLY_CATEGORIES = {"inquiry", "order", "payment", "support", "greeting"}


def _extract_json(text: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object from a model reply, tolerating code fences."""
    if not text:
        return {}
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`").strip()
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except ValueError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            return {}
        try:
            data = json.loads(cleaned[start : end + 1])
        except ValueError:
            return {}
    return data if isinstance(data, dict) else {}


class AIService:
    def __init__(self, api_key: str, db=None, model: str = "gpt-4o-mini", vision_model: str = "gpt-4o"):
        self.client = AsyncOpenAI(api_key=api_key)
        self.db = db
        self.model = model
        self.vision_model = vision_model

    async def get_system_prompt(self, business_id: Optional[str]) -> Optional[str]:
        """Per-business prompt override stored alongside the business config."""
        if self.db is None or not business_id:
            return None
        try:
            config = await self.db.config.find_one({"_id": f"system_prompt:{business_id}"})
        except Exception as e:
            logger.warning("system prompt lookup failed: %s", e)
            return None
        return (config or {}).get("value")

    def _default_system_prompt(self, context: Dict[str, Any]) -> str:
        products = ", ".join(context.get("product_names") or []) or "ask the customer what they are looking for"
        language = context.get("language") or "english"
        return (
            f"You are a helpful sales assistant for {context.get('business_name') or 'our store'}, "
            "an Instagram and WhatsApp shop in India.\n\n"
            "GUIDELINES:\n"
            f"- {LANGUAGE_STYLE.get(language, LANGUAGE_STYLE['english'])}\n"
            "- Be friendly, warm and sales-focused; keep replies under 80 words\n"
            "- Use emojis sparingly\n"
            f"- Available products: {products}\n"
            "- NEVER invent products or prices that are not listed\n"
            "- To order, the customer can simply say 'I want to order <product>'\n"
            "- Payment is by UPI; the customer shares a screenshot after paying"
        )

    async def complete(self, prompt: str, context: Dict[str, Any]) -> Optional[Dict[str, str]]:
        """Free-form reply. Returns {"response", "category"} or None on failure."""
        try:
            system_prompt = await self.get_system_prompt(context.get("business_id")) or self._default_system_prompt(context)
            messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
            for turn in context.get("recent_history") or []:
                messages.append(turn)
            messages.append({"role": "user", "content": prompt})
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=250,
                temperature=0.6,
            )
            text = (completion.choices[0].message.content or "").strip()
            if not text:
                return None
            return {"response": text, "category": context.get("category") or "support"}
        except Exception as e:
            logger.warning("AI completion error: %s", e)
            return None

    async def verify_payment_screenshot(self, image_base64: str, expected_amount: float, upi_id: str) -> Optional[Dict[str, Any]]:
        """Ask the vision model to read a UPI payment screenshot.

        Returns the parsed analysis (isValid, amount, transactionId, confidence,
        issues) or None when the model call fails.
        """
        prompt = (
            "Analyze this UPI payment screenshot.\n\n"
            f"Expected Amount: ₹{expected_amount:g}\n"
            f"Expected Recipient UPI ID: {upi_id}\n\n"
            "Verify that the amount matches, the recipient UPI ID is correct and the payment status is successful.\n"
            "Respond in JSON only:\n"
            '{"isValid": boolean, "amount": number, "recipientUPI": "string", "transactionId": "string", '
            '"paymentStatus": "success/failed/pending", "confidence": number (0-100), "issues": ["..."]}'
        )
        try:
            completion = await self.client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"}},
                        ],
                    }
                ],
                max_tokens=400,
                temperature=0,
                response_format={"type": "json_object"},
            )
            return _extract_json(completion.choices[0].message.content)
        except Exception as e:
            logger.warning("AI payment verification error: %s", e)
            return None
