import asyncio
import logging
from typing import Any, Dict, List, Optional

from app.config.settings import Settings
from app.models.events import Ack, InboundEvent, parse_delivery
from app.services.pipeline import MessagePipeline
from app.utils.errors import VerificationFailure

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(self, pipeline: MessagePipeline, settings: Settings):
        self.pipeline = pipeline
        self.settings = settings

    def verify_handshake(self, mode: Optional[str], token: Optional[str], challenge: Optional[str]) -> str:
        if mode == "subscribe" and token == self.settings.webhook_verify_token and challenge:
            return challenge
        raise VerificationFailure("webhook verification failed")

    async def _run(self, event: InboundEvent, deadline: Optional[float] = None):
        try:
            result = await self.pipeline.process_event(event, deadline)
        except Exception:
            logger.exception("event %s from %s failed", event.dedup_key, event.sender_id)
            return None
        if not result.ok:
            logger.warning("event %s not processed: %s %s", event.dedup_key, result.error.value, result.detail or "")
        return result

    async def handle_delivery(self, payload: Dict[str, Any]) -> Ack:
        """Fan a delivery out into one task per event; always acknowledges.

        All events share one wall-clock deadline. Events still routing when it
        passes, including ones queued behind the same sender, answer with the
        fallback reply.
        """
        events: List[InboundEvent] = [e for e in parse_delivery(payload) if not e.is_echo]
        if not events:
            return Ack()
        deadline = asyncio.get_running_loop().time() + self.settings.delivery_budget_seconds
        # Tasks start in delivery order, so per-sender locks are queued in arrival order
        tasks = [asyncio.create_task(self._run(e, deadline)) for e in events]
        await asyncio.gather(*tasks)
        return Ack()
