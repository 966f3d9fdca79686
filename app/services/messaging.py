from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import aiohttp
from twilio.rest import Client

from app.config.settings import Settings
from app.models.schemas import Business, Platform

logger = logging.getLogger(__name__)


class GraphClient:
    """Idempotent reads against the Graph API: profiles, post captions, media."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.base_url = settings.graph_api_base.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)

    def _token(self, platform: Platform, business: Optional[Business] = None) -> Optional[str]:
        if business and business.access_token:
            return business.access_token
        if platform == Platform.whatsapp:
            return self.settings.whatsapp_access_token
        return self.settings.instagram_access_token

    async def _get_json(self, url: str, token: Optional[str], params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, headers=headers, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message=text[:200]
                    )
                return await resp.json()

    async def get_with_retry(self, url: str, token: Optional[str], params: Optional[Dict[str, Any]] = None,
                             backoff: float = 0.5) -> Dict[str, Any]:
        try:
            return await self._get_json(url, token, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Graph read failed (%s), retrying once: %s", url, e)
            await asyncio.sleep(backoff)
            return await self._get_json(url, token, params)

    async def fetch_profile(self, platform: Platform, user_id: str, business: Optional[Business] = None) -> Optional[str]:
        """Return a display name for the sender, or raise if the lookup fails."""
        if platform == Platform.whatsapp:
            # Cloud API has no profile endpoint; names arrive on the webhook contacts block
            return None
        data = await self.get_with_retry(
            f"{self.base_url}/{user_id}", self._token(platform, business), params={"fields": "name,username"}
        )
        return data.get("name") or data.get("username")

    async def fetch_post_caption(self, shortcode: str, business: Optional[Business] = None) -> Optional[str]:
        url = f"https://www.instagram.com/p/{shortcode}/"
        data = await self.get_with_retry(
            f"{self.base_url}/instagram_oembed",
            self._token(Platform.instagram, business),
            params={"url": url, "fields": "title"},
        )
        return data.get("title") or data.get("caption")

    async def _media_download_url(self, ref: str, token: Optional[str]) -> str:
        if ref.startswith("http"):
            return ref
        # WhatsApp Cloud media id -> short-lived download url
        data = await self.get_with_retry(f"{self.base_url}/{ref}", token)
        return data["url"]

    async def fetch_image_base64(self, ref: str, platform: Platform, business: Optional[Business] = None) -> str:
        token = self._token(platform, business)
        url = await self._media_download_url(ref, token)
        headers = {"Authorization": f"Bearer {token}"} if token and "fbcdn" not in url else {}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, headers=headers) as resp:
                resp.raise_for_status()
                content = await resp.read()
        return base64.b64encode(content).decode()


class GraphSender:
    """Send through the Graph messages endpoint (Instagram DM or WhatsApp Cloud API)."""

    def __init__(self, settings: Settings, platform: Platform, account_id: Optional[str], token: Optional[str]):
        self.settings = settings
        self.platform = platform
        self.account_id = account_id
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=settings.http_timeout_seconds)

    def _payload(self, recipient_id: str, text: str, media_url: Optional[str]) -> Dict[str, Any]:
        if self.platform == Platform.whatsapp:
            if media_url:
                return {
                    "messaging_product": "whatsapp",
                    "to": recipient_id,
                    "type": "image",
                    "image": {"link": media_url, "caption": text},
                }
            return {"messaging_product": "whatsapp", "to": recipient_id, "type": "text", "text": {"body": text}}
        return {"recipient": {"id": recipient_id}, "message": {"text": text}}

    async def _post(self, payload: Dict[str, Any]) -> bool:
        url = f"{self.settings.graph_api_base.rstrip('/')}/{self.account_id}/messages"
        headers = {"Authorization": f"Bearer {self.token}", "Content-Type": "application/json"}
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, headers=headers, json=payload) as resp:
                if resp.status == 200:
                    return True
                text = await resp.text()
                logger.warning("%s send failed: %s - %s", self.platform.value, resp.status, text[:300])
                return False

    async def send(self, recipient_id: str, text: str, media_url: Optional[str] = None) -> bool:
        if not self.account_id or not self.token:
            logger.warning("%s credentials not configured; reply dropped", self.platform.value)
            return False
        try:
            ok = await self._post(self._payload(recipient_id, text, media_url))
            if ok and media_url and self.platform == Platform.instagram:
                # Instagram DMs carry text and images as separate messages
                await self._post({"recipient": {"id": recipient_id}, "message": {
                    "attachment": {"type": "image", "payload": {"url": media_url}}}})
            return ok
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("%s send error: %s", self.platform.value, e)
            return False


class TwilioSender:
    """WhatsApp replies through Twilio, for numbers onboarded there."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.twilio = Client(settings.twilio_account_sid, settings.twilio_auth_token)

    async def send(self, recipient_id: str, text: str, media_url: Optional[str] = None) -> bool:
        to_phone = recipient_id if recipient_id.startswith("whatsapp:") else f"whatsapp:+{recipient_id.lstrip('+')}"
        params = {"from_": self.settings.twilio_from_number, "to": to_phone, "body": text}
        if media_url:
            params["media_url"] = [media_url]
        try:
            resp = await asyncio.to_thread(self.twilio.messages.create, **params)
            logger.info("Twilio message queued: %s", resp.sid)
            return True
        except Exception as e:
            logger.warning("Twilio send error for %s: %s", recipient_id, e)
            return False


class Outbox:
    """Chooses the sender for a business/platform. ``send`` never raises."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def sender_for(self, business: Business, platform: Platform, account_id: Optional[str] = None):
        """Reply from the account that received the message, else the configured one."""
        if platform == Platform.whatsapp:
            if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
                return TwilioSender(self.settings)
            return GraphSender(
                self.settings,
                platform,
                account_id or self.settings.whatsapp_phone_number_id,
                business.access_token or self.settings.whatsapp_access_token,
            )
        return GraphSender(
            self.settings,
            platform,
            account_id or self.settings.instagram_account_id,
            business.access_token or self.settings.instagram_access_token,
        )

    async def send(self, business: Business, platform: Platform, recipient_id: str, text: str,
                   media_url: Optional[str] = None, account_id: Optional[str] = None) -> bool:
        try:
            return await self.sender_for(business, platform, account_id).send(recipient_id, text, media_url)
        except Exception:
            logger.exception("Outbound send crashed for %s", recipient_id)
            return False
