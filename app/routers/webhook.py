import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from app.config.db import mongo
from app.config.settings import Settings, get_settings
from app.models.events import Ack
from app.services.ai import AIService
from app.services.dispatcher import WebhookDispatcher
from app.services.pipeline import MessagePipeline
from app.utils.errors import VerificationFailure
from app.utils.signature import verify_meta_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(settings: Settings = Depends(get_settings)) -> MessagePipeline:
    if mongo.db is None:
        raise RuntimeError("Mongo client not initialized")
    ai_service = (
        AIService(settings.openai_api_key, db=mongo.db, model=settings.openai_model,
                  vision_model=settings.openai_vision_model)
        if settings.openai_api_key
        else None
    )
    return MessagePipeline(mongo.db, settings, ai_service=ai_service)


def get_dispatcher(
    settings: Settings = Depends(get_settings),
    pipeline: MessagePipeline = Depends(get_pipeline),
) -> WebhookDispatcher:
    return WebhookDispatcher(pipeline, settings)


@router.get("/webhook", response_class=PlainTextResponse)
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    # Built directly so the handshake works before Mongo is reachable
    dispatcher = WebhookDispatcher(pipeline=None, settings=settings)
    try:
        return PlainTextResponse(dispatcher.verify_handshake(mode, token, challenge))
    except VerificationFailure:
        logger.warning("webhook verification rejected (mode=%s)", mode)
        raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/webhook", response_model=Ack)
async def receive_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    body = await request.body()
    verify_meta_signature(body, settings.meta_app_secret, request.headers.get("X-Hub-Signature-256"))
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("webhook body is not JSON; acknowledged and ignored")
        return Ack()
    try:
        return await dispatcher.handle_delivery(payload)
    except Exception:
        logger.exception("webhook delivery failed")
        return Ack()
