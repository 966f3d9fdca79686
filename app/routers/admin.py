import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from app.config.settings import Settings, get_settings
from app.models.schemas import OrderStatus, Verdict
from app.routers.webhook import get_pipeline
from app.services.pipeline import MessagePipeline
from app.utils.errors import ErrorKind, Result

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin(
    x_admin_token: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    if not settings.admin_token or not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_token):
        raise HTTPException(status_code=403, detail="Admin access required")


class ReviewRequest(BaseModel):
    verdict: Verdict
    reason: Optional[str] = None


class CancelRequest(BaseModel):
    reason: str = "timeout"


def _order_or_error(result: Result):
    if result.ok:
        return {"order": result.value.model_dump(mode="json")}
    if result.error == ErrorKind.not_found:
        raise HTTPException(status_code=404, detail="Order not found")
    raise HTTPException(status_code=409, detail=f"{result.error.value}: {result.detail or ''}".strip())


@router.get("/orders", dependencies=[Depends(require_admin)])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    orders = await pipeline.orders.list_orders(status.value if status else None, limit)
    return {"orders": [o.model_dump(mode="json") for o in orders]}


@router.post("/orders/{order_id}/cancel", dependencies=[Depends(require_admin)])
async def cancel_order(
    order_id: str,
    body: Optional[CancelRequest] = None,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    result = await pipeline.cancel_order(order_id, reason=(body or CancelRequest()).reason)
    return _order_or_error(result)


@router.post("/orders/{order_id}/review", dependencies=[Depends(require_admin)])
async def review_order(
    order_id: str,
    body: ReviewRequest,
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    if body.verdict == Verdict.needs_review:
        raise HTTPException(status_code=422, detail="verdict must be accepted or rejected")
    result = await pipeline.review_payment(order_id, body.verdict, reason=body.reason)
    return _order_or_error(result)


@router.get("/messages", dependencies=[Depends(require_admin)])
async def list_messages(
    customer_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200),
    pipeline: MessagePipeline = Depends(get_pipeline),
):
    messages = await pipeline.messages.recent(customer_id, limit)
    return {"messages": [m.model_dump(mode="json") for m in messages]}
