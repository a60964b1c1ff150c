import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from gateway_webhooks.dependencies import get_receiver, get_store
from gateway_webhooks.exceptions import InvalidSignature, Misconfigured
from gateway_webhooks.models import EventStatusResponse, WebhookResponse
from gateway_webhooks.receiver import WebhookReceiver
from gateway_webhooks.store import SQLiteIdempotencyStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None),
    receiver: WebhookReceiver = Depends(get_receiver),
) -> WebhookResponse:
    payload = await request.body()
    try:
        result = await receiver.receive(payload, stripe_signature)
    except Misconfigured:
        raise HTTPException(status_code=400, detail="Webhook secret not configured")
    except InvalidSignature:
        raise HTTPException(status_code=400, detail="Invalid signature")
    except Exception as e:
        logger.warning("Webhook delivery failed, asking gateway to redeliver: %s", e)
        raise HTTPException(status_code=500, detail="Webhook processing failed")
    return WebhookResponse(event_id=result.event_id, event_type=result.event_type, status=result.outcome.value)


@router.get("/webhooks/events/{event_id}")
async def get_event_status(
    event_id: str,
    store: SQLiteIdempotencyStore = Depends(get_store),
) -> EventStatusResponse:
    record = await store.get(event_id)
    if record is None:
        raise HTTPException(status_code=404)
    return EventStatusResponse(**{**record.__dict__, "status": record.status.value})


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/ready")
async def ready(request: Request) -> dict:
    if not request.app.state.ready:
        raise HTTPException(status_code=503)
    return {"status": "ok"}
