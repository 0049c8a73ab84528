import asyncio
import logging
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from polychat.core.auth_dependency import get_db
from polychat.core.exceptions import WebhookSignatureError
from polychat.services import stripe_service
from polychat.services.notifier import notifier
from polychat.services.webhook_service import EventDeduplicator, process_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Billing Webhook"])

deduplicator = EventDeduplicator()


@router.post("/webhook")
@router.post("/billing/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None),
    db: Session = Depends(get_db),
):
    """
    Receive Stripe events.

    400 when the signature or payload is bad, 500 when applying the event
    fails (Stripe retries both), otherwise an acknowledgement.
    """
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook(payload, stripe_signature)
    except WebhookSignatureError as e:
        return JSONResponse(status_code=400, content={"error": e.message})

    try:
        result = await asyncio.to_thread(process_event, db, event, deduplicator)
    except Exception:
        # Details are logged by process_event
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    for user_id, notification in result.notifications:
        await notifier.publish(user_id, notification)

    return result.to_response()
