"""
Stripe webhook endpoint.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from subs.billing.dependencies import get_synchronizer
from subs.billing.webhooks.handlers import BillingSynchronizer

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    synchronizer: Annotated[BillingSynchronizer, Depends(get_synchronizer)],
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> JSONResponse:
    """
    Receive a Stripe event.

    Responds 200 for handled, ignored and duplicate events, 400 for bad
    signatures or payloads and 409 when the delivery should be retried.
    """
    payload = await request.body()
    outcome = await synchronizer.handle_event(payload, stripe_signature)
    logger.info(
        "webhook.received",
        event_id=outcome.event_id,
        event_type=outcome.event_type,
        outcome=outcome.status.value,
    )
    return JSONResponse(
        status_code=outcome.http_status,
        content=outcome.model_dump(mode="json", exclude={"http_status"}),
    )
