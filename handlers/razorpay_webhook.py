"""
Razorpay Webhook Handler

Payout status callbacks. Public route; the HMAC signature over the raw body is
the authentication. Failures answer 500 so Razorpay redelivers the event.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from services.payout_service import PayoutService, get_payout_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/payouts/webhook/razorpay")
async def razorpay_webhook(
    request: Request,
    signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    event_id: Optional[str] = Header(None, alias="X-Razorpay-Event-Id"),
    db: Session = Depends(get_db),
    payouts: PayoutService = Depends(get_payout_service),
):
    raw_body = await request.body()
    logger.info(f"📥 RAZORPAY_WEBHOOK: received {len(raw_body)} bytes, event id {event_id or 'n/a'}")

    result = await payouts.handle_webhook(db, raw_body, signature, event_id)

    if result.duplicate:
        return {"status": "ok", "duplicate": True}
    if not result.success:
        return JSONResponse(status_code=500, content={"message": "Webhook processing failed"})
    return {"status": "ok"}
