"""
PIX Payment Webhook Handler

1. Verify the HMAC signature over the raw body
2. Hand the body to the webhook service (dedupe, confirm, credit, deliver)
3. Ack every record that was handled, even ignored or rejected ones, so the
   provider stops retrying; only unparseable bodies get a 400
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import Config
from handlers.dependencies import get_db, get_payment_webhook_service
from services.payment_webhook_service import PaymentWebhookService
from utils.exceptions import UpstreamMalformedError
from utils.webhook_security import WebhookSecurity

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_webhook_signature(raw_body: bytes, signature_header: Optional[str]) -> None:
    """Strict in production, warn-only in development"""
    if signature_header:
        if not WebhookSecurity.verify_payment_webhook(raw_body, signature_header):
            if Config.IS_PRODUCTION:
                logger.critical("🚨 PRODUCTION_SECURITY_BREACH: payment webhook signature verification FAILED")
                raise HTTPException(status_code=401, detail="Invalid webhook signature")
            logger.warning("⚠️ DEV_SECURITY: Signature verification failed - processing anyway")
        else:
            logger.info("✅ PAYMENT_WEBHOOK_SECURITY: Signature verified successfully")
    else:
        if Config.IS_PRODUCTION:
            logger.critical("🚨 PRODUCTION_SECURITY_BREACH: Missing signature in production")
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        logger.warning("⚠️ DEV_SECURITY: No signature header found - processing anyway in development")


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None, alias="X-Webhook-Signature"),
    session: Session = Depends(get_db),
    webhook_service: PaymentWebhookService = Depends(get_payment_webhook_service),
):
    raw_body = await request.body()
    _verify_webhook_signature(raw_body, x_webhook_signature)

    try:
        ack = await run_in_threadpool(webhook_service.handle_webhook, session, raw_body)
    except UpstreamMalformedError as e:
        logger.warning(f"⚠️ PAYMENT_WEBHOOK_MALFORMED: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    except Exception as e:
        logger.error(f"❌ PAYMENT_WEBHOOK_ERROR: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    logger.info(
        f"✅ PAYMENT_WEBHOOK_ACK: received={len(ack.results)} processed={ack.count('processed')} "
        f"duplicates={ack.count('duplicate')}"
    )
    return ack.to_dict()
