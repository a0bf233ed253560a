"""
Webhook Idempotency Service
Stores every provider webhook record once so replays are recognised and failures can be inspected
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import orjson
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import WebhookEvent, WebhookEventStatus
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

# Statuses after which a repeated delivery of the same record is a no-op
FINAL_STATUSES = {
    WebhookEventStatus.PROCESSED.value,
    WebhookEventStatus.IGNORED.value,
    WebhookEventStatus.REJECTED.value,
    WebhookEventStatus.LATE_PAYMENT.value,
}


@dataclass
class WebhookEventInfo:
    """Information about a webhook record for processing"""
    provider: str
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    txid: Optional[str] = None


@dataclass
class IdempotencyResult:
    """Result of idempotency check"""
    is_duplicate: bool
    event: Optional[WebhookEvent] = None
    previous_status: Optional[str] = None


def canonical_json(payload: Any) -> bytes:
    return orjson.dumps(payload, option=orjson.OPT_SORT_KEYS)


def build_event_id(txid: Optional[str], payload: Dict[str, Any]) -> str:
    """`<txid>:<sha256 of the canonical record>`; identical redeliveries share an id"""
    digest = hashlib.sha256(canonical_json(payload)).hexdigest()
    return f"{txid or 'no-txid'}:{digest}"


class WebhookIdempotencyService:

    @staticmethod
    def find_event(session: Session, provider: str, event_id: str) -> Optional[WebhookEvent]:
        return session.execute(
            select(WebhookEvent).where(WebhookEvent.provider == provider, WebhookEvent.event_id == event_id)
        ).scalar_one_or_none()

    @staticmethod
    def claim(session: Session, info: WebhookEventInfo) -> IdempotencyResult:
        """
        Register the record inside the caller's transaction.

        A record already in a final status is a duplicate. A record left in
        `failed` (or `processing` by a crashed worker) is picked up again. Two
        concurrent first deliveries both insert; the unique key makes the
        second one fail with IntegrityError, which callers treat as duplicate.
        """
        existing = WebhookIdempotencyService.find_event(session, info.provider, info.event_id)
        if existing is not None:
            if existing.status in FINAL_STATUSES:
                logger.info(
                    f"🔁 WEBHOOK_DUPLICATE: provider={info.provider} event={info.event_id[:48]} "
                    f"status={existing.status}"
                )
                return IdempotencyResult(is_duplicate=True, event=existing, previous_status=existing.status)

            logger.info(f"🔄 WEBHOOK_RETRY: event={info.event_id[:48]} previous status={existing.status}")
            previous = existing.status
            existing.status = WebhookEventStatus.PROCESSING.value
            existing.error_message = None
            return IdempotencyResult(is_duplicate=False, event=existing, previous_status=previous)

        event = WebhookEvent(
            provider=info.provider,
            event_id=info.event_id,
            event_type=info.event_type,
            txid=info.txid,
            status=WebhookEventStatus.PROCESSING.value,
            payload=info.payload,
            received_at=get_naive_utc_now(),
        )
        session.add(event)
        session.flush()
        return IdempotencyResult(is_duplicate=False, event=event)

    @staticmethod
    def complete(event: WebhookEvent, status: WebhookEventStatus, result: str,
                 error_message: Optional[str] = None) -> None:
        event.status = status.value
        event.processing_result = result
        event.error_message = error_message
        event.processed_at = get_naive_utc_now()

    @staticmethod
    def record_failure(session: Session, info: WebhookEventInfo, error_message: str) -> None:
        """Persist a failed attempt in its own transaction so it survives the rollback"""
        try:
            event = WebhookIdempotencyService.find_event(session, info.provider, info.event_id)
            if event is None:
                event = WebhookEvent(
                    provider=info.provider,
                    event_id=info.event_id,
                    event_type=info.event_type,
                    txid=info.txid,
                    payload=info.payload,
                    received_at=get_naive_utc_now(),
                )
                session.add(event)
            event.status = WebhookEventStatus.FAILED.value
            event.error_message = error_message[:1000]
            event.processed_at = get_naive_utc_now()
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"❌ WEBHOOK_FAILURE_RECORD: could not persist failure for {info.event_id[:48]}: {e}")
