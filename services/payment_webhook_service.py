"""
Payment Gateway Adapter
=======================

Turns PIX provider webhooks into payment confirmations (or failures).

Providers deliver at least once, in any order, and retry on non-2xx or
timeout. Every record is therefore:

1. registered in the webhook ledger (duplicates of a handled record stop here)
2. matched to its Payment by txid
3. applied only if the Payment is still PENDING: the compare-and-set to
   CONFIRMED, the order's PAID transition and the seller's HELD credit commit
   in one transaction

Anything that cannot be applied (unknown txid, already confirmed, missing
txid) is acknowledged without side effects; malformed records are stored as
`rejected` for manual inspection.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import orjson
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import Order, OrderEventType, PaymentStatus, WebhookEventStatus
from services.fulfillment_service import FulfillmentService, fulfillment_service
from services.notification_service import NotificationKind, format_cents, notification_service
from services.order_service import order_service
from services.payment_service import payment_service
from services.settlement_ledger import settlement_ledger
from services.webhook_idempotency_service import (
    WebhookEventInfo, WebhookIdempotencyService, build_event_id
)
from utils.atomic_transactions import atomic_transaction, lock_order
from utils.datetime_helpers import parse_provider_timestamp
from utils.exceptions import MarketplaceError, UpstreamMalformedError
from utils.order_state_machine import record_order_event

logger = logging.getLogger(__name__)

PAID_STATUSES = {"CONCLUIDA", "CONFIRMADA", "LIQUIDADA", "PAID", "CONFIRMED", "COMPLETED"}
FAILED_STATUSES = {"FAILED", "EXPIRED", "REMOVIDA_PELO_USUARIO_RECEBEDOR", "REMOVIDA_PELO_PSP"}

# Column sizes of Payment.txid and WebhookEvent.event_type
MAX_TXID_LENGTH = 64
MAX_EVENT_TYPE_LENGTH = 50


@dataclass
class NormalizedRecord:
    """One payment notification extracted from a (possibly batched) body"""
    txid: Optional[str]
    event_type: str
    outcome: str  # paid | failed | unknown
    raw: Dict[str, Any]
    timestamp: Optional[Any] = None
    amount_cents: Optional[int] = None
    provider_status: Optional[str] = None


@dataclass
class RecordResult:
    txid: Optional[str]
    status: str
    detail: str
    order_id: Optional[int] = None


@dataclass
class WebhookAck:
    """Acknowledgement returned to the provider (always 2xx once parsed)"""
    results: List[RecordResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "received": len(self.results),
            "processed": self.count(WebhookEventStatus.PROCESSED.value),
            "duplicates": self.count("duplicate"),
            "ignored": self.count(WebhookEventStatus.IGNORED.value),
            "rejected": self.count(WebhookEventStatus.REJECTED.value),
            "late_payments": self.count(WebhookEventStatus.LATE_PAYMENT.value),
            "failed": self.count(WebhookEventStatus.FAILED.value),
        }


def _parse_amount_cents(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError, OverflowError):
        return None


class PaymentWebhookService:

    def __init__(self, provider: Optional[str] = None, fulfillment: Optional[FulfillmentService] = None):
        self.provider = provider or Config.PAYMENT_PROVIDER
        self.fulfillment = fulfillment or fulfillment_service

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    @staticmethod
    def parse_body(raw_body: bytes) -> Any:
        if not raw_body or not raw_body.strip():
            raise UpstreamMalformedError("Empty webhook body")
        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError as e:
            raise UpstreamMalformedError(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, (dict, list)):
            raise UpstreamMalformedError("Webhook body must be a JSON object or array")
        return payload

    @staticmethod
    def extract_records(payload: Any) -> List[Dict[str, Any]]:
        """
        Split a body into records. Accepted shapes:
        {"pix": [{...}, ...]}, {"txid": ...}, {"cob": {"txid": ...}} or [{...}, ...]
        """
        if isinstance(payload, list):
            return [record if isinstance(record, dict) else {"value": record} for record in payload]

        pix = payload.get("pix")
        if isinstance(pix, list) and pix:
            records = []
            for entry in pix:
                record = dict(entry) if isinstance(entry, dict) else {"value": entry}
                record.setdefault("_source", "pix")
                records.append(record)
            return records

        cob = payload.get("cob")
        if not payload.get("txid") and isinstance(cob, dict) and cob.get("txid"):
            record = {k: v for k, v in payload.items() if k != "cob"}
            record.update(cob)
            return [record]

        return [payload]

    @staticmethod
    def normalize(record: Dict[str, Any]) -> NormalizedRecord:
        txid = record.get("txid") or record.get("txId")
        txid = str(txid).strip() if txid not in (None, "") else None

        provider_status = record.get("status")
        provider_status = str(provider_status).upper() if provider_status else None

        from_pix = record.get("_source") == "pix"
        event_type = (
            record.get("evento") or record.get("eventType") or record.get("type")
            or ("pix" if from_pix else "unknown")
        )

        if provider_status in FAILED_STATUSES:
            outcome = "failed"
        elif from_pix or provider_status in PAID_STATUSES or provider_status is None:
            # A bare {txid, timestamp} record is a settlement notice
            outcome = "paid"
        else:
            outcome = "unknown"

        return NormalizedRecord(
            txid=txid,
            event_type=str(event_type),
            outcome=outcome,
            raw={k: v for k, v in record.items() if k != "_source"},
            timestamp=record.get("horario") or record.get("timestamp"),
            amount_cents=_parse_amount_cents(record.get("valor")),
            provider_status=provider_status,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def handle_webhook(self, session: Session, raw_body: bytes) -> WebhookAck:
        """
        Process every record of a webhook body.

        Raises UpstreamMalformedError only when the body itself cannot be parsed.
        Data-store failures propagate so the provider retries the delivery.
        """
        payload = self.parse_body(raw_body)
        records = [self.normalize(record) for record in self.extract_records(payload)]
        logger.info(f"📥 PAYMENT_WEBHOOK: provider={self.provider} records={len(records)}")

        ack = WebhookAck()
        for record in records:
            ack.results.append(self._process_record(session, record))

        for result in ack.results:
            if result.status == WebhookEventStatus.PROCESSED.value and result.detail == "confirmed":
                self.fulfillment.try_auto_deliver(session, result.order_id)
        return ack

    def _process_record(self, session: Session, record: NormalizedRecord) -> RecordResult:
        # Stored values must fit their columns; _apply rejects an oversized txid
        # Oversized provider values are truncated for storage; _apply rejects the record
        stored_txid = record.txid[:MAX_TXID_LENGTH] if record.txid else None
        info = WebhookEventInfo(
            provider=self.provider,
            event_id=build_event_id(stored_txid, record.raw),
            event_type=record.event_type[:MAX_EVENT_TYPE_LENGTH],
            payload=record.raw,
            txid=stored_txid,
        )

        try:
            with atomic_transaction(session):
                claim = WebhookIdempotencyService.claim(session, info)
                if claim.is_duplicate:
                    return RecordResult(record.txid, "duplicate", claim.previous_status or "")
                result = self._apply(session, record)
                WebhookIdempotencyService.complete(
                    claim.event, WebhookEventStatus(result.status), result.detail,
                    error_message=result.detail if result.status == WebhookEventStatus.REJECTED.value else None,
                )
        except IntegrityError:
            # Concurrent delivery of the same record won the insert
            logger.info(f"🔁 WEBHOOK_DUPLICATE_RACE: txid={record.txid}")
            return RecordResult(record.txid, "duplicate", "concurrent delivery")
        except MarketplaceError as e:
            logger.error(f"❌ WEBHOOK_APPLY_FAILED: txid={record.txid}: {e.message}")
            WebhookIdempotencyService.record_failure(session, info, e.message)
            return RecordResult(record.txid, WebhookEventStatus.FAILED.value, e.message)
        except Exception as e:
            logger.error(f"❌ WEBHOOK_APPLY_FAILED: txid={record.txid}: {e}", exc_info=True)
            WebhookIdempotencyService.record_failure(session, info, str(e))
            raise

        self._notify(session, result)
        return result

    def _apply(self, session: Session, record: NormalizedRecord) -> RecordResult:
        if not record.txid:
            logger.warning(f"⚠️ WEBHOOK_REJECTED: record without txid: {record.raw}")
            return RecordResult(None, WebhookEventStatus.REJECTED.value, "missing txid")
        if len(record.txid) > MAX_TXID_LENGTH:
            logger.warning(f"⚠️ WEBHOOK_REJECTED: txid longer than {MAX_TXID_LENGTH} characters")
            return RecordResult(record.txid[:MAX_TXID_LENGTH], WebhookEventStatus.REJECTED.value, "txid too long")

        payment = payment_service.find_by_txid(session, record.txid, self.provider)
        if payment is None:
            logger.warning(f"⚠️ WEBHOOK_UNKNOWN_TXID: txid={record.txid}")
            return RecordResult(record.txid, WebhookEventStatus.IGNORED.value, "unknown txid")

        # Order before payment, the same lock order as cancellation and expiry
        lock_order(session, payment.order_id)
        session.refresh(payment)

        if record.outcome == "failed":
            return self._apply_failure(session, record, payment)
        if record.outcome != "paid":
            return RecordResult(record.txid, WebhookEventStatus.IGNORED.value,
                                f"non-final status {record.provider_status}", payment.order_id)

        if payment.status == PaymentStatus.CONFIRMED.value:
            logger.info(f"WEBHOOK_ALREADY_CONFIRMED: txid={record.txid} payment={payment.id}")
            return RecordResult(record.txid, WebhookEventStatus.IGNORED.value, "already confirmed", payment.order_id)

        if payment.status == PaymentStatus.FAILED.value:
            logger.error(
                f"🚨 LATE_PAYMENT: txid={record.txid} order={payment.order_id} paid after cancellation, "
                f"manual refund required"
            )
            record_order_event(
                session, payment.order_id, OrderEventType.LATE_PAYMENT.value,
                metadata={"reason": "payment confirmed after cancellation", "source": "payment_webhook",
                          "txid": record.txid},
            )
            return RecordResult(record.txid, WebhookEventStatus.LATE_PAYMENT.value,
                                "payment already failed", payment.order_id)

        if record.amount_cents is not None and record.amount_cents != payment.amount_cents:
            logger.warning(
                f"⚠️ WEBHOOK_AMOUNT_MISMATCH: txid={record.txid} expected={payment.amount_cents} "
                f"received={record.amount_cents}"
            )
            return RecordResult(record.txid, WebhookEventStatus.REJECTED.value,
                                f"amount mismatch: received {record.amount_cents}", payment.order_id)

        paid_at = parse_provider_timestamp(record.timestamp)
        if not payment_service.confirm(session, payment, paid_at):
            return RecordResult(record.txid, WebhookEventStatus.IGNORED.value, "already confirmed", payment.order_id)

        order_service.apply_payment_confirmation(session, payment.order_id, payment.id, paid_at)
        order = session.get(Order, payment.order_id)
        settlement_ledger.credit_held(session, order, payment)

        logger.info(f"✅ PAYMENT_CONFIRMED: txid={record.txid} order={order.id} amount={payment.amount_cents}")
        return RecordResult(record.txid, WebhookEventStatus.PROCESSED.value, "confirmed", order.id)

    def _apply_failure(self, session: Session, record: NormalizedRecord, payment) -> RecordResult:
        if payment.status != PaymentStatus.PENDING.value:
            return RecordResult(record.txid, WebhookEventStatus.IGNORED.value,
                                f"payment already {payment.status}", payment.order_id)

        reason = f"provider_{(record.provider_status or 'failed').lower()}"
        order_service.cancel_order(session, payment.order_id, reason=reason, source="payment_webhook")
        return RecordResult(record.txid, WebhookEventStatus.PROCESSED.value, "failed", payment.order_id)

    def _notify(self, session: Session, result: RecordResult) -> None:
        if result.status != WebhookEventStatus.PROCESSED.value or result.detail != "confirmed":
            return
        order = session.get(Order, result.order_id)
        amount = format_cents(order.total_amount_cents, order.currency)
        notification_service.notify(
            order.buyer_id, NotificationKind.ORDER_PAID, "Payment received",
            f"We received {amount} for order #{order.id}.", {"order_id": order.id},
        )
        notification_service.notify(
            order.seller_id, NotificationKind.ORDER_PAID, "New paid order",
            f"Order #{order.id} was paid ({amount}). Funds are held until completion.", {"order_id": order.id},
        )


payment_webhook_service = PaymentWebhookService()
