"""JSON shapes returned by the HTTP API"""

from datetime import datetime
from typing import Any, Dict, Optional

from models import Dispute, LedgerEntry, Order, Payment
from services.settlement_ledger import BalanceSummary, SettlementStatus


def _iso(value: Optional[datetime]) -> Optional[str]:
    # Stored naive UTC
    return value.isoformat() + "Z" if value else None


def serialize_order(order: Order) -> Dict[str, Any]:
    return {
        "id": order.id,
        "status": order.status,
        "buyerId": order.buyer_id,
        "sellerId": order.seller_id,
        "totalAmountCents": order.total_amount_cents,
        "currency": order.currency,
        "expiresAt": _iso(order.expires_at),
        "paidAt": _iso(order.paid_at),
        "deliveredAt": _iso(order.delivered_at),
        "completedAt": _iso(order.completed_at),
        "cancelledAt": _iso(order.cancelled_at),
        "createdAt": _iso(order.created_at),
        "items": [
            {
                "id": item.id,
                "listingId": item.listing_id,
                "title": item.title,
                "unitPriceCents": item.unit_price_cents,
                "quantity": item.quantity,
                "deliveryType": item.delivery_type,
            }
            for item in order.items
        ],
    }


def serialize_payment(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "orderId": payment.order_id,
        "provider": payment.provider,
        "txid": payment.txid,
        "status": payment.status,
        "amountCents": payment.amount_cents,
        "currency": payment.currency,
        "qrCode": payment.qr_code,
        "expiresAt": _iso(payment.expires_at),
    }


def serialize_settlement(status: SettlementStatus) -> Dict[str, Any]:
    return {
        "orderId": status.order_id,
        "orderStatus": status.order_status,
        "settlement": status.settlement,
        "heldCents": status.held_cents,
        "availableCents": status.available_cents,
    }


def serialize_dispute(dispute: Dispute) -> Dict[str, Any]:
    return {
        "id": dispute.id,
        "orderId": dispute.order_id,
        "status": dispute.status,
        "reason": dispute.reason,
        "resolution": dispute.resolution,
        "createdAt": _iso(dispute.created_at),
        "resolvedAt": _iso(dispute.resolved_at),
    }


def serialize_balance(balance: BalanceSummary) -> Dict[str, Any]:
    return {
        "userId": balance.user_id,
        "currency": balance.currency,
        "heldCents": balance.held_cents,
        "availableCents": balance.available_cents,
        "refundedCents": balance.refunded_cents,
    }


def serialize_ledger_entry(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "entryType": entry.entry_type,
        "state": entry.state,
        "source": entry.source,
        "amountCents": entry.amount_cents,
        "currency": entry.currency,
        "createdAt": _iso(entry.created_at),
    }
