"""
Decoupled Notification Service for buyer/seller messages
Fire-and-forget port: delivery failures never reach the settlement transaction
"""

import logging
from enum import Enum
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class NotificationKind(Enum):
    ORDER_PAID = "order_paid"
    ORDER_DELIVERED = "order_delivered"
    ORDER_COMPLETED = "order_completed"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_REFUNDED = "order_refunded"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    FUNDS_RELEASED = "funds_released"
    PAYOUT_CONFIRMED = "payout_confirmed"


def format_cents(amount_cents: int, currency: str = "BRL") -> str:
    """Format an integer cent amount for message bodies"""
    symbol = {"BRL": "R$", "USD": "$", "EUR": "€"}.get(currency)
    value = f"{amount_cents / 100:,.2f}"
    return f"{symbol} {value}" if symbol else f"{value} {currency}"


class NotificationService:
    """
    Notification port. Transports (email, chat, push) live outside this core;
    the default implementation only logs the message.
    """

    def send(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(f"📨 NOTIFY: user={user_id} kind={kind.value} title={title!r}")

    def notify(
        self,
        user_id: int,
        kind: NotificationKind,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send without letting a transport failure propagate; returns delivery success"""
        try:
            self.send(user_id, kind, title, body, data)
            return True
        except Exception as e:
            logger.error(f"❌ NOTIFY_FAILED: user={user_id} kind={kind.value}: {e}")
            return False


notification_service = NotificationService()
