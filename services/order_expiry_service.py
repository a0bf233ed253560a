"""
Order Expiry Service - timer-driven order transitions
Unpaid order cancellation, hold reclaim, auto-complete and deferred settlement release
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, exists, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    Dispute, DisputeStatus, LedgerEntry, LedgerEntryType, LedgerSource, LedgerState, Order, OrderStatus
)
from services.inventory_allocator import inventory_allocator
from services.notification_service import NotificationKind, format_cents, notification_service
from services.order_service import CANCELLABLE_STATES, order_service
from services.settlement_ledger import settlement_ledger
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import MarketplaceError

logger = logging.getLogger(__name__)


class OrderExpiryService:
    """Each order is handled in its own transaction; one failure never blocks the batch"""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or Config.SWEEPER_BATCH_SIZE

    @staticmethod
    def _new_results() -> Dict[str, Any]:
        return {"processed": 0, "order_ids": [], "errors": []}

    def cancel_expired_orders(self, session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Unpaid orders past their payment window become CANCELLED and release their holds"""
        now = now or get_naive_utc_now()
        results = self._new_results()

        expired_ids: List[int] = list(
            session.execute(
                select(Order.id)
                .where(Order.status.in_(CANCELLABLE_STATES), Order.expires_at < now)
                .order_by(Order.expires_at)
                .limit(self.batch_size)
            ).scalars()
        )
        logger.info(f"🔍 ORDER_EXPIRY: Found {len(expired_ids)} unpaid orders to cancel")

        for order_id in expired_ids:
            try:
                order_service.cancel_order(session, order_id, reason="payment_timeout", source="expiry")
                results["processed"] += 1
                results["order_ids"].append(order_id)
                logger.info(f"🚫 AUTO_CANCEL: order={order_id} payment timeout")
            except MarketplaceError as e:
                # Paid or cancelled between the scan and the lock
                logger.info(f"ORDER_EXPIRY_SKIPPED: order={order_id}: {e.message}")
            except Exception as e:
                logger.error(f"❌ ORDER_EXPIRY_ERROR: order={order_id}: {e}")
                results["errors"].append(str(e))
        return results

    def reclaim_expired_holds(self, session: Session, now: Optional[datetime] = None) -> int:
        return inventory_allocator.reclaim_expired(session, now=now, batch_size=self.batch_size)

    def auto_complete_delivered(self, session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """DELIVERED orders nobody disputed within the window are completed"""
        now = now or get_naive_utc_now()
        cutoff = now - timedelta(hours=Config.ORDER_AUTO_COMPLETE_HOURS)
        results = self._new_results()

        due_ids = list(
            session.execute(
                select(Order.id)
                .where(Order.status == OrderStatus.DELIVERED.value, Order.delivered_at <= cutoff)
                .order_by(Order.delivered_at)
                .limit(self.batch_size)
            ).scalars()
        )
        for order_id in due_ids:
            try:
                order_service.confirm_receipt(session, order_id, buyer_id=None, source="auto_complete")
                results["processed"] += 1
                results["order_ids"].append(order_id)
            except MarketplaceError as e:
                logger.info(f"AUTO_COMPLETE_SKIPPED: order={order_id}: {e.message}")
            except Exception as e:
                logger.error(f"❌ AUTO_COMPLETE_ERROR: order={order_id}: {e}")
                results["errors"].append(str(e))
        return results

    def release_completed_orders(self, session: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Settlement timer: release held funds of COMPLETED orders after the release delay"""
        now = now or get_naive_utc_now()
        cutoff = now - timedelta(hours=Config.SETTLEMENT_RELEASE_DELAY_HOURS)
        results = self._new_results()

        already_released = exists().where(
            LedgerEntry.order_id == Order.id,
            LedgerEntry.entry_type == LedgerEntryType.CREDIT.value,
            LedgerEntry.state == LedgerState.AVAILABLE.value,
            LedgerEntry.source == LedgerSource.ORDER_PAYMENT.value,
        )
        open_dispute = exists().where(
            and_(Dispute.order_id == Order.id, Dispute.status == DisputeStatus.OPEN.value)
        )
        due_ids = list(
            session.execute(
                select(Order.id)
                .where(
                    Order.status == OrderStatus.COMPLETED.value,
                    Order.completed_at <= cutoff,
                    ~already_released,
                    ~open_dispute,
                )
                .order_by(Order.completed_at)
                .limit(self.batch_size)
            ).scalars()
        )

        for order_id in due_ids:
            try:
                status = settlement_ledger.release(session, order_id, source="settlement_timer")
                if status.settlement == "released":
                    results["processed"] += 1
                    results["order_ids"].append(order_id)
                    order = order_service.get_order(session, order_id)
                    notification_service.notify(
                        order.seller_id, NotificationKind.FUNDS_RELEASED, "Funds released",
                        f"{format_cents(status.available_cents, order.currency)} from order #{order_id} "
                        f"is now available.",
                        {"order_id": order_id},
                    )
            except MarketplaceError as e:
                logger.info(f"SETTLEMENT_RELEASE_SKIPPED: order={order_id}: {e.message}")
            except Exception as e:
                logger.error(f"❌ SETTLEMENT_RELEASE_ERROR: order={order_id}: {e}")
                results["errors"].append(str(e))
        return results


order_expiry_service = OrderExpiryService()
