"""Automatic delivery of paid orders whose listings deliver codes instantly"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Order, OrderStatus
from services.inventory_allocator import inventory_allocator
from services.notification_service import NotificationKind, notification_service
from services.order_service import order_service
from utils.atomic_transactions import atomic_transaction, lock_order

logger = logging.getLogger(__name__)


class FulfillmentService:

    def auto_deliver(self, session: Session, order_id: int) -> bool:
        """
        Deliver every reserved unit of an IN_DELIVERY auto-delivery order.

        Units become DELIVERED and their codes are recorded on the DELIVERED
        event as delivery evidence. Returns False when the order is not (or no
        longer) eligible, so repeated calls are harmless.
        """
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if order.status != OrderStatus.IN_DELIVERY.value or not order_service.is_auto_delivery(order):
                return False

            units = []
            for item in order.items:
                unit = inventory_allocator.mark_delivered(session, item.id)
                units.append({"order_item_id": item.id, "inventory_item_id": unit.id, "code": unit.code})

            order_service.mark_delivered(
                session, order_id, source="auto_delivery",
                evidence={"delivery": "auto", "units": units},
            )

        logger.info(f"📦 AUTO_DELIVERED: order={order_id} units={len(units)}")
        notification_service.notify(
            order.buyer_id, NotificationKind.ORDER_DELIVERED, "Order delivered",
            f"Your purchase #{order.id} is ready. Open the order to view your items.",
            {"order_id": order.id},
        )
        return True

    def pending_auto_deliveries(self, session: Session, batch_size: int = 100) -> List[int]:
        """Paid auto-delivery orders still waiting for delivery (recovery after a crash)"""
        candidates = session.execute(
            select(Order)
            .where(Order.status == OrderStatus.IN_DELIVERY.value)
            .order_by(Order.id)
            .limit(batch_size)
        ).scalars().all()
        return [order.id for order in candidates if order_service.is_auto_delivery(order)]

    def deliver_pending(self, session: Session, batch_size: int = 100) -> int:
        delivered = 0
        for order_id in self.pending_auto_deliveries(session, batch_size):
            try:
                if self.auto_deliver(session, order_id):
                    delivered += 1
            except Exception as e:
                logger.error(f"❌ AUTO_DELIVERY_FAILED: order={order_id}: {e}")
        return delivered

    def try_auto_deliver(self, session: Session, order_id: Optional[int]) -> bool:
        """Post-confirmation delivery; failures are left to the recovery job"""
        if order_id is None:
            return False
        try:
            return self.auto_deliver(session, order_id)
        except Exception as e:
            logger.error(f"❌ AUTO_DELIVERY_FAILED: order={order_id}: {e} (will retry from scheduler)")
            return False


fulfillment_service = FulfillmentService()
