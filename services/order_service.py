"""
Order Aggregate
===============

Creation with immutable item snapshots, payment confirmation, delivery and the
buyer-facing actions (cancel, confirm receipt). Status changes go through
utils.order_state_machine; the OrderEvent log is the audit trail and the
idempotency witness (a PAID event exists at most once per order).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import exists, select
from sqlalchemy.orm import Session

from models import (
    DeliveryType, Order, OrderEvent, OrderEventType, OrderItemSnapshot, OrderStatus
)
from services.catalog_service import ListingInfo
from services.inventory_allocator import inventory_allocator
from services.notification_service import NotificationKind, notification_service
from services.payment_service import payment_service
from utils.atomic_transactions import atomic_transaction, lock_order
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ForbiddenError, InvalidStateError, NotFoundError
from utils.order_state_machine import apply_transition, record_order_event

logger = logging.getLogger(__name__)

CANCELLABLE_STATES = {OrderStatus.CREATED.value, OrderStatus.AWAITING_PAYMENT.value}


class OrderService:

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_order(self, session: Session, order_id: int) -> Order:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def get_order_for_participant(self, session: Session, order_id: int, user_id: int,
                                  is_admin: bool = False) -> Order:
        order = self.get_order(session, order_id)
        if not is_admin and user_id not in (order.buyer_id, order.seller_id):
            # Hide other users' orders entirely
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def has_event(self, session: Session, order_id: int, event_type: str) -> bool:
        return session.execute(
            select(exists().where(OrderEvent.order_id == order_id, OrderEvent.event_type == event_type))
        ).scalar()

    def list_events(self, session: Session, order_id: int) -> List[OrderEvent]:
        return list(
            session.execute(
                select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.id)
            ).scalars()
        )

    def is_auto_delivery(self, order: Order) -> bool:
        return bool(order.items) and all(
            item.delivery_type == DeliveryType.AUTO.value for item in order.items
        )

    def stocked_items(self, order: Order) -> List[OrderItemSnapshot]:
        """Items backed by an inventory unit (AUTO delivery only)"""
        return [item for item in order.items if item.delivery_type == DeliveryType.AUTO.value]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_order(self, session: Session, buyer_id: int, listing: ListingInfo, quantity: int,
                     expires_at: datetime) -> Order:
        """
        New CREATED order with one snapshot row per purchased unit.

        The snapshot copies title and price so later listing edits never change
        the order's history or total.
        """
        order = Order(
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            status=OrderStatus.CREATED.value,
            total_amount_cents=listing.price_cents * quantity,
            currency=listing.currency,
            expires_at=expires_at,
        )
        session.add(order)
        session.flush()

        session.add_all(
            OrderItemSnapshot(
                order_id=order.id,
                listing_id=listing.id,
                position=position,
                title=listing.title,
                unit_price_cents=listing.price_cents,
                quantity=1,
                delivery_type=listing.delivery_type,
            )
            for position in range(quantity)
        )
        session.flush()
        session.refresh(order)

        record_order_event(
            session, order.id, OrderEventType.CREATED.value, actor_id=buyer_id,
            metadata={"from": None, "to": OrderStatus.CREATED.value, "reason": None, "source": "checkout",
                      "listing_id": listing.id, "quantity": quantity},
        )
        logger.info(f"ORDER_CREATED: order={order.id} buyer={buyer_id} listing={listing.id} qty={quantity}")
        return order

    def mark_awaiting_payment(self, session: Session, order: Order, payment_id: int) -> None:
        apply_transition(
            session, order, OrderStatus.AWAITING_PAYMENT.value,
            actor_id=order.buyer_id, source="checkout", extra={"payment_id": payment_id},
        )

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    def apply_payment_confirmation(self, session: Session, order_id: int, payment_id: int,
                                   paid_at: Optional[datetime] = None) -> bool:
        """
        AWAITING_PAYMENT -> PAID -> IN_DELIVERY.

        Returns False without side effects when the order already carries a PAID
        event. Raises InvalidStateError when the order can no longer be paid.
        """
        paid_at = paid_at or get_naive_utc_now()
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if self.has_event(session, order_id, OrderEventType.PAID.value):
                logger.info(f"ORDER_PAID_DUPLICATE: order={order_id} already has a PAID event")
                return False

            apply_transition(
                session, order, OrderStatus.PAID.value,
                source="payment_webhook", extra={"payment_id": payment_id}, paid_at=paid_at,
            )

            held_units = inventory_allocator.pin_for_order(session, order_id)
            expected_units = len(self.stocked_items(order))
            if held_units < expected_units:
                # Hold expired and was reclaimed before the payment landed
                logger.error(
                    f"🚨 ORDER_PAID_WITHOUT_STOCK: order={order_id} holds {held_units}/{expected_units} units, "
                    f"manual refund required"
                )
                record_order_event(
                    session, order_id, OrderEventType.LATE_PAYMENT.value,
                    metadata={"reason": "inventory hold reclaimed before payment", "source": "payment_webhook",
                              "held_units": held_units, "expected_units": expected_units},
                )
                return True

            apply_transition(session, order, OrderStatus.IN_DELIVERY.value, source="payment_webhook")
            return True

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def mark_delivered(self, session: Session, order_id: int, actor_id: Optional[int] = None,
                       source: str = "system", evidence: Optional[Dict[str, Any]] = None,
                       note: Optional[str] = None) -> Order:
        """IN_DELIVERY -> DELIVERED"""
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            apply_transition(
                session, order, OrderStatus.DELIVERED.value,
                actor_id=actor_id, reason=note, source=source, extra=evidence,
                delivered_at=get_naive_utc_now(),
            )
            return order

    def seller_mark_delivered(self, session: Session, order_id: int, actor_id: int, is_admin: bool = False,
                              note: Optional[str] = None) -> Order:
        """Manual delivery attested by the seller (or an admin on their behalf)"""
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if not is_admin and order.seller_id != actor_id:
                raise ForbiddenError("Only the seller can mark this order as delivered")
            if order.status != OrderStatus.IN_DELIVERY.value:
                raise InvalidStateError(
                    f"Order {order_id} is not awaiting delivery (status: {order.status})",
                    details={"order_id": order_id, "status": order.status},
                )

            for item in self.stocked_items(order):
                inventory_allocator.mark_delivered(session, item.id)

            self.mark_delivered(
                session, order_id, actor_id=actor_id, source="admin" if is_admin else "seller",
                evidence={"delivery": "manual"}, note=note,
            )

        notification_service.notify(
            order.buyer_id, NotificationKind.ORDER_DELIVERED, "Order delivered",
            f"The seller marked order #{order.id} as delivered.", {"order_id": order.id},
        )
        return order

    # ------------------------------------------------------------------
    # Buyer actions
    # ------------------------------------------------------------------

    def cancel_order(self, session: Session, order_id: int, actor_id: Optional[int] = None,
                     reason: str = "buyer_cancelled", source: str = "buyer") -> Order:
        """
        CREATED/AWAITING_PAYMENT -> CANCELLED, failing pending payments and
        releasing inventory holds in the same transaction.
        """
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if source == "buyer" and order.buyer_id != actor_id:
                raise ForbiddenError("Only the buyer can cancel this order")
            if order.status not in CANCELLABLE_STATES:
                raise InvalidStateError(
                    f"Order {order_id} can no longer be cancelled (status: {order.status})",
                    details={"order_id": order_id, "status": order.status},
                )

            failed_payments = payment_service.fail_pending_for_order(session, order_id, reason)
            released = inventory_allocator.release_for_order(session, order_id)
            apply_transition(
                session, order, OrderStatus.CANCELLED.value,
                actor_id=actor_id, reason=reason, source=source,
                extra={"released_units": released, "failed_payments": failed_payments},
                cancelled_at=get_naive_utc_now(),
            )

        notification_service.notify(
            order.buyer_id, NotificationKind.ORDER_CANCELLED, "Order cancelled",
            f"Order #{order.id} was cancelled.", {"order_id": order.id, "reason": reason},
        )
        return order

    def confirm_receipt(self, session: Session, order_id: int, buyer_id: Optional[int],
                        source: str = "buyer") -> Order:
        """DELIVERED -> COMPLETED by the buyer or the auto-complete timer"""
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if source == "buyer" and order.buyer_id != buyer_id:
                raise ForbiddenError("Only the buyer can confirm receipt")
            if order.status != OrderStatus.DELIVERED.value:
                raise InvalidStateError(
                    f"Order {order_id} is not delivered (status: {order.status})",
                    details={"order_id": order_id, "status": order.status},
                )
            apply_transition(
                session, order, OrderStatus.COMPLETED.value,
                actor_id=buyer_id, source=source, completed_at=get_naive_utc_now(),
            )

        notification_service.notify(
            order.seller_id, NotificationKind.ORDER_COMPLETED, "Order completed",
            f"Order #{order.id} was completed.", {"order_id": order.id},
        )
        return order


order_service = OrderService()
