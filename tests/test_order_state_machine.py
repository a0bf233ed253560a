"""Order state machine and buyer/seller order action tests"""

import pytest
from sqlalchemy import select

from conftest import BUYER_ID, OTHER_BUYER_ID, SELLER_ID, pix_body
from models import InventoryItem, Order, OrderEvent, OrderStatus, Payment
from services.notification_service import NotificationKind
from services.order_service import order_service
from utils.exceptions import ForbiddenError, InvalidStateError, NotFoundError
from utils.order_state_machine import OrderStateValidator, apply_transition


class TestOrderStateValidator:

    @pytest.mark.parametrize("current,new", [
        (None, "created"),
        ("created", "awaiting_payment"),
        ("awaiting_payment", "paid"),
        ("awaiting_payment", "cancelled"),
        ("paid", "in_delivery"),
        ("in_delivery", "delivered"),
        ("delivered", "completed"),
        ("delivered", "disputed"),
        ("completed", "disputed"),
        ("disputed", "completed"),
        ("disputed", "refunded"),
    ])
    def test_legal_transitions(self, current, new):
        assert OrderStateValidator.is_valid_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("created", "paid"),
        ("awaiting_payment", "delivered"),
        ("cancelled", "awaiting_payment"),
        ("refunded", "completed"),
        ("completed", "cancelled"),
        ("paid", "cancelled"),
    ])
    def test_illegal_transitions(self, current, new):
        assert not OrderStateValidator.is_valid_transition(current, new)
        with pytest.raises(InvalidStateError):
            OrderStateValidator.validate_transition(current, new, order_id=1)

    def test_terminal_states(self):
        assert OrderStateValidator.is_terminal_state(OrderStatus.CANCELLED.value)
        assert OrderStateValidator.is_terminal_state(OrderStatus.REFUNDED.value)
        assert not OrderStateValidator.is_terminal_state(OrderStatus.COMPLETED.value)

    def test_stale_transition_loses_compare_and_set(self, db_session, make_listing, orchestrator):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)
        order = checkout.order
        order_service.cancel_order(db_session, order.id, actor_id=BUYER_ID)

        # A caller that read the order before the cancel
        stale = Order(id=order.id, status=OrderStatus.AWAITING_PAYMENT.value)

        with pytest.raises(InvalidStateError):
            apply_transition(db_session, stale, OrderStatus.PAID.value, source="test")
        db_session.rollback()
        assert db_session.get(Order, order.id, populate_existing=True).status == "cancelled"


class TestBuyerActions:

    def test_cancel_releases_hold_and_fails_payment(self, db_session, make_listing, orchestrator, notifications):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)

        order = order_service.cancel_order(db_session, checkout.order.id, actor_id=BUYER_ID)

        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert db_session.get(Payment, checkout.payment.id, populate_existing=True).status == "failed"
        unit = db_session.execute(select(InventoryItem).execution_options(populate_existing=True)).scalar_one()
        assert unit.status == "available"
        assert NotificationKind.ORDER_CANCELLED in notifications.kinds_for(BUYER_ID)

    def test_only_buyer_can_cancel(self, db_session, make_listing, orchestrator):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)

        with pytest.raises(ForbiddenError):
            order_service.cancel_order(db_session, checkout.order.id, actor_id=OTHER_BUYER_ID)

    def test_paid_order_cannot_be_cancelled(self, db_session, paid_order):
        order = paid_order(delivery_type="manual")

        with pytest.raises(InvalidStateError):
            order_service.cancel_order(db_session, order.id, actor_id=BUYER_ID)

    def test_confirm_receipt_completes_order(self, db_session, delivered_order, notifications):
        order = delivered_order()

        completed = order_service.confirm_receipt(db_session, order.id, BUYER_ID)

        assert completed.status == "completed"
        assert completed.completed_at is not None
        assert NotificationKind.ORDER_COMPLETED in notifications.kinds_for(SELLER_ID)

    def test_confirm_receipt_requires_delivery(self, db_session, paid_order):
        order = paid_order(delivery_type="manual")

        with pytest.raises(InvalidStateError):
            order_service.confirm_receipt(db_session, order.id, BUYER_ID)

    def test_participants_only(self, db_session, paid_order):
        order = paid_order()

        assert order_service.get_order_for_participant(db_session, order.id, SELLER_ID).id == order.id
        with pytest.raises(NotFoundError):
            order_service.get_order_for_participant(db_session, order.id, OTHER_BUYER_ID)


class TestManualDelivery:

    def test_seller_marks_manual_order_delivered(self, db_session, paid_order, notifications):
        order = paid_order(delivery_type="manual")

        delivered = order_service.seller_mark_delivered(db_session, order.id, SELLER_ID, note="Sent by email")

        assert delivered.status == "delivered"
        assert delivered.delivered_at is not None
        assert db_session.execute(select(InventoryItem)).scalars().all() == []
        assert NotificationKind.ORDER_DELIVERED in notifications.kinds_for(BUYER_ID)

    def test_manual_listing_sells_without_inventory(self, db_session, make_listing, orchestrator, webhook_service):
        listing = make_listing(stock=0, delivery_type="manual", price_cents=4000)

        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 2)
        webhook_service.handle_webhook(db_session, pix_body(checkout.payment.txid, 8000))
        delivered = order_service.seller_mark_delivered(db_session, checkout.order.id, SELLER_ID)

        assert delivered.status == "delivered"
        events = order_service.list_events(db_session, checkout.order.id)
        assert "late_payment" not in [event.event_type for event in events]

    def test_only_seller_marks_delivered(self, db_session, paid_order):
        order = paid_order(delivery_type="manual")

        with pytest.raises(ForbiddenError):
            order_service.seller_mark_delivered(db_session, order.id, BUYER_ID)

    def test_event_trail_is_complete(self, db_session, paid_order):
        order = paid_order(delivery_type="manual")
        order_service.seller_mark_delivered(db_session, order.id, SELLER_ID)
        order_service.confirm_receipt(db_session, order.id, BUYER_ID)

        events = db_session.execute(
            select(OrderEvent).where(OrderEvent.order_id == order.id).order_by(OrderEvent.id)
        ).scalars().all()

        assert [event.event_type for event in events] == [
            "created", "awaiting_payment", "paid", "in_delivery", "delivered", "completed",
        ]
        assert events[-1].event_metadata["from"] == "delivered"
        assert events[-1].event_metadata["source"] == "buyer"
