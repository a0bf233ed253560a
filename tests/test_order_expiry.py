"""
Background timer tests: payment expiry, hold sweeper, auto-complete and settlement release
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import BUYER_ID, SELLER_ID, pix_body
from config import Config
from jobs.scheduler import SettlementScheduler
from models import InventoryItem, Order
from services.dispute_resolution import dispute_resolution_service
from services.notification_service import NotificationKind
from services.order_expiry_service import OrderExpiryService
from services.order_service import order_service
from services.settlement_ledger import settlement_ledger
from utils.datetime_helpers import get_naive_utc_now


@pytest.fixture
def expiry_service():
    return OrderExpiryService(batch_size=50)


class TestPaymentExpiry:

    def test_unpaid_order_is_cancelled_after_ttl(self, db_session, make_listing, orchestrator, expiry_service):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)
        later = get_naive_utc_now() + timedelta(seconds=Config.PAYMENT_TTL_SECONDS + 1)

        results = expiry_service.cancel_expired_orders(db_session, now=later)

        assert results["order_ids"] == [checkout.order.id]
        order = db_session.get(Order, checkout.order.id, populate_existing=True)
        assert order.status == "cancelled"
        unit = db_session.execute(select(InventoryItem).execution_options(populate_existing=True)).scalar_one()
        assert unit.status == "available"

    def test_order_within_ttl_is_kept(self, db_session, make_listing, orchestrator, expiry_service):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)

        results = expiry_service.cancel_expired_orders(db_session)

        assert results["processed"] == 0
        assert db_session.get(Order, checkout.order.id, populate_existing=True).status == "awaiting_payment"

    def test_late_payment_after_expiry_is_not_credited(self, db_session, make_listing, orchestrator,
                                                       webhook_service, expiry_service):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)
        later = get_naive_utc_now() + timedelta(seconds=Config.PAYMENT_TTL_SECONDS + 1)
        expiry_service.cancel_expired_orders(db_session, now=later)

        ack = webhook_service.handle_webhook(db_session, pix_body(checkout.payment.txid, 1500)).to_dict()

        assert ack["late_payments"] == 1
        assert settlement_ledger.balances(db_session, SELLER_ID).held_cents == 0

    def test_sweeper_reclaims_holds(self, db_session, make_listing, orchestrator, expiry_service):
        listing = make_listing(stock=1)
        orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)
        later = get_naive_utc_now() + timedelta(seconds=Config.inventory_hold_seconds() + 1)

        assert expiry_service.reclaim_expired_holds(db_session, now=later) == 1


class TestAutoCompleteAndRelease:

    def test_delivered_order_auto_completes(self, db_session, delivered_order, expiry_service):
        order = delivered_order()
        later = get_naive_utc_now() + timedelta(hours=Config.ORDER_AUTO_COMPLETE_HOURS, minutes=1)

        results = expiry_service.auto_complete_delivered(db_session, now=later)

        assert results["order_ids"] == [order.id]
        assert db_session.get(Order, order.id, populate_existing=True).status == "completed"

    def test_completed_order_is_released(self, db_session, delivered_order, expiry_service, notifications):
        order = delivered_order(price_cents=2200)
        order_service.confirm_receipt(db_session, order.id, BUYER_ID)
        later = get_naive_utc_now() + timedelta(hours=Config.SETTLEMENT_RELEASE_DELAY_HOURS, minutes=1)

        results = expiry_service.release_completed_orders(db_session, now=later)

        assert results["order_ids"] == [order.id]
        assert settlement_ledger.balances(db_session, SELLER_ID).available_cents == 2200
        assert NotificationKind.FUNDS_RELEASED in notifications.kinds_for(SELLER_ID)

        again = expiry_service.release_completed_orders(db_session, now=later)
        assert again["processed"] == 0

    def test_open_dispute_blocks_release(self, db_session, delivered_order, expiry_service):
        order = delivered_order()
        order_service.confirm_receipt(db_session, order.id, BUYER_ID)
        dispute_resolution_service.open_dispute(db_session, order.id, BUYER_ID, "Key does not work")
        later = get_naive_utc_now() + timedelta(hours=Config.SETTLEMENT_RELEASE_DELAY_HOURS, minutes=1)

        results = expiry_service.release_completed_orders(db_session, now=later)

        assert results["processed"] == 0
        assert settlement_ledger.balances(db_session, SELLER_ID).available_cents == 0


class TestScheduler:

    def test_jobs_are_registered(self, session_factory):
        scheduler = SettlementScheduler(session_factory=session_factory)
        scheduler.setup_jobs()

        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {
            "cancel_expired_orders",
            "reclaim_expired_holds",
            "deliver_pending_orders",
            "auto_complete_orders",
            "release_completed_orders",
        }

    def test_job_runs_with_own_session(self, db_session, session_factory, make_listing, orchestrator):
        listing = make_listing(stock=1)
        checkout = orchestrator.checkout(db_session, BUYER_ID, listing.id, 1)
        scheduler = SettlementScheduler(
            session_factory=session_factory, expiry_service=OrderExpiryService(batch_size=10)
        )

        results = scheduler.handle_expired_orders()

        assert results["processed"] == 0
        assert db_session.get(Order, checkout.order.id, populate_existing=True).status == "awaiting_payment"
