"""
Inventory allocation tests: single-unit races, hold expiry and seller uploads
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import BUYER_ID
from models import InventoryItem, InventoryStatus
from services.catalog_service import catalog_service
from services.inventory_allocator import inventory_allocator
from services.order_service import order_service
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidStateError, OutOfStockError, ValidationError

HOLD = timedelta(minutes=15)


def _new_order(session, listing_id, buyer_id=BUYER_ID):
    listing = catalog_service.get_listing(session, listing_id)
    with atomic_transaction(session):
        return order_service.create_order(
            session, buyer_id, listing, 1, expires_at=get_naive_utc_now() + HOLD
        )


def _new_order_item(session, listing_id, buyer_id=BUYER_ID):
    return _new_order(session, listing_id, buyer_id).items[0].id


def _units(session, listing_id):
    return session.execute(
        select(InventoryItem).where(InventoryItem.listing_id == listing_id)
        .order_by(InventoryItem.id).execution_options(populate_existing=True)
    ).scalars().all()


class TestReserve:

    def test_reserve_claims_available_unit(self, db_session, make_listing):
        listing = make_listing(stock=2)
        order_item_id = _new_order_item(db_session, listing.id)

        unit = inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)

        assert unit.status == InventoryStatus.RESERVED.value
        assert unit.order_item_id == order_item_id
        assert unit.reserved_until is not None
        assert inventory_allocator.available_count(db_session, listing.id) == 1

    def test_reserve_is_idempotent_per_order_item(self, db_session, make_listing):
        listing = make_listing(stock=2)
        order_item_id = _new_order_item(db_session, listing.id)

        first = inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)
        second = inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)

        assert first.id == second.id
        assert inventory_allocator.available_count(db_session, listing.id) == 1

    def test_reserve_without_stock_raises(self, db_session, make_listing):
        listing = make_listing(stock=1)
        inventory_allocator.reserve(db_session, listing.id, _new_order_item(db_session, listing.id), HOLD)

        with pytest.raises(OutOfStockError) as exc_info:
            inventory_allocator.reserve(db_session, listing.id, _new_order_item(db_session, listing.id), HOLD)
        assert exc_info.value.code == "out_of_stock"

    def test_concurrent_reserve_of_single_unit_has_one_winner(self, db_session, session_factory, make_listing):
        listing = make_listing(stock=1)
        order_item_ids = [_new_order_item(db_session, listing.id) for _ in range(8)]

        def attempt(order_item_id):
            session = session_factory()
            try:
                inventory_allocator.reserve(session, listing.id, order_item_id, HOLD)
                return "ok", order_item_id
            except OutOfStockError:
                return "out_of_stock", order_item_id
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, order_item_ids))

        winners = [order_item_id for outcome, order_item_id in outcomes if outcome == "ok"]
        assert len(winners) == 1
        assert [outcome for outcome, _ in outcomes].count("out_of_stock") == 7
        units = _units(db_session, listing.id)
        assert units[0].status == InventoryStatus.RESERVED.value
        assert units[0].order_item_id == winners[0]

    def test_expired_hold_is_reclaimed_by_next_reserve(self, db_session, make_listing):
        listing = make_listing(stock=1)
        past = get_naive_utc_now() - timedelta(hours=1)
        first_item = _new_order_item(db_session, listing.id)
        inventory_allocator.reserve(db_session, listing.id, first_item, HOLD, now=past)

        second_item = _new_order_item(db_session, listing.id)
        unit = inventory_allocator.reserve(db_session, listing.id, second_item, HOLD)

        assert unit.order_item_id == second_item
        assert unit.status == InventoryStatus.RESERVED.value


class TestReleaseAndDelivery:

    def test_reserve_then_release_restores_unit(self, db_session, make_listing):
        listing = make_listing(stock=1)
        order_item_id = _new_order_item(db_session, listing.id)
        inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)

        assert inventory_allocator.release(db_session, order_item_id) is True

        unit = _units(db_session, listing.id)[0]
        assert unit.status == InventoryStatus.AVAILABLE.value
        assert unit.order_item_id is None
        assert unit.reserved_until is None
        assert inventory_allocator.release(db_session, order_item_id) is False

    def test_delivered_unit_is_never_released(self, db_session, make_listing):
        listing = make_listing(stock=1)
        order_item_id = _new_order_item(db_session, listing.id)
        inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)
        inventory_allocator.mark_delivered(db_session, order_item_id)

        assert inventory_allocator.release(db_session, order_item_id) is False
        assert _units(db_session, listing.id)[0].status == InventoryStatus.DELIVERED.value

    def test_mark_delivered_is_idempotent(self, db_session, make_listing):
        listing = make_listing(stock=1)
        order_item_id = _new_order_item(db_session, listing.id)
        inventory_allocator.reserve(db_session, listing.id, order_item_id, HOLD)

        first = inventory_allocator.mark_delivered(db_session, order_item_id)
        second = inventory_allocator.mark_delivered(db_session, order_item_id)
        assert first.id == second.id
        assert second.delivered_at is not None

    def test_mark_delivered_without_hold_raises(self, db_session, make_listing):
        listing = make_listing(stock=1)
        order_item_id = _new_order_item(db_session, listing.id)

        with pytest.raises(InvalidStateError):
            inventory_allocator.mark_delivered(db_session, order_item_id)

    def test_pinned_hold_survives_sweeper(self, db_session, make_listing):
        listing = make_listing(stock=1)
        order = _new_order(db_session, listing.id)
        inventory_allocator.reserve(db_session, listing.id, order.items[0].id, HOLD)
        assert inventory_allocator.pin_for_order(db_session, order.id) == 1

        reclaimed = inventory_allocator.reclaim_expired(db_session, now=get_naive_utc_now() + timedelta(days=1))

        assert reclaimed == 0
        assert _units(db_session, listing.id)[0].status == InventoryStatus.RESERVED.value

    def test_sweeper_reclaims_elapsed_holds(self, db_session, make_listing):
        listing = make_listing(stock=2)
        for _ in range(2):
            inventory_allocator.reserve(db_session, listing.id, _new_order_item(db_session, listing.id), HOLD)

        reclaimed = inventory_allocator.reclaim_expired(db_session, now=get_naive_utc_now() + HOLD * 2)

        assert reclaimed == 2
        assert all(unit.status == InventoryStatus.AVAILABLE.value for unit in _units(db_session, listing.id))


class TestInventoryUpload:

    def test_add_items_skips_blanks_and_duplicates(self, db_session, make_listing):
        listing = make_listing(stock=0)

        result = inventory_allocator.add_items(db_session, listing.id, ["AAA", " BBB ", "", "AAA"])

        assert result == {"created": 2, "skipped": 2}
        assert [unit.code for unit in _units(db_session, listing.id)] == ["AAA", "BBB"]

    def test_add_items_skips_codes_already_stored(self, db_session, make_listing):
        listing = make_listing(stock=0)
        inventory_allocator.add_items(db_session, listing.id, ["AAA"])

        result = inventory_allocator.add_items(db_session, listing.id, ["AAA", "CCC"])

        assert result == {"created": 1, "skipped": 1}

    def test_import_items_splits_text(self, db_session, make_listing):
        listing = make_listing(stock=0)

        result = inventory_allocator.import_items(db_session, listing.id, "K1\nK2, K3;K4\n\n")

        assert result["created"] == 4
        assert inventory_allocator.available_count(db_session, listing.id) == 4

    def test_empty_upload_is_rejected(self, db_session, make_listing):
        listing = make_listing(stock=0)

        with pytest.raises(ValidationError):
            inventory_allocator.add_items(db_session, listing.id, ["  ", ""])
