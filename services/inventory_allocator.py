"""
Inventory Allocator
===================

Owns every write to InventoryItem.status. Units move
AVAILABLE -> RESERVED -> DELIVERED, or RESERVED -> AVAILABLE when a hold is
released or expires. Each claim is a single conditional UPDATE guarded by the
eligibility predicate, so concurrent buyers of the same unit cannot both win:
the loser's UPDATE matches zero rows and it moves on or reports no stock.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from models import InventoryItem, InventoryStatus, OrderItemSnapshot
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidStateError, OutOfStockError, ValidationError

logger = logging.getLogger(__name__)

_CODE_SEPARATORS = re.compile(r"[\n,;]+")


def _eligible(now: datetime):
    """Unit is free, or reserved with a hold that has elapsed (reclaimable)"""
    return or_(
        InventoryItem.status == InventoryStatus.AVAILABLE.value,
        and_(
            InventoryItem.status == InventoryStatus.RESERVED.value,
            InventoryItem.reserved_until.isnot(None),
            InventoryItem.reserved_until < now,
        ),
    )


def _order_item_ids(order_id: int):
    return select(OrderItemSnapshot.id).where(OrderItemSnapshot.order_id == order_id)


class InventoryAllocator:
    """Per-listing stock units with at most one active reservation per unit"""

    # Candidates fetched per round; a round only fails over when a concurrent
    # caller claimed the candidate between our SELECT and UPDATE
    CANDIDATE_BATCH = 5
    MAX_ROUNDS = 3

    def reserve(
        self,
        session: Session,
        listing_id: int,
        order_item_id: int,
        hold_duration: timedelta,
        now: Optional[datetime] = None,
    ) -> InventoryItem:
        """
        Reserve one unit of `listing_id` for `order_item_id`.

        Returns the reserved InventoryItem. Raises OutOfStockError when no
        AVAILABLE or expired-RESERVED unit could be claimed. Calling again for an
        order item that already holds a unit returns that unit.
        """
        now = now or get_naive_utc_now()
        reserved_until = now + hold_duration

        with atomic_transaction(session):
            existing = session.execute(
                select(InventoryItem).where(InventoryItem.order_item_id == order_item_id)
            ).scalar_one_or_none()
            if existing is not None:
                logger.debug(f"RESERVE_IDEMPOTENT: order_item={order_item_id} already holds unit {existing.id}")
                return existing

            tried: List[int] = []
            for _ in range(self.MAX_ROUNDS):
                query = (
                    select(InventoryItem.id, InventoryItem.status)
                    .where(InventoryItem.listing_id == listing_id, _eligible(now))
                    .order_by(InventoryItem.id)
                    .limit(self.CANDIDATE_BATCH)
                    .with_for_update(skip_locked=True)
                )
                if tried:
                    query = query.where(InventoryItem.id.notin_(tried))
                candidates = session.execute(query).all()
                if not candidates:
                    break

                for candidate_id, previous_status in candidates:
                    tried.append(candidate_id)
                    result = session.execute(
                        update(InventoryItem)
                        .where(InventoryItem.id == candidate_id, _eligible(now))
                        .values(
                            status=InventoryStatus.RESERVED.value,
                            order_item_id=order_item_id,
                            reserved_at=now,
                            reserved_until=reserved_until,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        if previous_status == InventoryStatus.RESERVED.value:
                            logger.info(f"♻️ RESERVE_RECLAIMED: unit={candidate_id} expired hold reclaimed")
                        logger.info(
                            f"RESERVE_OK: listing={listing_id} unit={candidate_id} "
                            f"order_item={order_item_id} until={reserved_until.isoformat()}"
                        )
                        return session.get(InventoryItem, candidate_id, populate_existing=True)

                    logger.debug(f"RESERVE_RACE_LOST: unit={candidate_id} claimed concurrently")

            logger.info(f"RESERVE_CONFLICT: listing={listing_id} order_item={order_item_id} no unit available")
            raise OutOfStockError(
                "Out of stock", details={"listing_id": listing_id}
            )

    def release(self, session: Session, order_item_id: int) -> bool:
        """Return a RESERVED unit to AVAILABLE. DELIVERED units are never released."""
        with atomic_transaction(session):
            result = session.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.order_item_id == order_item_id,
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                )
                .values(
                    status=InventoryStatus.AVAILABLE.value,
                    order_item_id=None,
                    reserved_at=None,
                    reserved_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount == 1
            if released:
                logger.info(f"RELEASE_OK: order_item={order_item_id} unit back to available")
            return released

    def release_for_order(self, session: Session, order_id: int) -> int:
        """Release every unit still reserved by the order's items"""
        with atomic_transaction(session):
            result = session.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.order_item_id.in_(_order_item_ids(order_id)),
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                )
                .values(
                    status=InventoryStatus.AVAILABLE.value,
                    order_item_id=None,
                    reserved_at=None,
                    reserved_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.info(f"RELEASE_OK: order={order_id} released {result.rowcount} unit(s)")
            return result.rowcount

    def pin_for_order(self, session: Session, order_id: int) -> int:
        """
        Clear the hold expiry of the order's reserved units once it is paid.

        Returns the number of units still held by the order; fewer than the
        number of order items means a hold was reclaimed before payment arrived.
        """
        with atomic_transaction(session):
            result = session.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.order_item_id.in_(_order_item_ids(order_id)),
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                )
                .values(reserved_until=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def mark_delivered(self, session: Session, order_item_id: int, now: Optional[datetime] = None) -> InventoryItem:
        """RESERVED -> DELIVERED. Terminal; repeated calls return the delivered unit."""
        now = now or get_naive_utc_now()
        with atomic_transaction(session):
            result = session.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.order_item_id == order_item_id,
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                )
                .values(
                    status=InventoryStatus.DELIVERED.value,
                    delivered_at=now,
                    reserved_until=None,
                )
                .execution_options(synchronize_session=False)
            )

            item = session.execute(
                select(InventoryItem)
                .where(InventoryItem.order_item_id == order_item_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()

            if item is None or item.status != InventoryStatus.DELIVERED.value:
                raise InvalidStateError(
                    f"Order item {order_item_id} holds no reserved unit",
                    details={"order_item_id": order_item_id},
                )
            if result.rowcount == 1:
                logger.info(f"DELIVER_OK: order_item={order_item_id} unit={item.id}")
            return item

    def reclaim_expired(self, session: Session, now: Optional[datetime] = None, batch_size: int = 100) -> int:
        """Background reclaim of elapsed holds (the reserve path also reclaims lazily)"""
        now = now or get_naive_utc_now()
        with atomic_transaction(session):
            expired_ids = (
                select(InventoryItem.id)
                .where(
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                    InventoryItem.reserved_until.isnot(None),
                    InventoryItem.reserved_until < now,
                )
                .limit(batch_size)
            )
            result = session.execute(
                update(InventoryItem)
                .where(
                    InventoryItem.id.in_(expired_ids),
                    InventoryItem.status == InventoryStatus.RESERVED.value,
                    InventoryItem.reserved_until < now,
                )
                .values(
                    status=InventoryStatus.AVAILABLE.value,
                    order_item_id=None,
                    reserved_at=None,
                    reserved_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                logger.info(f"♻️ HOLD_SWEEP: reclaimed {result.rowcount} expired hold(s)")
            return result.rowcount

    def available_count(self, session: Session, listing_id: int, now: Optional[datetime] = None) -> int:
        """Units a new checkout could reserve right now"""
        now = now or get_naive_utc_now()
        return session.execute(
            select(func.count(InventoryItem.id)).where(
                InventoryItem.listing_id == listing_id, _eligible(now)
            )
        ).scalar_one()

    def add_items(self, session: Session, listing_id: int, codes: Iterable[str]) -> Dict[str, int]:
        """
        Seller inventory upload.

        Codes are trimmed, blanks dropped, and duplicates (within the batch or
        already stored for the listing) skipped.
        """
        normalized: List[str] = []
        seen = set()
        submitted = 0
        for raw in codes:
            submitted += 1
            code = (raw or "").strip()
            if not code or code in seen:
                continue
            seen.add(code)
            normalized.append(code)

        if not normalized:
            raise ValidationError("No inventory codes provided")

        with atomic_transaction(session):
            existing = set(
                session.execute(
                    select(InventoryItem.code).where(
                        InventoryItem.listing_id == listing_id,
                        InventoryItem.code.in_(normalized),
                    )
                ).scalars()
            )
            fresh = [code for code in normalized if code not in existing]
            session.add_all(
                InventoryItem(listing_id=listing_id, code=code, status=InventoryStatus.AVAILABLE.value)
                for code in fresh
            )
            session.flush()

        logger.info(f"📦 INVENTORY_UPLOAD: listing={listing_id} created={len(fresh)} skipped={submitted - len(fresh)}")
        return {"created": len(fresh), "skipped": submitted - len(fresh)}

    def import_items(self, session: Session, listing_id: int, raw_text: str) -> Dict[str, int]:
        """Upload from pasted text: one code per line, or comma/semicolon separated"""
        codes = [code for code in _CODE_SEPARATORS.split(raw_text or "") if code.strip()]
        return self.add_items(session, listing_id, codes)


inventory_allocator = InventoryAllocator()
