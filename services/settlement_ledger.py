"""
Settlement Ledger
=================

Append-only postings per user. Amounts are positive; entry_type gives the sign
(CREDIT +, DEBIT -). Balances are never stored, only aggregated:

    held      = signed sum of HELD entries
    available = signed sum of AVAILABLE entries

Lifecycle of one confirmed payment, all for the seller:

    confirmation  CREDIT HELD ORDER_PAYMENT        held += total
    release       DEBIT  HELD ORDER_PAYMENT        held -= total
                  CREDIT AVAILABLE ORDER_PAYMENT   available += total
    refund        DEBIT  HELD REFUND               held -= total
    payout        DEBIT  AVAILABLE PAYOUT          available -= amount

Each settlement step is unique per payment_id (partial unique indexes on
ledger_entries), and release/refund run under the order's row lock, so a second
release or a release racing a refund cannot post twice.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    LedgerEntry, LedgerEntryType, LedgerSource, LedgerState, Order, OrderEventType,
    OrderStatus, Payment
)
from services.inventory_allocator import inventory_allocator
from services.notification_service import NotificationKind, format_cents, notification_service
from services.payment_service import payment_service
from utils.atomic_transactions import atomic_transaction, lock_ledger_account, lock_order
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidStateError, NotFoundError, ValidationError
from utils.order_state_machine import apply_transition, record_order_event

logger = logging.getLogger(__name__)


class BalanceSummary(NamedTuple):
    user_id: int
    currency: str
    held_cents: int
    available_cents: int
    refunded_cents: int


class SettlementStatus(NamedTuple):
    """Settlement view of one order, returned by admin release/refund"""
    order_id: int
    order_status: str
    settlement: str  # pending | held | released | already_released | refunded
    held_cents: int
    available_cents: int


def _signed_amount():
    return case(
        (LedgerEntry.entry_type == LedgerEntryType.CREDIT.value, LedgerEntry.amount_cents),
        else_=-LedgerEntry.amount_cents,
    )


class SettlementLedger:

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _find_entry(self, session: Session, payment_id: int, entry_type: LedgerEntryType,
                    state: LedgerState, source: LedgerSource) -> Optional[LedgerEntry]:
        return session.execute(
            select(LedgerEntry).where(
                LedgerEntry.payment_id == payment_id,
                LedgerEntry.entry_type == entry_type.value,
                LedgerEntry.state == state.value,
                LedgerEntry.source == source.value,
            )
        ).scalar_one_or_none()

    def find_held_credit(self, session: Session, payment_id: int) -> Optional[LedgerEntry]:
        return self._find_entry(session, payment_id, LedgerEntryType.CREDIT, LedgerState.HELD,
                                LedgerSource.ORDER_PAYMENT)

    def is_released(self, session: Session, payment_id: int) -> bool:
        return self._find_entry(session, payment_id, LedgerEntryType.CREDIT, LedgerState.AVAILABLE,
                                LedgerSource.ORDER_PAYMENT) is not None

    def is_refunded(self, session: Session, payment_id: int) -> bool:
        return self._find_entry(session, payment_id, LedgerEntryType.DEBIT, LedgerState.HELD,
                                LedgerSource.REFUND) is not None

    def order_is_released(self, session: Session, order_id: int) -> bool:
        payment = payment_service.find_confirmed_for_order(session, order_id)
        return payment is not None and self.is_released(session, payment.id)

    def _post(self, session: Session, *, user_id: int, order_id: Optional[int], payment_id: Optional[int],
              entry_type: LedgerEntryType, state: LedgerState, source: LedgerSource,
              amount_cents: int, currency: str, description: str) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            order_id=order_id,
            payment_id=payment_id,
            entry_type=entry_type.value,
            state=state.value,
            source=source.value,
            amount_cents=amount_cents,
            currency=currency,
            description=description,
            created_at=get_naive_utc_now(),
        )
        session.add(entry)
        session.flush()
        logger.info(
            f"LEDGER_POST: user={user_id} {entry_type.value}/{state.value}/{source.value} "
            f"amount={amount_cents} order={order_id}"
        )
        return entry

    # ------------------------------------------------------------------
    # Postings
    # ------------------------------------------------------------------

    def credit_held(self, session: Session, order: Order, payment: Payment) -> LedgerEntry:
        """HELD credit to the seller on payment confirmation; one per payment"""
        with atomic_transaction(session):
            existing = self.find_held_credit(session, payment.id)
            if existing is not None:
                logger.info(f"LEDGER_HELD_EXISTS: payment={payment.id} already credited")
                return existing

            return self._post(
                session,
                user_id=order.seller_id,
                order_id=order.id,
                payment_id=payment.id,
                entry_type=LedgerEntryType.CREDIT,
                state=LedgerState.HELD,
                source=LedgerSource.ORDER_PAYMENT,
                amount_cents=payment.amount_cents,
                currency=payment.currency,
                description=f"Payment held for order #{order.id}",
            )

    def release(self, session: Session, order_id: int, actor_id: Optional[int] = None,
                reason: Optional[str] = None, source: str = "system") -> SettlementStatus:
        """
        Make a COMPLETED order's held funds available to the seller.

        Returns `already_released` instead of posting twice.
        """
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            payment = payment_service.find_confirmed_for_order(session, order_id)
            held = self.find_held_credit(session, payment.id) if payment else None
            if held is None:
                raise InvalidStateError(f"Order {order_id} has no held funds", details={"order_id": order_id})

            if self.is_released(session, payment.id):
                logger.info(f"LEDGER_RELEASE_SKIPPED: order={order_id} already released")
                return self._status(session, order, "already_released")

            if self.is_refunded(session, payment.id) or order.status == OrderStatus.REFUNDED.value:
                raise InvalidStateError(f"Order {order_id} was refunded", details={"order_id": order_id})

            if order.status != OrderStatus.COMPLETED.value:
                raise InvalidStateError(
                    f"Order {order_id} must be completed before release (status: {order.status})",
                    details={"order_id": order_id, "status": order.status},
                )

            self._post(
                session, user_id=held.user_id, order_id=order.id, payment_id=payment.id,
                entry_type=LedgerEntryType.DEBIT, state=LedgerState.HELD, source=LedgerSource.ORDER_PAYMENT,
                amount_cents=held.amount_cents, currency=held.currency,
                description=f"Release of order #{order.id}",
            )
            self._post(
                session, user_id=held.user_id, order_id=order.id, payment_id=payment.id,
                entry_type=LedgerEntryType.CREDIT, state=LedgerState.AVAILABLE, source=LedgerSource.ORDER_PAYMENT,
                amount_cents=held.amount_cents, currency=held.currency,
                description=f"Funds available for order #{order.id}",
            )
            record_order_event(
                session, order.id, OrderEventType.RELEASED.value, actor_id=actor_id,
                metadata={"reason": reason, "source": source, "amount_cents": held.amount_cents},
            )
            logger.info(f"💰 LEDGER_RELEASE: order={order_id} seller={held.user_id} amount={held.amount_cents}")
            return self._status(session, order, "released")

    def refund(self, session: Session, order_id: int, actor_id: Optional[int] = None,
               reason: Optional[str] = None, source: str = "system") -> SettlementStatus:
        """
        Reverse the seller's held credit and mark the order REFUNDED.

        Refused once the funds were released: money already made available to
        the seller is recovered by a manual chargeback, not by this ledger.
        """
        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if order.status == OrderStatus.REFUNDED.value:
                raise InvalidStateError(f"Order {order_id} already refunded", details={"order_id": order_id})

            payment = payment_service.find_confirmed_for_order(session, order_id)
            held = self.find_held_credit(session, payment.id) if payment else None
            if held is None:
                raise InvalidStateError(f"Order {order_id} has no held funds", details={"order_id": order_id})

            if self.is_released(session, payment.id):
                raise InvalidStateError(
                    f"Funds for order {order_id} were already released to the seller",
                    details={"order_id": order_id},
                )

            self._post(
                session, user_id=held.user_id, order_id=order.id, payment_id=payment.id,
                entry_type=LedgerEntryType.DEBIT, state=LedgerState.HELD, source=LedgerSource.REFUND,
                amount_cents=held.amount_cents, currency=held.currency,
                description=f"Refund of order #{order.id} to buyer {order.buyer_id}",
            )
            apply_transition(
                session, order, OrderStatus.REFUNDED.value,
                actor_id=actor_id, reason=reason, source=source,
                extra={"amount_cents": held.amount_cents},
            )
            # Undelivered units go back on sale; delivered ones stay as evidence
            inventory_allocator.release_for_order(session, order.id)

            logger.info(f"↩️ LEDGER_REFUND: order={order_id} buyer={order.buyer_id} amount={held.amount_cents}")
            return self._status(session, order, "refunded")

    def request_payout(self, session: Session, user_id: int, amount_cents: int,
                       currency: Optional[str] = None) -> LedgerEntry:
        """Withdraw from the available balance; never lets it go negative"""
        currency = currency or Config.DEFAULT_CURRENCY
        if amount_cents <= 0:
            raise ValidationError("Payout amount must be positive")

        with atomic_transaction(session):
            lock_ledger_account(session, user_id)
            available = self.balances(session, user_id, currency).available_cents
            if amount_cents > available:
                raise InvalidStateError(
                    "Insufficient available balance",
                    details={"available_cents": available, "requested_cents": amount_cents},
                )
            entry = self._post(
                session, user_id=user_id, order_id=None, payment_id=None,
                entry_type=LedgerEntryType.DEBIT, state=LedgerState.AVAILABLE, source=LedgerSource.PAYOUT,
                amount_cents=amount_cents, currency=currency,
                description="Payout to seller",
            )

        notification_service.notify(
            user_id, NotificationKind.PAYOUT_CONFIRMED, "Payout confirmed",
            f"Your payout of {format_cents(amount_cents, currency)} is on its way.",
            {"ledger_entry_id": entry.id},
        )
        return entry

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def balances(self, session: Session, user_id: int, currency: Optional[str] = None) -> BalanceSummary:
        currency = currency or Config.DEFAULT_CURRENCY
        rows = session.execute(
            select(LedgerEntry.state, func.coalesce(func.sum(_signed_amount()), 0))
            .where(LedgerEntry.user_id == user_id, LedgerEntry.currency == currency)
            .group_by(LedgerEntry.state)
        ).all()
        totals = {state: int(total) for state, total in rows}

        refunded = session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount_cents), 0)).where(
                LedgerEntry.user_id == user_id,
                LedgerEntry.currency == currency,
                LedgerEntry.source == LedgerSource.REFUND.value,
            )
        ).scalar_one()

        return BalanceSummary(
            user_id=user_id,
            currency=currency,
            held_cents=totals.get(LedgerState.HELD.value, 0),
            available_cents=totals.get(LedgerState.AVAILABLE.value, 0),
            refunded_cents=int(refunded),
        )

    def settlement_status(self, session: Session, order_id: int) -> SettlementStatus:
        order = session.get(Order, order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        payment = payment_service.find_confirmed_for_order(session, order_id)
        if payment is None or self.find_held_credit(session, payment.id) is None:
            settlement = "pending"
        elif self.is_refunded(session, payment.id):
            settlement = "refunded"
        elif self.is_released(session, payment.id):
            settlement = "released"
        else:
            settlement = "held"
        return self._status(session, order, settlement)

    def _status(self, session: Session, order: Order, settlement: str) -> SettlementStatus:
        rows = session.execute(
            select(LedgerEntry.state, func.coalesce(func.sum(_signed_amount()), 0))
            .where(
                LedgerEntry.order_id == order.id,
                LedgerEntry.source.in_([LedgerSource.ORDER_PAYMENT.value, LedgerSource.REFUND.value]),
            )
            .group_by(LedgerEntry.state)
        ).all()
        totals = {state: int(total) for state, total in rows}
        return SettlementStatus(
            order_id=order.id,
            order_status=order.status,
            settlement=settlement,
            held_cents=totals.get(LedgerState.HELD.value, 0),
            available_cents=totals.get(LedgerState.AVAILABLE.value, 0),
        )


settlement_ledger = SettlementLedger()
