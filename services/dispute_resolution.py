"""
Dispute Resolution Service for Atomic Admin Operations
Buyer disputes, admin dispute resolution and admin release/refund of orders.
Each action commits the ledger posting, order transition and dispute update together.
"""

import logging
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import (
    AdminAuditLog, Dispute, DisputeStatus, OrderEventType, OrderStatus
)
from services.auth_service import Principal
from services.notification_service import NotificationKind, format_cents, notification_service
from services.order_service import order_service
from services.settlement_ledger import SettlementStatus, settlement_ledger
from utils.atomic_transactions import atomic_transaction, lock_order
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from utils.order_state_machine import apply_transition

logger = logging.getLogger(__name__)

RELEASE = "release"
REFUND = "refund"
RESOLUTION_ACTIONS = {RELEASE, REFUND}


class ResolutionResult(NamedTuple):
    """Result of a dispute resolution operation"""

    dispute_id: int
    order_id: int
    action: str
    dispute_status: str
    order_status: str
    amount_cents: int
    settlement: str


def _clean_reason(reason: Optional[str], required: bool = False) -> Optional[str]:
    text = (reason or "").strip()
    if not text:
        if required:
            raise ValidationError("A reason is required")
        return None
    if len(text) < Config.ADMIN_REASON_MIN_LENGTH:
        raise ValidationError(f"Reason must be at least {Config.ADMIN_REASON_MIN_LENGTH} characters")
    return text


def _require_admin(actor: Principal, action: str) -> None:
    if not actor.is_admin:
        logger.warning(f"🚫 ADMIN_ONLY: user={actor.user_id} attempted {action}")
        raise ForbiddenError(f"Only platform admins can {action}")


def _audit(session: Session, actor_id: int, action: str, entity_type: str, entity_id: int, **metadata) -> None:
    session.add(AdminAuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        audit_metadata=metadata,
        created_at=get_naive_utc_now(),
    ))
    session.flush()


class DisputeResolutionService:
    """Service for atomic dispute and settlement operations"""

    @classmethod
    def get_dispute(cls, session: Session, dispute_id: int) -> Dispute:
        dispute = session.get(Dispute, dispute_id)
        if dispute is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return dispute

    @classmethod
    def find_for_order(cls, session: Session, order_id: int) -> Optional[Dispute]:
        return session.execute(
            select(Dispute).where(Dispute.order_id == order_id).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @classmethod
    def open_dispute(cls, session: Session, order_id: int, buyer_id: int, reason: str) -> Dispute:
        """
        Buyer disputes an order after delivery.

        Allowed once per order, from DELIVERED, or from COMPLETED while the held
        funds have not been released yet.
        """
        reason = _clean_reason(reason, required=True)

        with atomic_transaction(session):
            order = lock_order(session, order_id)
            if order.buyer_id != buyer_id:
                raise ForbiddenError("Only the buyer can open a dispute")
            if cls.find_for_order(session, order_id) is not None:
                raise InvalidStateError("Order already has a dispute", details={"order_id": order_id})
            if not order_service.has_event(session, order_id, OrderEventType.DELIVERED.value):
                raise InvalidStateError(
                    "Order cannot be disputed before delivery",
                    details={"order_id": order_id, "status": order.status},
                )
            if order.status == OrderStatus.COMPLETED.value and settlement_ledger.order_is_released(session, order_id):
                raise InvalidStateError(
                    "Funds were already released, the dispute window is closed",
                    details={"order_id": order_id},
                )

            apply_transition(
                session, order, OrderStatus.DISPUTED.value,
                actor_id=buyer_id, reason=reason, source="buyer",
            )
            dispute = Dispute(
                order_id=order_id,
                opened_by=buyer_id,
                status=DisputeStatus.OPEN.value,
                reason=reason,
                created_at=get_naive_utc_now(),
            )
            session.add(dispute)
            session.flush()

        logger.info(f"⚖️ DISPUTE_OPENED: dispute={dispute.id} order={order_id} buyer={buyer_id}")
        notification_service.notify(
            order.seller_id, NotificationKind.DISPUTE_OPENED, "Dispute opened",
            f"The buyer opened a dispute on order #{order_id}: {reason}",
            {"order_id": order_id, "dispute_id": dispute.id},
        )
        return dispute

    @classmethod
    def resolve_dispute(cls, session: Session, dispute_id: int, actor: Principal, action: str,
                        reason: Optional[str] = None) -> ResolutionResult:
        """
        Admin resolution of an OPEN dispute.

        release: order DISPUTED -> COMPLETED, held funds become available to the
                 seller, dispute REJECTED (the buyer's claim was rejected)
        refund:  held funds reversed, order DISPUTED -> REFUNDED, dispute RESOLVED
        """
        _require_admin(actor, "resolve disputes")
        if action not in RESOLUTION_ACTIONS:
            raise ValidationError(f"Unknown resolution action: {action}")
        reason = _clean_reason(reason)

        with atomic_transaction(session):
            dispute = cls.get_dispute(session, dispute_id)
            order = lock_order(session, dispute.order_id)
            session.refresh(dispute)

            if dispute.status != DisputeStatus.OPEN.value:
                raise InvalidStateError(
                    f"Dispute already resolved: {dispute.status.upper()}",
                    details={"dispute_id": dispute_id, "status": dispute.status},
                )
            if order.status != OrderStatus.DISPUTED.value:
                raise InvalidStateError(
                    f"Order {order.id} is not disputed (status: {order.status})",
                    details={"order_id": order.id, "status": order.status},
                )

            if action == RELEASE:
                apply_transition(
                    session, order, OrderStatus.COMPLETED.value,
                    actor_id=actor.user_id, reason=reason, source="admin",
                    extra={"dispute_id": dispute.id}, completed_at=get_naive_utc_now(),
                )
                status = settlement_ledger.release(
                    session, order.id, actor_id=actor.user_id, reason=reason, source="dispute"
                )
                dispute.status = DisputeStatus.REJECTED.value
                amount_cents = status.available_cents
            else:
                status = settlement_ledger.refund(
                    session, order.id, actor_id=actor.user_id, reason=reason, source="dispute"
                )
                dispute.status = DisputeStatus.RESOLVED.value
                amount_cents = order.total_amount_cents

            dispute.resolution = f"{action}:{amount_cents}" + (f":{reason}" if reason else "")
            dispute.resolved_by = actor.user_id
            dispute.resolved_at = get_naive_utc_now()
            _audit(
                session, actor.user_id, f"dispute_{action}", "dispute", dispute.id,
                order_id=order.id, reason=reason, amount_cents=amount_cents,
            )
            session.flush()

        logger.info(
            f"⚖️ DISPUTE_RESOLVED: dispute={dispute_id} order={order.id} action={action} "
            f"admin={actor.user_id} amount={amount_cents}"
        )
        outcome = "released to the seller" if action == RELEASE else "refunded to the buyer"
        for user_id in (order.buyer_id, order.seller_id):
            notification_service.notify(
                user_id, NotificationKind.DISPUTE_RESOLVED, "Dispute resolved",
                f"The dispute on order #{order.id} was resolved: "
                f"{format_cents(amount_cents, order.currency)} {outcome}.",
                {"order_id": order.id, "dispute_id": dispute.id, "action": action},
            )

        return ResolutionResult(
            dispute_id=dispute.id,
            order_id=order.id,
            action=action,
            dispute_status=dispute.status,
            order_status=order.status,
            amount_cents=amount_cents,
            settlement=status.settlement,
        )

    @classmethod
    def _reject_open_dispute(cls, session: Session, order_id: int) -> None:
        dispute = cls.find_for_order(session, order_id)
        if dispute is not None and dispute.status == DisputeStatus.OPEN.value:
            raise InvalidStateError(
                "Order has an open dispute, resolve the dispute instead",
                details={"order_id": order_id, "dispute_id": dispute.id},
            )

    @classmethod
    def admin_release_order(cls, session: Session, order_id: int, actor: Principal,
                            reason: Optional[str] = None) -> SettlementStatus:
        """Release a COMPLETED order's held funds ahead of the settlement timer"""
        _require_admin(actor, "release orders")
        reason = _clean_reason(reason)

        with atomic_transaction(session):
            lock_order(session, order_id)
            cls._reject_open_dispute(session, order_id)
            status = settlement_ledger.release(session, order_id, actor_id=actor.user_id, reason=reason, source="admin")
            if status.settlement == "released":
                _audit(session, actor.user_id, "order_release", "order", order_id,
                       reason=reason, amount_cents=status.available_cents)
            order = order_service.get_order(session, order_id)

        if status.settlement == "released":
            notification_service.notify(
                order.seller_id, NotificationKind.FUNDS_RELEASED, "Funds released",
                f"{format_cents(status.available_cents, order.currency)} from order #{order_id} is now available.",
                {"order_id": order_id},
            )
        return status

    @classmethod
    def admin_refund_order(cls, session: Session, order_id: int, actor: Principal,
                           reason: Optional[str] = None) -> SettlementStatus:
        """Refund a paid order whose funds are still held"""
        _require_admin(actor, "refund orders")
        reason = _clean_reason(reason)

        with atomic_transaction(session):
            order = lock_order(session, order_id)
            cls._reject_open_dispute(session, order_id)
            status = settlement_ledger.refund(session, order_id, actor_id=actor.user_id, reason=reason, source="admin")
            _audit(session, actor.user_id, "order_refund", "order", order_id,
                   reason=reason, amount_cents=order.total_amount_cents)

        notification_service.notify(
            order.buyer_id, NotificationKind.ORDER_REFUNDED, "Order refunded",
            f"Order #{order_id} was refunded ({format_cents(order.total_amount_cents, order.currency)}).",
            {"order_id": order_id},
        )
        return status


dispute_resolution_service = DisputeResolutionService()
