#!/usr/bin/env python3
"""
Order State Machine with Atomic Operations
All legal order transitions live here; services never assign Order.status directly.
"""

import logging
from typing import Any, Dict, Optional, Set

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from models import Order, OrderEvent, OrderStatus
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import InvalidStateError

logger = logging.getLogger(__name__)


class OrderStateValidator:
    """Validates order state transitions and prevents invalid changes"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {OrderStatus.CREATED.value},
        OrderStatus.CREATED.value: {
            OrderStatus.AWAITING_PAYMENT.value,
            OrderStatus.CANCELLED.value,
        },
        OrderStatus.AWAITING_PAYMENT.value: {
            OrderStatus.PAID.value,
            OrderStatus.CANCELLED.value,  # Hold expiry, buyer cancel, failed payment
        },
        # Disputes from PAID / IN_DELIVERY are additionally gated on a prior delivery
        OrderStatus.PAID.value: {
            OrderStatus.IN_DELIVERY.value,
            OrderStatus.DISPUTED.value,
            OrderStatus.REFUNDED.value,  # Admin refund
        },
        OrderStatus.IN_DELIVERY.value: {
            OrderStatus.DELIVERED.value,
            OrderStatus.DISPUTED.value,
            OrderStatus.REFUNDED.value,  # Admin refund
        },
        OrderStatus.DELIVERED.value: {
            OrderStatus.COMPLETED.value,  # Buyer confirmation or auto-complete timer
            OrderStatus.DISPUTED.value,
            OrderStatus.REFUNDED.value,  # Admin refund
        },
        # Only while the held funds have not been released yet
        OrderStatus.COMPLETED.value: {
            OrderStatus.DISPUTED.value,
            OrderStatus.REFUNDED.value,
        },
        OrderStatus.DISPUTED.value: {
            OrderStatus.COMPLETED.value,  # Admin "release" resolution
            OrderStatus.REFUNDED.value,  # Admin "refund" resolution
        },
        # Terminal states
        OrderStatus.CANCELLED.value: set(),
        OrderStatus.REFUNDED.value: set(),
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def get_valid_transitions(cls, current_status: Optional[str]) -> Set[str]:
        """Get all valid next states for current status"""
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return len(cls.VALID_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def validate_transition(cls, current_status: Optional[str], new_status: str, order_id: Any = None):
        """Raise InvalidStateError unless current_status -> new_status is legal"""
        if not cls.is_valid_transition(current_status, new_status):
            raise InvalidStateError(
                f"Order {order_id} cannot move from {current_status} to {new_status}",
                details={
                    "order_id": order_id,
                    "from": current_status,
                    "to": new_status,
                    "allowed": sorted(cls.get_valid_transitions(current_status)),
                },
            )


def record_order_event(
    session: Session,
    order_id: int,
    event_type: str,
    actor_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> OrderEvent:
    """Append an event to the order's audit trail"""
    event = OrderEvent(
        order_id=order_id,
        event_type=event_type,
        actor_id=actor_id,
        event_metadata=metadata or {},
        created_at=get_naive_utc_now(),
    )
    session.add(event)
    session.flush()
    return event


def apply_transition(
    session: Session,
    order: Order,
    new_status: str,
    *,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None,
    source: str = "system",
    event_type: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    **fields: Any,
) -> OrderEvent:
    """
    Move `order` to `new_status` and write the matching OrderEvent.

    The status write is a compare-and-set on the status read by the caller, so
    two concurrent transitions of the same order cannot both succeed. Extra
    column values (timestamps) are written in the same statement.
    """
    current_status = order.status
    OrderStateValidator.validate_transition(current_status, new_status, order.id)

    values = {"status": new_status, "updated_at": get_naive_utc_now(), **fields}
    result = session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == current_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidStateError(
            f"Order {order.id} is no longer {current_status}",
            details={"order_id": order.id, "expected": current_status},
        )

    for key, value in values.items():
        set_committed_value(order, key, value)

    metadata = {"from": current_status, "to": new_status, "reason": reason, "source": source}
    if extra:
        metadata.update(extra)
    event = record_order_event(
        session, order.id, event_type or new_status, actor_id=actor_id, metadata=metadata
    )

    logger.info(f"ORDER_TRANSITION: order={order.id} {current_status} -> {new_status} (source={source})")
    return event
