"""
Marketplace Settlement Engine - Database Schema
===============================================

Schema for the digital-goods marketplace core:
- Per-listing inventory units with time-boxed reservations
- Orders with immutable item snapshots and an append-only event log
- Provider-tracked payments keyed by txid
- Append-only settlement ledger (HELD / AVAILABLE balances)
- Disputes, webhook idempotency ledger and admin audit trail

Rows reference each other by id only; services re-fetch what they need inside
their own transaction.
"""

from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, ForeignKey,
    UniqueConstraint, Index, CheckConstraint, JSON, text
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class ListingStatus(Enum):
    """Catalog listing visibility"""
    DRAFT = "draft"
    PUBLISHED = "published"
    PAUSED = "paused"
    ARCHIVED = "archived"


class DeliveryType(Enum):
    """How purchased units reach the buyer"""
    AUTO = "auto"
    MANUAL = "manual"


class InventoryStatus(Enum):
    """Inventory unit lifecycle"""
    AVAILABLE = "available"
    RESERVED = "reserved"
    DELIVERED = "delivered"


class OrderStatus(Enum):
    """Order lifecycle states"""
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"


class OrderEventType(Enum):
    """Order audit trail event types"""
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    REFUNDED = "refunded"
    RELEASED = "released"
    PAYMENT_FAILED = "payment_failed"
    LATE_PAYMENT = "late_payment"


class PaymentStatus(Enum):
    """Provider payment attempt status"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LedgerEntryType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class LedgerState(Enum):
    """Held funds are collected but not releasable; available funds are withdrawable"""
    HELD = "held"
    AVAILABLE = "available"


class LedgerSource(Enum):
    ORDER_PAYMENT = "order_payment"
    PAYOUT = "payout"
    REFUND = "refund"


class DisputeStatus(Enum):
    """Dispute status (REJECTED means the buyer's claim was rejected and funds released)"""
    OPEN = "open"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class WebhookEventStatus(Enum):
    """Outcome recorded for each webhook record"""
    PROCESSING = "processing"
    PROCESSED = "processed"
    IGNORED = "ignored"
    REJECTED = "rejected"
    LATE_PAYMENT = "late_payment"
    FAILED = "failed"


# ============================================================================
# CATALOG (read-only from the settlement core)
# ============================================================================

class Listing(Base):
    """Catalog listing as seen by checkout (price, status, delivery mode)"""
    __tablename__ = 'listings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(BigInteger, nullable=False, index=True)
    title = Column(String(200), nullable=False)
    price_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False, default="BRL")
    status = Column(String(20), nullable=False, default=ListingStatus.DRAFT.value)
    delivery_type = Column(String(10), nullable=False, default=DeliveryType.AUTO.value)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('price_cents >= 0', name='ck_listing_price_non_negative'),
    )

    def __repr__(self):
        return f"<Listing(id={self.id}, seller_id={self.seller_id}, status='{self.status}')>"


# ============================================================================
# INVENTORY
# ============================================================================

class InventoryItem(Base):
    """One sellable unit of a listing; status is written only by the inventory allocator"""
    __tablename__ = 'inventory_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey('listings.id'), nullable=False)
    code = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=InventoryStatus.AVAILABLE.value)

    # Set only while RESERVED / DELIVERED
    order_item_id = Column(Integer, ForeignKey('order_items.id'), nullable=True, unique=True)
    reserved_at = Column(DateTime, nullable=True)
    # NULL while RESERVED means the hold is pinned (owning order was paid)
    reserved_until = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('listing_id', 'code', name='uq_inventory_listing_code'),
        Index('ix_inventory_listing_status', 'listing_id', 'status'),
        Index('ix_inventory_status_reserved_until', 'status', 'reserved_until'),
        CheckConstraint(
            "(status = 'available' AND order_item_id IS NULL) OR "
            "(status IN ('reserved', 'delivered') AND order_item_id IS NOT NULL)",
            name='ck_inventory_owner_matches_status'
        ),
    )

    def __repr__(self):
        return f"<InventoryItem(id={self.id}, listing_id={self.listing_id}, status='{self.status}')>"


# ============================================================================
# ORDERS
# ============================================================================

class Order(Base):
    """Purchase transaction; status changes go through the order state machine"""
    __tablename__ = 'orders'

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(BigInteger, nullable=False, index=True)
    seller_id = Column(BigInteger, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OrderStatus.CREATED.value)
    total_amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    # Timers
    expires_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    items = relationship(
        "OrderItemSnapshot",
        order_by="OrderItemSnapshot.position",
        lazy="selectin",
        viewonly=True,
    )

    __table_args__ = (
        CheckConstraint('total_amount_cents >= 0', name='ck_order_total_non_negative'),
        Index('ix_orders_status_expires_at', 'status', 'expires_at'),
        Index('ix_orders_status_delivered_at', 'status', 'delivered_at'),
    )

    def __repr__(self):
        return f"<Order(id={self.id}, status='{self.status}', total={self.total_amount_cents})>"


class OrderItemSnapshot(Base):
    """Immutable copy of title/price at purchase time; one row per purchased unit"""
    __tablename__ = 'order_items'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey('listings.id'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    title = Column(String(200), nullable=False)
    unit_price_cents = Column(BigInteger, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    delivery_type = Column(String(10), nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('order_id', 'position', name='uq_order_item_position'),
        CheckConstraint('quantity >= 1', name='ck_order_item_quantity_positive'),
    )


class OrderEvent(Base):
    """Append-only order audit trail and transition idempotency witness"""
    __tablename__ = 'order_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False)
    event_type = Column(String(30), nullable=False)
    actor_id = Column(BigInteger, nullable=True)
    # {"from": ..., "to": ..., "reason": ..., "source": ...}
    event_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_order_events_order_created', 'order_id', 'created_at'),
        # A PAID event exists at most once per order
        Index(
            'uq_order_events_paid_once', 'order_id',
            unique=True,
            sqlite_where=text("event_type = 'paid'"),
            postgresql_where=text("event_type = 'paid'"),
        ),
    )

    def __repr__(self):
        return f"<OrderEvent(order_id={self.order_id}, type='{self.event_type}')>"


# ============================================================================
# PAYMENTS
# ============================================================================

class Payment(Base):
    """Provider-tracked payment attempt; PENDING transitions exactly once"""
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, index=True)
    payer_id = Column(BigInteger, nullable=False)
    provider = Column(String(30), nullable=False)
    txid = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)

    qr_code = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    confirmed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'txid', name='uq_payment_provider_txid'),
        CheckConstraint('amount_cents > 0', name='ck_payment_amount_positive'),
    )

    def __repr__(self):
        return f"<Payment(id={self.id}, txid='{self.txid}', status='{self.status}')>"


# ============================================================================
# SETTLEMENT LEDGER
# ============================================================================

_HELD_CREDIT = "entry_type = 'credit' AND state = 'held' AND source = 'order_payment'"
_HELD_RELEASE_DEBIT = "entry_type = 'debit' AND state = 'held' AND source = 'order_payment'"
_AVAILABLE_RELEASE = "entry_type = 'credit' AND state = 'available' AND source = 'order_payment'"
_HELD_REFUND_DEBIT = "entry_type = 'debit' AND state = 'held' AND source = 'refund'"


class LedgerEntry(Base):
    """
    Immutable ledger posting. Amounts are always positive; entry_type gives the sign.

    The partial unique indexes make every settlement step for a payment
    (held credit, release, refund) writable at most once.
    """
    __tablename__ = 'ledger_entries'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=True, index=True)
    payment_id = Column(Integer, ForeignKey('payments.id'), nullable=True)
    entry_type = Column(String(10), nullable=False)
    state = Column(String(10), nullable=False)
    source = Column(String(20), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint('amount_cents > 0', name='ck_ledger_amount_positive'),
        Index('ix_ledger_user_state', 'user_id', 'state'),
        Index('uq_ledger_held_credit', 'payment_id', unique=True,
              sqlite_where=text(_HELD_CREDIT), postgresql_where=text(_HELD_CREDIT)),
        Index('uq_ledger_release_debit', 'payment_id', unique=True,
              sqlite_where=text(_HELD_RELEASE_DEBIT), postgresql_where=text(_HELD_RELEASE_DEBIT)),
        Index('uq_ledger_available_release', 'payment_id', unique=True,
              sqlite_where=text(_AVAILABLE_RELEASE), postgresql_where=text(_AVAILABLE_RELEASE)),
        Index('uq_ledger_refund_debit', 'payment_id', unique=True,
              sqlite_where=text(_HELD_REFUND_DEBIT), postgresql_where=text(_HELD_REFUND_DEBIT)),
    )

    def __repr__(self):
        return (
            f"<LedgerEntry(user_id={self.user_id}, {self.entry_type}/{self.state}/{self.source}, "
            f"amount={self.amount_cents})>"
        )


class LedgerAccount(Base):
    """
    Per-user lock row serializing balance-checked postings (payouts).

    Holds no balance: balances are always aggregated from ledger_entries.
    """
    __tablename__ = 'ledger_accounts'

    user_id = Column(BigInteger, primary_key=True)
    lock_version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)


# ============================================================================
# DISPUTES
# ============================================================================

class Dispute(Base):
    """Buyer dispute on a delivered order; one per order"""
    __tablename__ = 'disputes'

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey('orders.id'), nullable=False, unique=True)
    opened_by = Column(BigInteger, nullable=False)
    status = Column(String(20), nullable=False, default=DisputeStatus.OPEN.value)
    reason = Column(Text, nullable=False)
    resolution = Column(Text, nullable=True)
    resolved_by = Column(BigInteger, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    def __repr__(self):
        return f"<Dispute(id={self.id}, order_id={self.order_id}, status='{self.status}')>"


# ============================================================================
# WEBHOOK IDEMPOTENCY + AUDIT
# ============================================================================

class WebhookEvent(Base):
    """Every received webhook record, stored once per (provider, event_id)"""
    __tablename__ = 'webhook_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(30), nullable=False)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    txid = Column(String(64), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=WebhookEventStatus.PROCESSING.value)
    payload = Column(JSON, nullable=False)
    processing_result = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    received_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint('provider', 'event_id', name='uq_webhook_event_provider_id'),
        Index('ix_webhook_events_provider_status', 'provider', 'status'),
    )


class AdminAuditLog(Base):
    """Admin settlement actions (release, refund, dispute resolution)"""
    __tablename__ = 'admin_audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(BigInteger, nullable=False, index=True)
    action = Column(String(50), nullable=False)
    entity_type = Column(String(30), nullable=False)
    entity_id = Column(Integer, nullable=False)
    audit_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_admin_audit_entity', 'entity_type', 'entity_id'),
    )
