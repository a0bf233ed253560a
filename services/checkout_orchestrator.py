"""
Checkout Orchestrator
Validates a purchase, reserves inventory and opens the order with a pending PIX charge
"""

import logging
from datetime import timedelta
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from config import Config
from models import DeliveryType, Order, OrderStatus, Payment
from services.catalog_service import CatalogService, catalog_service
from services.inventory_allocator import InventoryAllocator, inventory_allocator
from services.order_service import order_service
from services.payment_service import payment_service
from services.pix_provider import MockPixProvider, PixProvider
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exceptions import (
    ForbiddenError, InvalidStateError, MarketplaceError, OutOfStockError, PaymentProviderError,
    ValidationError
)

logger = logging.getLogger(__name__)


class CheckoutResult(NamedTuple):
    order: Order
    payment: Payment


class CheckoutOrchestrator:

    def __init__(self, provider: Optional[PixProvider] = None, catalog: Optional[CatalogService] = None,
                 allocator: Optional[InventoryAllocator] = None):
        self.provider = provider or MockPixProvider()
        self.catalog = catalog or catalog_service
        self.allocator = allocator or inventory_allocator

    def checkout(self, session: Session, buyer_id: int, listing_id: int, quantity: int) -> CheckoutResult:
        """
        Reserve `quantity` units and create the order plus its PENDING payment.

        Everything happens in one transaction. If anything fails after the
        reservation (stock ran out mid-way, provider error) the transaction is
        rolled back, which returns the reserved units to AVAILABLE.
        """
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if quantity > Config.MAX_CHECKOUT_QUANTITY:
            raise ValidationError(f"Quantity cannot exceed {Config.MAX_CHECKOUT_QUANTITY}")

        now = get_naive_utc_now()
        hold = timedelta(seconds=Config.inventory_hold_seconds())

        with atomic_transaction(session):
            listing = self.catalog.get_listing(session, listing_id)
            if not listing.is_published:
                raise InvalidStateError("Listing is not available for purchase", details={"listing_id": listing_id})
            if listing.seller_id == buyer_id:
                raise ValidationError("Sellers cannot buy their own listings")
            # Manual listings are delivered by the seller and carry no inventory units
            reserves_stock = listing.delivery_type == DeliveryType.AUTO.value
            if reserves_stock and self.allocator.available_count(session, listing_id, now) < quantity:
                logger.info(f"CHECKOUT_OUT_OF_STOCK: listing={listing_id} qty={quantity}")
                raise OutOfStockError("Out of stock", details={"listing_id": listing_id})

            order = order_service.create_order(
                session, buyer_id, listing, quantity,
                expires_at=now + timedelta(seconds=Config.PAYMENT_TTL_SECONDS),
            )

            try:
                if reserves_stock:
                    for item in order.items:
                        self.allocator.reserve(session, listing_id, item.id, hold, now)

                try:
                    charge = self.provider.create_charge(order.id, order.total_amount_cents, order.currency, buyer_id)
                except MarketplaceError:
                    raise
                except Exception as e:
                    logger.error(f"❌ CHECKOUT_CHARGE_FAILED: order={order.id}: {e}")
                    raise PaymentProviderError("Payment could not be created, please try again") from e

                payment = payment_service.create_pending(
                    session, order.id, buyer_id, order.total_amount_cents, order.currency, charge,
                    provider=self.provider.name,
                )
                order_service.mark_awaiting_payment(session, order, payment.id)
            except MarketplaceError as e:
                logger.info(f"CHECKOUT_ROLLBACK: order={order.id} reservation released ({e.code})")
                raise

        logger.info(
            f"🛒 CHECKOUT_OK: order={order.id} buyer={buyer_id} listing={listing_id} qty={quantity} "
            f"txid={payment.txid}"
        )
        return CheckoutResult(order=order, payment=payment)

    def current_payment(self, session: Session, order_id: int, buyer_id: int) -> Payment:
        """The still-pending charge of an unpaid order, for re-rendering the payment UI"""
        order = order_service.get_order(session, order_id)
        if order.buyer_id != buyer_id:
            raise ForbiddenError("Only the buyer can pay for this order")
        if order.status != OrderStatus.AWAITING_PAYMENT.value:
            raise InvalidStateError(
                f"Order {order_id} is not awaiting payment (status: {order.status})",
                details={"order_id": order_id, "status": order.status},
            )
        payment = payment_service.find_pending_for_order(session, order_id)
        if payment is None:
            raise InvalidStateError(f"Order {order_id} has no pending payment", details={"order_id": order_id})
        return payment
