"""
Buyer and seller facing routes: checkout, order actions, inventory upload and wallet
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from handlers.dependencies import get_checkout_orchestrator, get_current_principal, get_db
from handlers.serializers import (
    serialize_balance, serialize_dispute, serialize_ledger_entry, serialize_order, serialize_payment,
    serialize_settlement
)
from models import DeliveryType
from services.auth_service import Principal
from services.catalog_service import catalog_service
from services.checkout_orchestrator import CheckoutOrchestrator
from services.dispute_resolution import dispute_resolution_service
from services.inventory_allocator import inventory_allocator
from services.order_service import order_service
from services.settlement_ledger import settlement_ledger
from utils.exceptions import ForbiddenError, InvalidStateError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    listing_id: int = Field(..., alias="listingId", gt=0)
    quantity: int = Field(1, ge=1)


class DeliverRequest(BaseModel):
    note: Optional[str] = None


class DisputeRequest(BaseModel):
    reason: str


class InventoryUploadRequest(BaseModel):
    codes: Optional[List[str]] = None
    text: Optional[str] = None


class PayoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount_cents: int = Field(..., alias="amountCents", gt=0)
    currency: Optional[str] = None


# ----------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------

@router.post("/checkout")
def checkout(
    body: CheckoutRequest,
    principal: Principal = Depends(get_current_principal),
    session: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    result = orchestrator.checkout(session, principal.user_id, body.listing_id, body.quantity)
    return {"order": serialize_order(result.order), "payment": serialize_payment(result.payment)}


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------

@router.get("/orders/{order_id}")
def get_order(order_id: int, principal: Principal = Depends(get_current_principal),
              session: Session = Depends(get_db)):
    order = order_service.get_order_for_participant(session, order_id, principal.user_id, principal.is_admin)
    dispute = dispute_resolution_service.find_for_order(session, order_id)
    return {
        "order": serialize_order(order),
        "settlement": serialize_settlement(settlement_ledger.settlement_status(session, order_id)),
        "dispute": serialize_dispute(dispute) if dispute else None,
        "events": [
            {"type": event.event_type, "actorId": event.actor_id, "metadata": event.event_metadata}
            for event in order_service.list_events(session, order_id)
        ],
    }


@router.get("/orders/{order_id}/payment")
def get_order_payment(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    session: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
):
    payment = orchestrator.current_payment(session, order_id, principal.user_id)
    return {"payment": serialize_payment(payment)}


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: int, principal: Principal = Depends(get_current_principal),
                 session: Session = Depends(get_db)):
    order = order_service.cancel_order(session, order_id, actor_id=principal.user_id)
    return {"order": serialize_order(order)}


@router.post("/orders/{order_id}/confirm")
def confirm_receipt(order_id: int, principal: Principal = Depends(get_current_principal),
                    session: Session = Depends(get_db)):
    order = order_service.confirm_receipt(session, order_id, principal.user_id)
    return {"order": serialize_order(order)}


@router.post("/orders/{order_id}/deliver")
def mark_delivered(order_id: int, body: DeliverRequest, principal: Principal = Depends(get_current_principal),
                   session: Session = Depends(get_db)):
    order = order_service.seller_mark_delivered(
        session, order_id, principal.user_id, is_admin=principal.is_admin, note=body.note
    )
    return {"order": serialize_order(order)}


@router.post("/orders/{order_id}/dispute")
def open_dispute(order_id: int, body: DisputeRequest, principal: Principal = Depends(get_current_principal),
                 session: Session = Depends(get_db)):
    dispute = dispute_resolution_service.open_dispute(session, order_id, principal.user_id, body.reason)
    return {"dispute": serialize_dispute(dispute)}


# ----------------------------------------------------------------------
# Seller inventory
# ----------------------------------------------------------------------

@router.post("/listings/{listing_id}/inventory")
def upload_inventory(listing_id: int, body: InventoryUploadRequest,
                     principal: Principal = Depends(get_current_principal), session: Session = Depends(get_db)):
    listing = catalog_service.get_listing(session, listing_id)
    if listing.seller_id != principal.user_id and not principal.is_admin:
        raise ForbiddenError("Only the seller can upload inventory for this listing")
    if listing.delivery_type != DeliveryType.AUTO.value:
        raise InvalidStateError("Manual delivery listings do not hold inventory", details={"listing_id": listing_id})
    if not body.codes and not body.text:
        raise ValidationError("Provide codes or text")

    if body.codes:
        result = inventory_allocator.add_items(session, listing_id, body.codes)
    else:
        result = inventory_allocator.import_items(session, listing_id, body.text)
    return {"listingId": listing_id, **result}


# ----------------------------------------------------------------------
# Wallet
# ----------------------------------------------------------------------

@router.get("/wallet/balance")
def wallet_balance(currency: Optional[str] = None, principal: Principal = Depends(get_current_principal),
                   session: Session = Depends(get_db)):
    return serialize_balance(settlement_ledger.balances(session, principal.user_id, currency))


@router.post("/wallet/payouts")
def request_payout(body: PayoutRequest, principal: Principal = Depends(get_current_principal),
                   session: Session = Depends(get_db)):
    entry = settlement_ledger.request_payout(session, principal.user_id, body.amount_cents, body.currency)
    return {
        "payout": serialize_ledger_entry(entry),
        "balance": serialize_balance(settlement_ledger.balances(session, principal.user_id, entry.currency)),
    }
