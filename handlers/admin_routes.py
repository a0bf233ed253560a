"""
Admin routes for settlement and dispute resolution.
Every action is atomic and audited by the dispute resolution service.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from handlers.dependencies import get_db, require_admin
from handlers.serializers import serialize_settlement
from services.auth_service import Principal
from services.dispute_resolution import dispute_resolution_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


class AdminActionRequest(BaseModel):
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    action: str
    reason: Optional[str] = None


@router.post("/orders/{order_id}/release")
def release_order(order_id: int, body: Optional[AdminActionRequest] = None,
                  admin: Principal = Depends(require_admin), session: Session = Depends(get_db)):
    reason = body.reason if body else None
    status = dispute_resolution_service.admin_release_order(session, order_id, admin, reason)
    return serialize_settlement(status)


@router.post("/orders/{order_id}/refund")
def refund_order(order_id: int, body: Optional[AdminActionRequest] = None,
                 admin: Principal = Depends(require_admin), session: Session = Depends(get_db)):
    reason = body.reason if body else None
    status = dispute_resolution_service.admin_refund_order(session, order_id, admin, reason)
    return serialize_settlement(status)


@router.post("/disputes/{dispute_id}/resolve")
def resolve_dispute(dispute_id: int, body: ResolveDisputeRequest,
                    admin: Principal = Depends(require_admin), session: Session = Depends(get_db)):
    result = dispute_resolution_service.resolve_dispute(session, dispute_id, admin, body.action, body.reason)
    logger.info(f"⚖️ ADMIN_DISPUTE_ROUTE: dispute={dispute_id} action={result.action} admin={admin.user_id}")
    return {
        "disputeId": result.dispute_id,
        "orderId": result.order_id,
        "action": result.action,
        "disputeStatus": result.dispute_status,
        "orderStatus": result.order_status,
        "amountCents": result.amount_cents,
        "settlement": result.settlement,
    }
