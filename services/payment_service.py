"""Payment rows: creation at checkout and the one-time PENDING -> CONFIRMED/FAILED flip"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Config
from models import Payment, PaymentStatus
from services.pix_provider import PixCharge
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class PaymentService:
    """Every status write is a compare-and-set on PENDING, so each payment flips once"""

    def create_pending(self, session: Session, order_id: int, payer_id: int, amount_cents: int,
                       currency: str, charge: PixCharge, provider: Optional[str] = None) -> Payment:
        payment = Payment(
            order_id=order_id,
            payer_id=payer_id,
            provider=provider or Config.PAYMENT_PROVIDER,
            txid=charge.txid,
            status=PaymentStatus.PENDING.value,
            amount_cents=amount_cents,
            currency=currency,
            qr_code=charge.qr_code,
            expires_at=charge.expires_at,
        )
        session.add(payment)
        session.flush()
        return payment

    def find_pending_for_order(self, session: Session, order_id: int) -> Optional[Payment]:
        return session.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value)
            .order_by(Payment.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def find_confirmed_for_order(self, session: Session, order_id: int) -> Optional[Payment]:
        return session.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status == PaymentStatus.CONFIRMED.value)
            .order_by(Payment.id)
            .limit(1)
        ).scalar_one_or_none()

    def find_by_txid(self, session: Session, txid: str, provider: Optional[str] = None) -> Optional[Payment]:
        return session.execute(
            select(Payment).where(
                Payment.provider == (provider or Config.PAYMENT_PROVIDER),
                Payment.txid == txid,
            ).execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def confirm(self, session: Session, payment: Payment, paid_at: Optional[datetime] = None) -> bool:
        """PENDING -> CONFIRMED. False when another delivery already flipped it."""
        paid_at = paid_at or get_naive_utc_now()
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.CONFIRMED.value, confirmed_at=paid_at, updated_at=get_naive_utc_now())
            .execution_options(synchronize_session=False)
        )
        session.refresh(payment)
        return result.rowcount == 1

    def fail(self, session: Session, payment: Payment, reason: str) -> bool:
        """PENDING -> FAILED. False when the payment already left PENDING."""
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING.value)
            .values(
                status=PaymentStatus.FAILED.value,
                failed_at=get_naive_utc_now(),
                failure_reason=reason[:100],
                updated_at=get_naive_utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        session.refresh(payment)
        if result.rowcount == 1:
            logger.info(f"PAYMENT_FAILED: payment={payment.id} txid={payment.txid} reason={reason}")
        return result.rowcount == 1

    def fail_pending_for_order(self, session: Session, order_id: int, reason: str) -> List[int]:
        """Fail every still-PENDING payment of an order (cancellation, expiry)"""
        pending_ids = list(
            session.execute(
                select(Payment.id).where(
                    Payment.order_id == order_id, Payment.status == PaymentStatus.PENDING.value
                )
            ).scalars()
        )
        if pending_ids:
            session.execute(
                update(Payment)
                .where(Payment.id.in_(pending_ids), Payment.status == PaymentStatus.PENDING.value)
                .values(
                    status=PaymentStatus.FAILED.value,
                    failed_at=get_naive_utc_now(),
                    failure_reason=reason[:100],
                    updated_at=get_naive_utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
        return pending_ids


payment_service = PaymentService()
