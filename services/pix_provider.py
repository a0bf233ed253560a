"""
PIX payment provider client.

Only charge creation is needed by checkout; confirmations arrive through the
payment webhook. The mock provider is used in development and tests.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from config import Config
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


@dataclass
class PixCharge:
    """Provider-quoted charge: txid plus the copy-paste payload shown to the buyer"""
    txid: str
    expires_at: datetime
    qr_code: Optional[str] = None


class PixProvider:
    name = "pix"

    def create_charge(self, order_id: int, amount_cents: int, currency: str, payer_id: int) -> PixCharge:
        raise NotImplementedError


class MockPixProvider(PixProvider):
    """Generates provider-shaped txids locally; payments are confirmed by posting the webhook"""

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else Config.PAYMENT_TTL_SECONDS

    def create_charge(self, order_id: int, amount_cents: int, currency: str, payer_id: int) -> PixCharge:
        # PIX txids are 26-35 alphanumeric characters
        txid = uuid.uuid4().hex[:26]
        amount = f"{amount_cents / 100:.2f}"
        qr_code = f"00020126580014BR.GOV.BCB.PIX0136{txid}520400005303986540{len(amount)}{amount}5802BR"
        expires_at = get_naive_utc_now() + timedelta(seconds=self.ttl_seconds)

        logger.info(f"💳 PIX_MOCK_CHARGE: order={order_id} txid={txid} amount={amount_cents} {currency}")
        return PixCharge(txid=txid, expires_at=expires_at, qr_code=qr_code)
