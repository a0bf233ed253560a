"""
Shared fixtures for the marketplace test suite.

Every test gets its own file-backed SQLite database so threads can use
separate connections, plus factories for listings, checkouts and paid orders.
Notifications are captured instead of logged.
"""

import logging
from typing import Any, Dict, List, Optional

import orjson
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from database import build_engine
from models import Base, InventoryItem, Listing, Order
from services.auth_service import StaticTokenAuthService
from services.checkout_orchestrator import CheckoutOrchestrator
from services.notification_service import NotificationKind, NotificationService, notification_service
from services.payment_webhook_service import PaymentWebhookService
from services.pix_provider import MockPixProvider

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

SELLER_ID = 100
BUYER_ID = 200
OTHER_BUYER_ID = 201
ADMIN_ID = 1

TOKENS = {
    "seller-token": {"user_id": SELLER_ID, "role": "user"},
    "buyer-token": {"user_id": BUYER_ID, "role": "user"},
    "other-buyer-token": {"user_id": OTHER_BUYER_ID, "role": "user"},
    "admin-token": {"user_id": ADMIN_ID, "role": "admin"},
}


class RecordingNotificationService(NotificationService):
    """Keeps every sent notification for assertions"""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send(self, user_id, kind, title, body, data=None):
        self.sent.append({"user_id": user_id, "kind": kind, "title": title, "body": body, "data": data or {}})

    def kinds_for(self, user_id: int) -> List[NotificationKind]:
        return [message["kind"] for message in self.sent if message["user_id"] == user_id]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'marketplace_test.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def notifications(monkeypatch):
    recorder = RecordingNotificationService()
    monkeypatch.setattr(notification_service, "send", recorder.send)
    return recorder


@pytest.fixture
def make_listing(db_session):
    """Create a listing with `stock` inventory codes"""

    def _make(seller_id: int = SELLER_ID, price_cents: int = 1500, stock: int = 1,
              delivery_type: str = "auto", status: str = "published", title: str = "Game key") -> Listing:
        listing = Listing(
            seller_id=seller_id,
            title=title,
            price_cents=price_cents,
            currency="BRL",
            status=status,
            delivery_type=delivery_type,
        )
        db_session.add(listing)
        db_session.flush()
        db_session.add_all(
            InventoryItem(listing_id=listing.id, code=f"CODE-{listing.id}-{i}") for i in range(stock)
        )
        db_session.commit()
        return listing

    return _make


@pytest.fixture
def orchestrator():
    return CheckoutOrchestrator(provider=MockPixProvider())


@pytest.fixture
def webhook_service():
    return PaymentWebhookService(provider="pix")


def pix_body(txid: str, amount_cents: Optional[int] = None, **extra) -> bytes:
    record: Dict[str, Any] = {"txid": txid, "horario": "2026-01-10T12:00:00Z"}
    if amount_cents is not None:
        record["valor"] = f"{amount_cents / 100:.2f}"
    record.update(extra)
    return orjson.dumps({"pix": [record]})


@pytest.fixture
def paid_order(db_session, make_listing, orchestrator, webhook_service):
    """Checkout one unit and confirm it through the webhook"""

    def _paid(delivery_type: str = "auto", price_cents: int = 1500, quantity: int = 1) -> Order:
        stock = quantity if delivery_type == "auto" else 0
        listing = make_listing(price_cents=price_cents, stock=stock, delivery_type=delivery_type)
        result = orchestrator.checkout(db_session, BUYER_ID, listing.id, quantity)
        webhook_service.handle_webhook(
            db_session, pix_body(result.payment.txid, result.payment.amount_cents)
        )
        db_session.refresh(result.order)
        # Release the SQLite write lock so other sessions can proceed
        db_session.commit()
        return result.order

    return _paid


@pytest.fixture
def delivered_order(db_session, paid_order):
    """Auto-delivered order (webhook confirmation delivers inline)"""

    def _delivered(**kwargs) -> Order:
        order = paid_order(**kwargs)
        assert order.status == "delivered"
        return order

    return _delivered


@pytest.fixture
def app(session_factory, orchestrator, webhook_service):
    from handlers import dependencies
    from webhook_server import create_app

    app = create_app(start_scheduler=False, init_database=False)

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[dependencies.get_db] = _get_db
    app.dependency_overrides[dependencies.get_auth_service] = lambda: StaticTokenAuthService(TOKENS)
    app.dependency_overrides[dependencies.get_checkout_orchestrator] = lambda: orchestrator
    app.dependency_overrides[dependencies.get_payment_webhook_service] = lambda: webhook_service
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def auth(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
