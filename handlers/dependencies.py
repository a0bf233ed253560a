"""
Shared FastAPI dependencies: database sessions, caller identity and service wiring.
Tests swap these out with app.dependency_overrides.
"""

import logging
from typing import Iterator, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from database import SessionLocal
from services.auth_service import AuthService, Principal, StaticTokenAuthService
from services.checkout_orchestrator import CheckoutOrchestrator
from services.payment_webhook_service import PaymentWebhookService, payment_webhook_service
from utils.exceptions import ForbiddenError

logger = logging.getLogger(__name__)

_auth_service: AuthService = StaticTokenAuthService()
_checkout_orchestrator = CheckoutOrchestrator()


def get_db() -> Iterator[Session]:
    """One session per request, always closed"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_auth_service() -> AuthService:
    return _auth_service


def get_checkout_orchestrator() -> CheckoutOrchestrator:
    return _checkout_orchestrator


def get_payment_webhook_service() -> PaymentWebhookService:
    return payment_webhook_service


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def get_current_principal(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
) -> Principal:
    return auth.resolve(_bearer_token(authorization))


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning(f"🚫 ADMIN_ROUTE_DENIED: user={principal.user_id}")
        raise ForbiddenError("Admin access required")
    return principal
