"""Auth port: resolves a bearer token to the caller's identity and role"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config import Config
from utils.exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
USER_ROLE = "user"


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str = USER_ROLE

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


class AuthService:
    """Session issuance is external; implementations only verify tokens"""

    def resolve(self, token: Optional[str]) -> Principal:
        raise NotImplementedError


class StaticTokenAuthService(AuthService):
    """Token table from configuration, for development and internal tooling"""

    def __init__(self, tokens: Optional[Dict[str, Dict[str, Any]]] = None):
        self.tokens = tokens if tokens is not None else Config.AUTH_STATIC_TOKENS

    def resolve(self, token: Optional[str]) -> Principal:
        if not token:
            raise UnauthorizedError("Missing credentials")

        entry = self.tokens.get(token)
        if not entry or "user_id" not in entry:
            logger.warning("🔒 AUTH_REJECTED: unknown token")
            raise UnauthorizedError("Invalid credentials")

        return Principal(user_id=int(entry["user_id"]), role=entry.get("role", USER_ROLE))
