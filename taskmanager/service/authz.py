from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from taskmanager.logging import get_logger
from taskmanager.service.auth import AuthService
from taskmanager.service.errors import AuthenticationError, ForbiddenError

logger = get_logger(__name__)

DELETE_TASK_CLAIM = "DeleteTask"


class Policy(str, Enum):
    AUTHENTICATED = "authenticated"
    DELETE_TASK = "DeleteTask"


POLICY_CLAIMS: dict[Policy, frozenset[str]] = {
    Policy.AUTHENTICATED: frozenset(),
    Policy.DELETE_TASK: frozenset({DELETE_TASK_CLAIM}),
}


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: Optional[str]
    claim_types: frozenset[str] = field(default_factory=frozenset)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class AuthorizationGate:
    """Checks a bearer token and the claims a policy requires.

    No store lookups happen here; everything comes from the signed token.
    """

    def __init__(self, auth: AuthService) -> None:
        self.auth = auth

    def authenticate(self, authorization: Optional[str]) -> Principal:
        token = _extract_bearer(authorization)
        payload = self.auth.decode_token(token) if token else None
        if not payload or not payload.get("sub"):
            raise AuthenticationError("invalid or missing bearer token")
        claims = payload.get("claims") or []
        claim_types = frozenset(
            c.get("type") for c in claims if isinstance(c, dict) and c.get("type")
        )
        return Principal(
            user_id=str(payload["sub"]),
            email=payload.get("email"),
            claim_types=claim_types,
        )

    def authorize(self, authorization: Optional[str], policy: Policy) -> Principal:
        principal = self.authenticate(authorization)
        required = POLICY_CLAIMS[policy]
        if not required <= principal.claim_types:
            logger.warning(
                "authorization_denied", user_id=principal.user_id, policy=policy.value
            )
            raise ForbiddenError("forbidden")
        return principal
