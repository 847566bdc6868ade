from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import time
import unicodedata
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from taskmanager.config import Settings
from taskmanager.logging import get_logger
from taskmanager.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from taskmanager.storage.errors import ConstraintViolation
from taskmanager.storage.models import Claim, User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6

INVALID_EMAIL = "Invalid email."
INVALID_PASSWORD = "Invalid password."
PASSWORDS_NOT_MATCHING = "Passwords are not matching."
INVALID_LOGIN = "Invalid email or password."
USER_BLOCKED = "User blocked."

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: Optional[str]) -> Optional[str]:
    """Return the lower-cased, NFKC-normalised address or ``None`` when malformed."""

    if not value or not isinstance(value, str):
        return None
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) < 3 or len(normalized) > 254:
        return None
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return None
    if not _EMAIL_LOCAL_PART.match(local):
        return None
    labels = domain.split(".")
    if len(labels) < 2:
        return None
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return None
    return normalized


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        *,
        email_confirmed: bool = False,
        claims: Optional[List[Claim]] = None,
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_end: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def reset_failed_logins(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[User]: ...

    def add_user_claim(self, user_id: str, claim: Claim) -> Optional[User]: ...


@dataclass
class TokenBundle:
    access_token: str
    expires_at: datetime
    expires_in: int
    user: User
    token_type: str = "bearer"


class AuthService:
    """Registration, password sign-in with lockout, and bearer token issuance.

    Tokens are HS256 JWTs carrying the identity's claims. Nothing about an
    issued token is stored; validity is decided from the signature, issuer,
    audience and expiry alone.
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def register(
        self,
        email: Optional[str],
        password: Optional[str],
        confirm_password: Optional[str],
    ) -> TokenBundle:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError(INVALID_EMAIL)
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(INVALID_PASSWORD)
        if password != confirm_password:
            raise ValidationError(PASSWORDS_NOT_MATCHING)

        try:
            user = self.store.create_user(normalized, email_confirmed=True)
        except ConstraintViolation as exc:
            self.logger.warning("register_rejected", email=normalized, reason=exc.message)
            raise ValidationError(exc.message, detail=exc.errors) from exc

        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return self._issue_token(user)

    def login(self, email: Optional[str], password: Optional[str]) -> TokenBundle:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if not user:
            raise InvalidCredentialsError(INVALID_LOGIN)

        now = self._now()
        if user.is_locked_out(now):
            self.logger.warning("login_blocked", user_id=user.id, lockout_end=user.lockout_end)
            raise AccountLockedError(USER_BLOCKED)

        if not password or not self.verify_password(user.id, password):
            self._record_failed_attempt(user, now)

        if user.access_failed_count or user.lockout_end:
            self.store.reset_failed_logins(user.id, now)
        self.logger.info("login_succeeded", user_id=user.id)
        return self._issue_token(user)

    def _record_failed_attempt(self, user: User, now: datetime) -> None:
        """Count a wrong password and raise the matching sign-in error.

        The store applies the increment and the lockout decision atomically;
        the returned row decides which error the caller sees.
        """

        if not user.lockout_enabled:
            raise InvalidCredentialsError(INVALID_LOGIN)
        updated = self.store.record_failed_login(
            user.id,
            max_attempts=self.settings.lockout_max_failed_attempts,
            lockout_end=now + timedelta(minutes=self.settings.lockout_minutes),
            now=now,
        )
        if updated is not None and updated.is_locked_out(now):
            self.logger.warning(
                "account_locked_out",
                user_id=user.id,
                lockout_end=updated.lockout_end.isoformat(),
            )
            raise AccountLockedError(USER_BLOCKED)
        self.logger.info(
            "login_failed",
            user_id=user.id,
            access_failed_count=updated.access_failed_count if updated else None,
        )
        raise InvalidCredentialsError(INVALID_LOGIN)

    def grant_claim(self, email: str, claim_type: str, value: str = "true") -> User:
        normalized = normalize_email(email)
        user = self.store.get_user_by_email(normalized) if normalized else None
        if not user:
            raise NotFoundError("user not found", detail={"email": email})
        updated = self.store.add_user_claim(user.id, Claim(claim_type, value))
        if not updated:
            raise NotFoundError("user not found", detail={"email": email})
        self.logger.info("claim_granted", user_id=user.id, claim_type=claim_type)
        return updated

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Only HS256 is accepted; rejects alg=none and key confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            if header.get("alg") != "HS256":
                logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
                return None
        except (ValueError, UnicodeDecodeError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        leeway = self._clock_skew_leeway.total_seconds()
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", 0))
        except (KeyError, TypeError, ValueError):
            return None
        now_ts = time.time()
        if exp_ts <= now_ts - leeway:
            return None
        if nbf_ts > now_ts + leeway:
            return None
        return payload

    def decode_token(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode_jwt(token)

    def _issue_token(self, user: User) -> TokenBundle:
        now = self._now()
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        expires_at = now + ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "nbf": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "claims": [{"type": c.type, "value": c.value} for c in user.claims],
        }
        return TokenBundle(
            access_token=self._encode_jwt(payload),
            expires_at=expires_at,
            expires_in=int(ttl.total_seconds()),
            user=user,
        )
