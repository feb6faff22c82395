"""Typed JWT issuance/verification and the logout revocation set.

Every token kind is signed with its own secret and carries its own lifetime,
so a key leaked for one kind cannot mint tokens of another kind.
"""

from __future__ import annotations

import enum
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Protocol

import jwt

from ..logging import get_logger
from .errors import TokenExpired, TokenKindMismatch, TokenMalformed, TokenRevoked

log = get_logger(__name__)

_RESERVED_CLAIMS = ("sub", "type", "iat", "exp", "iss", "aud", "jti")


class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFICATION = "verification"
    RESET = "reset"


DEFAULT_TTLS = {
    TokenKind.ACCESS: timedelta(minutes=15),
    TokenKind.REFRESH: timedelta(days=7),
    TokenKind.VERIFICATION: timedelta(hours=24),
    TokenKind.RESET: timedelta(minutes=10),
}


@dataclass(frozen=True)
class TokenKindConfig:
    secret: str
    ttl: timedelta


@dataclass
class VerifiedToken:
    account_id: str
    claims: dict = field(default_factory=dict)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RevocationStore(Protocol):
    """Backing set for revoked tokens.

    The in-process implementation below is the default; a shared key-value
    store with per-key expiry can implement the same methods, with
    ``add_if_absent`` mapping to an atomic set-if-not-exists.
    """

    def add(self, token: str, expires_at: Optional[datetime]) -> None: ...

    def add_if_absent(self, token: str, expires_at: Optional[datetime]) -> bool: ...

    def contains(self, token: str) -> bool: ...

    def purge_expired(self, now: datetime) -> int: ...


class InMemoryRevocationStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, Optional[datetime]] = {}

    def add(self, token: str, expires_at: Optional[datetime]) -> None:
        with self._lock:
            self._entries[token] = expires_at

    def add_if_absent(self, token: str, expires_at: Optional[datetime]) -> bool:
        """Insert ``token`` unless present; True only for the caller that inserted it."""
        with self._lock:
            if token in self._entries:
                return False
            self._entries[token] = expires_at
            return True

    def contains(self, token: str) -> bool:
        with self._lock:
            return token in self._entries

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            # Entries without a readable expiry can never verify, so they go too.
            stale = [
                token
                for token, expires_at in self._entries.items()
                if expires_at is None or expires_at <= now
            ]
            for token in stale:
                del self._entries[token]
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TokenService:
    def __init__(
        self,
        kinds: Mapping[TokenKind, TokenKindConfig],
        *,
        issuer: str,
        audience: str,
        algorithm: str = "HS256",
        revocations: Optional[RevocationStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        missing = [kind.value for kind in TokenKind if kind not in kinds]
        if missing:
            raise ValueError(f"missing token configuration for: {', '.join(missing)}")
        self._kinds = {TokenKind(kind): cfg for kind, cfg in kinds.items()}
        self.issuer = issuer
        self.audience = audience
        self.algorithm = algorithm
        self.revocations = revocations if revocations is not None else InMemoryRevocationStore()
        self._clock = clock

    @classmethod
    def from_config(cls, config: Mapping[str, Any], **kwargs) -> "TokenService":
        kinds = {
            kind: TokenKindConfig(
                secret=config[f"JWT_{kind.name}_SECRET"],
                ttl=timedelta(seconds=int(config[f"JWT_{kind.name}_TTL_SECONDS"])),
            )
            for kind in TokenKind
        }
        return cls(
            kinds,
            issuer=config["JWT_ISSUER"],
            audience=config["JWT_AUDIENCE"],
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
            **kwargs,
        )

    def ttl(self, kind: TokenKind | str) -> timedelta:
        return self._kinds[TokenKind(kind)].ttl

    def issue(
        self,
        account_id: str,
        kind: TokenKind | str,
        extra_claims: Optional[Mapping[str, Any]] = None,
    ) -> str:
        kind = TokenKind(kind)
        cfg = self._kinds[kind]
        now = self._clock()
        claims = dict(extra_claims or {})
        for reserved in _RESERVED_CLAIMS:
            claims.pop(reserved, None)
        claims.update(
            {
                "sub": str(account_id),
                "type": kind.value,
                "iat": int(now.timestamp()),
                "exp": int((now + cfg.ttl).timestamp()),
                "iss": self.issuer,
                "aud": self.audience,
                "jti": uuid.uuid4().hex,
            }
        )
        return jwt.encode(claims, cfg.secret, algorithm=self.algorithm)

    def issue_pair(self, account_id: str) -> dict:
        return {
            "accessToken": self.issue(account_id, TokenKind.ACCESS),
            "refreshToken": self.issue(account_id, TokenKind.REFRESH),
        }

    def verify(
        self,
        token: str,
        expected_kind: TokenKind | str,
        *,
        check_revoked: bool = True,
    ) -> VerifiedToken:
        expected_kind = TokenKind(expected_kind)
        if not token or not isinstance(token, str):
            raise TokenMalformed()
        if check_revoked and self.is_revoked(token):
            raise TokenRevoked()

        claimed_kind = self._claimed_kind(token)
        if claimed_kind is not expected_kind:
            self._raise_mismatch_or_malformed(token, claimed_kind)

        try:
            claims = jwt.decode(
                token,
                self._kinds[expected_kind].secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub", "type"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except jwt.InvalidTokenError as exc:
            raise TokenMalformed() from exc

        if claims.get("type") != expected_kind.value:
            raise TokenKindMismatch()
        return VerifiedToken(account_id=claims["sub"], claims=claims)

    def _claimed_kind(self, token: str) -> Optional[TokenKind]:
        claims = self.decode_unverified(token)
        if claims is None:
            raise TokenMalformed()
        try:
            return TokenKind(claims.get("type"))
        except ValueError:
            return None

    def _raise_mismatch_or_malformed(self, token: str, claimed_kind: Optional[TokenKind]) -> None:
        # Only a genuine token of another kind counts as a mismatch; anything
        # that fails its own kind's signature is just malformed.
        if claimed_kind is None:
            raise TokenMalformed()
        try:
            jwt.decode(
                token,
                self._kinds[claimed_kind].secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False},
            )
        except jwt.InvalidTokenError as exc:
            raise TokenMalformed() from exc
        raise TokenKindMismatch()

    def decode_unverified(self, token: str) -> Optional[dict]:
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return None

    def expires_at(self, token: str) -> Optional[datetime]:
        claims = self.decode_unverified(token)
        if not claims or "exp" not in claims:
            return None
        try:
            return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None

    def revoke(self, token: str) -> None:
        if not token:
            return
        self.revocations.add(token, self.expires_at(token))

    def claim(self, token: str) -> bool:
        """Revoke ``token`` and report whether this call was the one that did it.

        Used to spend single-use tokens: of several concurrent callers holding
        the same token, exactly one gets True.
        """
        if not token:
            return False
        return self.revocations.add_if_absent(token, self.expires_at(token))

    def is_revoked(self, token: str) -> bool:
        return self.revocations.contains(token)

    def sweep_expired_revocations(self, now: Optional[datetime] = None) -> int:
        removed = self.revocations.purge_expired(now or self._clock())
        if removed:
            log.info("revocations_swept", removed=removed)
        return removed


class RevocationSweeper:
    """Background thread that periodically sweeps the revocation set."""

    def __init__(self, token_service: TokenService, interval_seconds: float = 3600) -> None:
        self.token_service = token_service
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="revocation-sweeper", daemon=True
        )
        self._thread.start()
        log.info("revocation_sweeper_started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        log.info("revocation_sweeper_stopped")

    def run_once(self) -> int:
        return self.token_service.sweep_expired_revocations()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                log.exception("revocation_sweep_failed")
