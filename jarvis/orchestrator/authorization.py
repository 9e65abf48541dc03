"""Authorization state machine for policy-gated actions.

A gated intent opens an :class:`AuthorizationSession` that waits for the
owning session to supply the required factors::

    Pending ──submit──▶ Verifying ──ok──▶ Authorized
       ▲                    │
       └──── wrong factor ──┤ (attempts < max)
                            └──▶ Denied  (attempts == max)
    Pending/Verifying ──timeout──▶ Expired

Terminal sessions are removed from the table immediately.  The manager
only tracks state; sending events and running the deferred action is the
orchestrator's job.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Protocol

from jarvis.auth import verify_pin, verify_totp
from jarvis.errors import (
    AuthorizationError,
    AuthorizationExpired,
    AuthorizationNotFound,
    DuplicateAuthorization,
)
from jarvis.events import utc_now
from jarvis.orchestrator.intent import Intent
from jarvis.orchestrator.policy import DEFAULT_AUTH_TIMEOUT, DEFAULT_MAX_ATTEMPTS, Factor

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = float(os.environ.get("JARVIS_AUTH_SWEEP_INTERVAL", "10"))


class AuthState(str, enum.Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    EXPIRED = "expired"


@dataclass
class AuthorizationSession:
    id: str
    session_id: str
    intent: Intent
    required_factors: frozenset[Factor]
    created_at: float
    max_attempts: int
    timeout: float
    attempts: int = 0
    state: AuthState = AuthState.PENDING
    opened_at: str = field(default_factory=utc_now)

    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempts, 0)

    def is_expired(self, now: float) -> bool:
        return now - self.created_at > self.timeout

    def to_dict(self) -> dict:
        return {
            "authId": self.id,
            "sessionId": self.session_id,
            "tool": self.intent.tool,
            "action": self.intent.action,
            "requiresPin": Factor.PIN in self.required_factors,
            "requiresTotp": Factor.TOTP in self.required_factors,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "state": self.state.value,
            "openedAt": self.opened_at,
        }


@dataclass(frozen=True)
class SubmitOutcome:
    authorized: bool
    remaining_attempts: int
    state: AuthState
    session: AuthorizationSession
    failed_factors: frozenset[Factor] = frozenset()


class FactorVerifier(Protocol):
    def verify(self, factor: Factor, value: str | None) -> bool: ...


class CredentialVerifier:
    """Checks the PIN against a bcrypt hash and the TOTP against a shared secret."""

    def __init__(self, pin_hash: str | None = None, totp_secret: str | None = None) -> None:
        self.pin_hash = pin_hash
        self.totp_secret = totp_secret
        if not pin_hash:
            logger.warning("No PIN hash configured; PIN-gated actions cannot be authorized")

    @classmethod
    def from_env(cls) -> "CredentialVerifier":
        return cls(
            pin_hash=os.environ.get("JARVIS_PIN_HASH") or None,
            totp_secret=os.environ.get("JARVIS_TOTP_SECRET") or None,
        )

    def verify(self, factor: Factor, value: str | None) -> bool:
        if value is None:
            return False
        if factor is Factor.PIN:
            return verify_pin(value, self.pin_hash)
        if factor is Factor.TOTP:
            return verify_totp(value, self.totp_secret)
        return False


class ExpiryListener(Protocol):
    def authorization_expired(self, auth: AuthorizationSession) -> None: ...


class AuthorizationManager:
    """Table of outstanding authorization sessions."""

    def __init__(
        self,
        verifier: FactorVerifier,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._verifier = verifier
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: dict[str, AuthorizationSession] = {}
        self._listeners: list[ExpiryListener] = []
        self._task: asyncio.Task | None = None
        self._running = False

    def add_listener(self, listener: ExpiryListener) -> None:
        self._listeners.append(listener)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Authorization sweep started (%.0fs interval)", self.sweep_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    # ── Table ──────────────────────────────────────────────────────

    def get(self, auth_id: str) -> AuthorizationSession | None:
        return self._sessions.get(auth_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def pending_for(self, session_id: str) -> list[AuthorizationSession]:
        return [a for a in self._sessions.values() if a.session_id == session_id]

    def open(self, session_id: str, intent: Intent, factors: Iterable[Factor]) -> str:
        """Create a Pending authorization; return its id.

        Raises :class:`DuplicateAuthorization` if the same intent is already
        waiting for this session.
        """
        key = intent.key()
        now = self._clock()
        for existing in list(self._sessions.values()):
            if existing.session_id != session_id or existing.intent.key() != key:
                continue
            if existing.is_expired(now):
                self._expire(existing)
                continue
            raise DuplicateAuthorization(
                f"Authorization for {intent.path} is already pending ({existing.id})"
            )

        auth = AuthorizationSession(
            id=f"auth_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            intent=intent,
            required_factors=frozenset(factors),
            created_at=now,
            max_attempts=self.max_attempts,
            timeout=self.timeout,
        )
        self._sessions[auth.id] = auth
        logger.info(
            "Authorization %s opened for %s (%s) on %s",
            auth.id, intent.path, ",".join(sorted(f.value for f in auth.required_factors)),
            session_id,
        )
        return auth.id

    async def submit(
        self,
        auth_id: str,
        provided: Mapping[Factor | str, str | None],
        session_id: str | None = None,
    ) -> SubmitOutcome:
        """Verify *provided* factors against a pending authorization.

        Every required factor must verify independently.  A wrong factor
        counts one attempt; reaching ``max_attempts`` denies the session.
        """
        auth = self._sessions.get(auth_id)
        if auth is None or (session_id is not None and auth.session_id != session_id):
            raise AuthorizationNotFound(f"No pending authorization {auth_id}")
        if auth.is_expired(self._clock()):
            self._expire(auth)
            raise AuthorizationExpired(f"Authorization {auth_id} expired")
        if auth.state is not AuthState.PENDING:
            raise AuthorizationError(f"Authorization {auth_id} is already being verified")

        values = {Factor(k) if not isinstance(k, Factor) else k: v for k, v in provided.items()}
        auth.state = AuthState.VERIFYING
        failed = frozenset(await asyncio.to_thread(self._check, auth.required_factors, values))

        if self._sessions.get(auth_id) is not auth:
            # swept or dropped while verifying
            raise AuthorizationExpired(f"Authorization {auth_id} is no longer pending")

        if not failed:
            auth.state = AuthState.AUTHORIZED
            del self._sessions[auth_id]
            logger.info("Authorization %s granted for %s", auth_id, auth.intent.path)
            return SubmitOutcome(True, auth.remaining_attempts, auth.state, auth)

        auth.attempts += 1
        if auth.attempts >= auth.max_attempts:
            auth.state = AuthState.DENIED
            del self._sessions[auth_id]
            logger.warning(
                "Authorization %s denied after %d attempts", auth_id, auth.attempts
            )
        else:
            auth.state = AuthState.PENDING
            logger.info(
                "Authorization %s failed (%s); %d attempts remaining",
                auth_id, ",".join(sorted(f.value for f in failed)), auth.remaining_attempts,
            )
        return SubmitOutcome(False, auth.remaining_attempts, auth.state, auth, failed)

    def sweep(self) -> list[AuthorizationSession]:
        """Expire every authorization older than its timeout."""
        now = self._clock()
        expired = [a for a in self._sessions.values() if a.is_expired(now)]
        for auth in expired:
            self._expire(auth)
        return expired

    def drop_session(self, session_id: str) -> list[AuthorizationSession]:
        """Destroy every authorization owned by *session_id* without notification."""
        dropped = self.pending_for(session_id)
        for auth in dropped:
            self._sessions.pop(auth.id, None)
            auth.state = AuthState.EXPIRED
        if dropped:
            logger.info("Dropped %d pending authorizations for %s", len(dropped), session_id)
        return dropped

    # SessionObserver
    def session_closed(self, session_id: str) -> None:
        self.drop_session(session_id)

    # ── Internal ───────────────────────────────────────────────────

    def _check(
        self, required: frozenset[Factor], values: dict[Factor, str | None]
    ) -> set[Factor]:
        return {f for f in required if not self._verifier.verify(f, values.get(f))}

    def _expire(self, auth: AuthorizationSession) -> None:
        if self._sessions.pop(auth.id, None) is None:
            return
        auth.state = AuthState.EXPIRED
        logger.info("Authorization %s for %s expired", auth.id, auth.intent.path)
        for listener in self._listeners:
            try:
                listener.authorization_expired(auth)
            except Exception:
                logger.exception("Expiry listener failed for %s", auth.id)

    async def _sweep_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Authorization sweep failed")
