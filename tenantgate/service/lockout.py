"""Failed-attempt lockout.

The state machine is ``Unlocked(attempt_count)`` -> ``Locked(locked_until)``
and is expressed as pure functions over a frozen :class:`LockoutState`.
Two owners thread that value through submits:

* :class:`LoginFormController`, one per login form instance;
* :class:`LoginAttemptStore`, server-side, keyed by a hash of the email and
  the request origin so a page reload cannot reset the counter.

Locks are evaluated lazily against the wall clock on the next submit.
"""

from __future__ import annotations

import asyncio
import hashlib
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple

from tenantgate.config import Settings
from tenantgate.logging import get_logger, log_auth_event
from tenantgate.service.auth_errors import AuthErrorCode, create_auth_error
from tenantgate.service.login_flow import LoginFlow, LoginResult
from tenantgate.storage.models import Credentials, utcnow

logger = get_logger(__name__)

# Rejections that count against the lockout budget; transport and server
# failures never do
CREDENTIAL_FAILURE_CODES = frozenset(
    {
        AuthErrorCode.CREDENTIALS_SIGNIN,
        AuthErrorCode.INVALID_CREDENTIALS,
        AuthErrorCode.ACCOUNT_NOT_FOUND,
    }
)

# Keep idle server-side counters around for a day
ATTEMPT_RECORD_TTL_SECONDS = 24 * 60 * 60

# Retry hint while earlier submits for the same key are still upstream
IN_FLIGHT_RETRY_AFTER_SECONDS = 10


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=15)
    warning_threshold: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockoutPolicy":
        return cls(
            max_attempts=settings.lockout_max_attempts,
            lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
            warning_threshold=settings.lockout_warning_threshold,
        )


@dataclass(frozen=True)
class LockoutState:
    attempt_count: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def retry_after_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        return max(1, math.ceil((self.locked_until - now).total_seconds()))

    def attempts_remaining(self, policy: LockoutPolicy) -> int:
        return max(0, policy.max_attempts - self.attempt_count)


def release_if_elapsed(state: LockoutState, now: datetime) -> LockoutState:
    """``Locked`` becomes ``Unlocked(0)`` once ``now >= locked_until``."""
    if state.locked_until is not None and now >= state.locked_until:
        return LockoutState()
    return state


def record_failure(state: LockoutState, now: datetime, policy: LockoutPolicy) -> LockoutState:
    if state.is_locked(now):
        return state
    attempts = state.attempt_count + 1
    if attempts >= policy.max_attempts:
        return LockoutState(attempt_count=attempts, locked_until=now + policy.lock_duration)
    return LockoutState(attempt_count=attempts)


def record_success(state: LockoutState) -> LockoutState:
    return LockoutState()


def lockout_warning(state: LockoutState, policy: LockoutPolicy) -> Optional[str]:
    if policy.warning_threshold <= state.attempt_count < policy.max_attempts:
        remaining = state.attempts_remaining(policy)
        noun = "attempt" if remaining == 1 else "attempts"
        return f"{remaining} {noun} remaining before your account is temporarily locked."
    return None


def locked_result(state: LockoutState, now: datetime) -> LoginResult:
    return LoginResult(
        ok=False,
        error=create_auth_error(
            AuthErrorCode.ACCOUNT_LOCKED,
            retry_after=state.retry_after_seconds(now),
            context={"locked_until": state.locked_until.isoformat() if state.locked_until else None},
        ),
    )


def apply_outcome(
    state: LockoutState, result: LoginResult, now: datetime, policy: LockoutPolicy
) -> Tuple[LockoutState, LoginResult]:
    """Advance ``state`` with one submit's result; may turn it into AccountLocked."""
    if result.ok:
        return record_success(state), result
    if result.error is None or result.error.code not in CREDENTIAL_FAILURE_CODES:
        return state, result
    next_state = record_failure(state, now, policy)
    if next_state.is_locked(now):
        log_auth_event("login_rate_limited", logger, attempts=next_state.attempt_count)
        return next_state, locked_result(next_state, now)
    warning = lockout_warning(next_state, policy)
    if warning:
        result = LoginResult(
            ok=False, error=result.error, set_cookies=result.set_cookies, warning=warning
        )
    return next_state, result


class LoginFormController:
    """Serializes submits for one login form and owns its lockout state.

    A submit while another is in flight is ignored, not queued.
    """

    def __init__(
        self,
        flow: LoginFlow,
        *,
        policy: Optional[LockoutPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        state: Optional[LockoutState] = None,
    ) -> None:
        self.flow = flow
        self.policy = policy or LockoutPolicy()
        self.clock = clock
        self.state = state or LockoutState()
        self.in_flight = False
        self.last_result: Optional[LoginResult] = None

    @property
    def warning(self) -> Optional[str]:
        return lockout_warning(self.state, self.policy)

    async def submit(self, credentials: Credentials, **kwargs: Any) -> Optional[LoginResult]:
        if self.in_flight:
            logger.debug("login_submit_ignored", reason="in_flight")
            return None
        now = self.clock()
        self.state = release_if_elapsed(self.state, now)
        if self.state.is_locked(now):
            self.last_result = locked_result(self.state, now)
            return self.last_result

        self.in_flight = True
        try:
            result = await self.flow.submit(credentials, **kwargs)
        finally:
            self.in_flight = False
        self.state, self.last_result = apply_outcome(self.state, result, self.clock(), self.policy)
        return self.last_result


class LockoutBackend(Protocol):
    async def load_lockout(self, key: str) -> Optional[Tuple[int, Optional[datetime]]]: ...

    async def save_lockout(
        self, key: str, attempt_count: int, locked_until: Optional[datetime], ttl_seconds: int
    ) -> None: ...

    async def clear_lockout(self, key: str) -> None: ...


def attempt_key(email: str, origin: Optional[str]) -> str:
    material = f"{(email or '').strip().lower()}{origin or ''}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def request_origin(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """Origin identity for lockout keys: the Origin header, else the client address."""
    return headers.get("origin") or client_host or ""


class LoginAttemptStore:
    """Server-side lockout enforcement on top of Redis or the memory store."""

    def __init__(
        self,
        backend: LockoutBackend,
        *,
        policy: Optional[LockoutPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.policy = policy or LockoutPolicy()
        self.clock = clock
        self._lock = asyncio.Lock()
        self._in_flight: Dict[str, int] = {}

    async def load(self, key: str) -> LockoutState:
        record = await self.backend.load_lockout(key)
        if record is None:
            return LockoutState()
        state = LockoutState(attempt_count=record[0], locked_until=record[1])
        released = release_if_elapsed(state, self.clock())
        if released is not state:
            await self.backend.clear_lockout(key)
        return released

    async def _save(self, key: str, state: LockoutState) -> None:
        if state.attempt_count == 0 and state.locked_until is None:
            await self.backend.clear_lockout(key)
            return
        ttl = ATTEMPT_RECORD_TTL_SECONDS
        if state.locked_until is not None:
            ttl = max(ttl, int((state.locked_until - self.clock()).total_seconds()) + 1)
        await self.backend.save_lockout(key, state.attempt_count, state.locked_until, ttl)

    async def submit(self, key: str, flow: LoginFlow, credentials: Credentials, **kwargs: Any) -> LoginResult:
        """Run one submit under server-side lockout.

        Locked keys are rejected without calling ``flow``. Each call reserves
        one attempt before reaching upstream, so concurrent submits for a key
        never exceed what remains of ``max_attempts``.
        """
        async with self._lock:
            state = await self.load(key)
            now = self.clock()
            if state.is_locked(now):
                log_auth_event("login_rate_limited", logger, retry_after=state.retry_after_seconds(now))
                return locked_result(state, now)
            pending = self._in_flight.get(key, 0)
            if state.attempt_count + pending >= self.policy.max_attempts:
                log_auth_event("login_rate_limited", logger, attempts=state.attempt_count, pending=pending)
                return LoginResult(
                    ok=False,
                    error=create_auth_error(
                        AuthErrorCode.TOO_MANY_ATTEMPTS,
                        retry_after=IN_FLIGHT_RETRY_AFTER_SECONDS,
                        context={"pending": pending},
                    ),
                )
            self._in_flight[key] = pending + 1

        try:
            result = await flow.submit(credentials, **kwargs)
        except BaseException:
            self._release(key)
            raise

        async with self._lock:
            self._release(key)
            # Re-read so concurrent failures for one key are all counted
            state = await self.load(key)
            next_state, result = apply_outcome(state, result, self.clock(), self.policy)
            if next_state != state:
                await self._save(key, next_state)
        return result

    def _release(self, key: str) -> None:
        remaining = self._in_flight.get(key, 1) - 1
        if remaining > 0:
            self._in_flight[key] = remaining
        else:
            self._in_flight.pop(key, None)
