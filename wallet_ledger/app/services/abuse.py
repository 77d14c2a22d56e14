"""
Abuse protection: failed-login lockout and per-IP request limiting.

Both policies keep their state in the Attempt Store. If that store cannot
be reached they let the request through and log ``abuse.degraded``; a dead
database must not turn into a denial of service for every client.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.config import Settings
from ..core.errors import LockedOutError, RateLimitedError
from ..models.db import ensure_utc, utcnow
from .repository import AttemptRepository

logger = logging.getLogger(__name__)


def _degraded(policy: str, identifier: str) -> None:
    logger.warning(
        "abuse.degraded",
        extra={"policy": policy, "identifier": identifier},
        exc_info=True,
    )


class LoginLockout:
    """clear -> counting -> locked -> clear, keyed by email (or IP)."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        repository: Optional[AttemptRepository] = None,
    ) -> None:
        self.session = session
        self.max_attempts = settings.login_max_attempts
        self.lockout = timedelta(seconds=settings.login_lockout_seconds)
        self.repository = repository or AttemptRepository(session)

    def ensure_not_locked(self, identifier: str) -> None:
        try:
            record = self.repository.get(identifier)
            timeout_until = ensure_utc(record.timeout_until) if record else None
            self.session.rollback()
        except SQLAlchemyError:
            self.session.rollback()
            _degraded("login", identifier)
            return

        now = utcnow()
        if timeout_until is not None and timeout_until > now:
            remaining = math.ceil((timeout_until - now).total_seconds())
            raise LockedOutError(max(remaining, 1))

    def register_failure(self, identifier: str) -> bool:
        """Count a failed login; returns True when this failure triggered a lockout."""
        now = utcnow()
        try:
            self.repository.increment_attempts(identifier, now)
            locked = self.repository.lock_if_threshold(
                identifier, self.max_attempts, now + self.lockout
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            _degraded("login", identifier)
            return False

        if locked:
            logger.warning(
                "login.locked_out",
                extra={
                    "identifier": identifier,
                    "lockout_seconds": int(self.lockout.total_seconds()),
                },
            )
        return locked

    def reset(self, identifier: str) -> None:
        try:
            self.repository.delete(identifier)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            _degraded("login", identifier)


class RequestRateLimiter:
    """Fixed window per client IP; exceeding the cap blocks the IP for a while."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        repository: Optional[AttemptRepository] = None,
    ) -> None:
        self.session = session
        self.window = timedelta(seconds=settings.ddos_window_seconds)
        self.max_requests = settings.ddos_max_requests
        self.block = timedelta(seconds=settings.ddos_block_seconds)
        self.check_threshold = settings.ddos_check_attempts_threshold
        self.retention = max(
            self.window, timedelta(seconds=settings.ddos_window_retention_seconds)
        )
        self.repository = repository or AttemptRepository(session)

    def _active_timeout(self, identifier: str) -> tuple[int, Optional[datetime]]:
        """(failed attempts, lockout expiry if still in force)."""
        record = self.repository.get(identifier)
        if record is None:
            return 0, None
        timeout_until = ensure_utc(record.timeout_until)
        if timeout_until is not None and timeout_until > utcnow():
            return record.attempts, timeout_until
        return record.attempts, None

    def hit(self, identifier: str) -> None:
        """Count one request; raises RateLimitedError when the IP is or becomes blocked."""
        now = utcnow()
        try:
            _, timeout_until = self._active_timeout(identifier)
            if timeout_until is not None:
                self.session.rollback()
                raise RateLimitedError(timeout_until=timeout_until)

            hits = self.repository.hit_window(identifier, now, self.window)
            blocked_until = None
            if hits > self.max_requests:
                blocked_until = now + self.block
                self.repository.block(identifier, blocked_until, now)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            _degraded("ddos", identifier)
            return

        if blocked_until is not None:
            logger.warning(
                "ddos.blocked",
                extra={"identifier": identifier, "hits": hits, "blocked_until": blocked_until.isoformat()},
            )
            raise RateLimitedError(
                "Too many requests from this IP, please try again later.",
                timeout_until=blocked_until,
            )

    def check(self, identifier: str) -> None:
        """Answer "am I blocked" from stored state without counting a request."""
        try:
            attempts, timeout_until = self._active_timeout(identifier)
            self.session.rollback()
        except SQLAlchemyError:
            self.session.rollback()
            _degraded("ddos", identifier)
            return

        if timeout_until is not None:
            raise RateLimitedError(
                "Your IP is temporarily blocked due to too many requests. Please try again later.",
                timeout_until=timeout_until,
            )
        if attempts >= self.check_threshold:
            raise RateLimitedError(
                "Too many requests. Please wait and try again later.",
                count=attempts,
            )

    def purge_idle(self) -> int:
        return self.repository.purge_idle_windows(utcnow() - self.retention)
