"""
lumina.api.rate_limit — Sliding-Window Request Throttling
==========================================================

Two limiters share one DB-backed implementation:

* ``admin``  — 30 mutations per minute per admin (JWT ``sub``).
* ``apply``  — 10 referral applications per minute per client IP.

Each counted request is a row in ``rate_limit_events`` so limits survive
restarts and hold across workers.  Exceeding a limit returns HTTP 429
with a ``Retry-After`` header.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import Engine, delete, func, select
from sqlalchemy.orm import Session

from lumina.api.deps import client_ip, get_current_admin
from lumina.constants import as_utc
from lumina.database.engine import run_db
from lumina.database.models import RateLimitEvent

logger = logging.getLogger(__name__)

ADMIN_SCOPE = "admin"
APPLY_SCOPE = "apply"

DEFAULT_ADMIN_LIMIT = 30
DEFAULT_APPLY_LIMIT = 10
DEFAULT_WINDOW_SECONDS = 60

# HTTP methods considered "mutations"
_MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class SlidingWindowLimiter:
    """Sliding-window rate limiter keyed by an arbitrary string within a scope."""

    def __init__(
        self,
        scope: str,
        max_requests: int,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        *,
        engine: Engine,
    ) -> None:
        self.scope = scope
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.engine = engine

    def _prune(self, session: Session, key: str, cutoff: datetime) -> None:
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.scope == self.scope,
                RateLimitEvent.key == key,
                RateLimitEvent.timestamp < cutoff,
            )
        )

    def check(self, key: str) -> tuple[bool, dict[str, Any]]:
        """Check whether *key* is within the limit.

        Returns (allowed, info) where info contains:
          - remaining: requests remaining in the window
          - reset: seconds until the oldest request expires
          - limit: the max requests per window
        """
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            timestamps = session.scalars(
                select(RateLimitEvent.timestamp)
                .where(RateLimitEvent.scope == self.scope, RateLimitEvent.key == key)
                .order_by(RateLimitEvent.timestamp.asc())
            ).all()
            session.commit()

        count = len(timestamps)
        if count >= self.max_requests:
            oldest = as_utc(timestamps[0])
            reset = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
            return False, {
                "remaining": 0,
                "reset": max(1, int(reset) + 1),
                "limit": self.max_requests,
            }

        return True, {
            "remaining": self.max_requests - count,
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def record(self, key: str) -> dict[str, Any]:
        """Record a request and return the updated rate-limit info."""
        now = datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.window_seconds)

        with Session(self.engine) as session:
            self._prune(session, key, cutoff)
            session.add(RateLimitEvent(scope=self.scope, key=key, timestamp=now))
            session.flush()
            count = session.scalar(
                select(func.count()).select_from(RateLimitEvent).where(
                    RateLimitEvent.scope == self.scope, RateLimitEvent.key == key
                )
            ) or 0
            session.commit()

        return {
            "remaining": max(0, self.max_requests - count),
            "reset": self.window_seconds,
            "limit": self.max_requests,
        }

    def reset(self, key: str | None = None) -> None:
        """Clear this scope's state. If key is None, clear every key."""
        with Session(self.engine) as session:
            stmt = delete(RateLimitEvent).where(RateLimitEvent.scope == self.scope)
            if key is not None:
                stmt = stmt.where(RateLimitEvent.key == key)
            session.execute(stmt)
            session.commit()


# ---------------------------------------------------------------------------
# Module-level singletons
# ---------------------------------------------------------------------------
_limiters: dict[str, SlidingWindowLimiter] = {}


def get_rate_limiter(scope: str) -> SlidingWindowLimiter:
    """Return the configured limiter for *scope*."""
    limiter = _limiters.get(scope)
    if limiter is None:
        raise RuntimeError("Rate limiter not configured — call configure_rate_limiters() first")
    return limiter


def set_rate_limiter(limiter: SlidingWindowLimiter) -> SlidingWindowLimiter | None:
    """Install *limiter* for its scope, returning the previous one."""
    previous = _limiters.get(limiter.scope)
    _limiters[limiter.scope] = limiter
    return previous


def configure_rate_limiters(*, engine: Engine) -> None:
    """Install the default admin and apply limiters on *engine*."""
    set_rate_limiter(SlidingWindowLimiter(ADMIN_SCOPE, DEFAULT_ADMIN_LIMIT, engine=engine))
    set_rate_limiter(SlidingWindowLimiter(APPLY_SCOPE, DEFAULT_APPLY_LIMIT, engine=engine))


def _too_many(limiter: SlidingWindowLimiter, info: dict[str, Any], what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "error": "rate_limit_exceeded",
            "message": (
                f"Rate limit exceeded: {limiter.max_requests} {what} per "
                f"{limiter.window_seconds} seconds."
            ),
            "retry_after": info["reset"],
        },
        headers={"Retry-After": str(info["reset"])},
    )


async def _enforce(limiter: SlidingWindowLimiter, key: str, what: str) -> None:
    allowed, info = await run_db(limiter.check, key)
    if not allowed:
        logger.warning(
            "Rate limit exceeded for %s %s: %d requests in %ds",
            limiter.scope, key, limiter.max_requests, limiter.window_seconds,
        )
        raise _too_many(limiter, info, what)
    await run_db(limiter.record, key)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------
async def rate_limited_admin(
    request: Request,
    admin: dict = Depends(get_current_admin),
) -> dict:
    """Validate the admin JWT *and* enforce per-admin mutation limits.

    GET/HEAD/OPTIONS requests pass through without rate-limit checks.
    """
    if request.method not in _MUTATION_METHODS:
        return admin
    await _enforce(get_rate_limiter(ADMIN_SCOPE), str(admin["sub"]), "mutations")
    return admin


async def rate_limited_apply(request: Request) -> None:
    """Throttle referral applications per client IP."""
    ip = client_ip(request)
    if ip is None:
        return
    await _enforce(get_rate_limiter(APPLY_SCOPE), ip, "referral applications")
