"""
Account Poller
==============
Keeps a fresh snapshot of remote accounts without tripping the provisioning
API's rate limit.

Features:
- Single-flight: one fetch at a time, the next one scheduled only after it ends
- Exponential backoff on HTTP 429, honouring Retry-After (seconds or HTTP date)
- Bounded random jitter so several replicas do not poll in lockstep
- Readers get the cached snapshot and never wait on a fetch
"""

import asyncio
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from config import PollerConfig
from pipeline.errors import ProvisioningRateLimited
from pipeline.provisioning_client import RemoteAccount
from schemas.orders import utcnow

logger = structlog.get_logger().bind(component="account_poller")

BACKOFF_MULTIPLIER = 2


class PollerEvent(str, Enum):
    SNAPSHOT = "snapshot"
    ERROR = "error"
    BACKOFF = "backoff"


class AccountSnapshot(BaseModel):
    fetched_at: datetime
    accounts: list[RemoteAccount]
    source: str = "polling"


class BackoffInfo(BaseModel):
    delay_seconds: float
    consecutive_rate_limits: int


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header, or None if absent/unparseable."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or utcnow()
    return max((when - now).total_seconds(), 0.0)


class RateLimitedPoller:
    """Polls ``fetch`` on a timer and publishes AccountSnapshot events."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[RemoteAccount]]],
        config: Optional[PollerConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self._fetch = fetch
        self.config = config or PollerConfig()
        self._rng = rng or random.Random()
        self._listeners: dict[PollerEvent, list[Callable[[Any], None]]] = {e: [] for e in PollerEvent}

        self._snapshot: Optional[AccountSnapshot] = None
        self._consecutive_rate_limits = 0
        self._running = False
        self._fetching = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def snapshot(self) -> Optional[AccountSnapshot]:
        return self._snapshot

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def consecutive_rate_limits(self) -> int:
        return self._consecutive_rate_limits

    def on(self, event: PollerEvent, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners[event].append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return unsubscribe

    def subscribe(self, callback: Callable[[AccountSnapshot], None]) -> Callable[[], None]:
        return self.on(PollerEvent.SNAPSHOT, callback)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("poller_started", interval_seconds=self.config.interval_seconds)
        self._schedule(0)

    def stop(self) -> None:
        """Stop scheduling. A fetch in flight completes and its result is kept."""
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        logger.info("poller_stopped")

    async def wait_idle(self) -> None:
        """Wait for an in-flight fetch, if any, to finish."""
        if self._task is not None and not self._task.done():
            await self._task

    def retry_delay(self, error: Exception) -> float:
        """
        Delay before the next fetch after ``error``.

        429: counter += 1, then
        ``min(max_backoff, max(retry_after, interval * 2**counter) + jitter)``.
        Anything else resets the counter and waits one interval.
        """
        if not isinstance(error, ProvisioningRateLimited):
            self._consecutive_rate_limits = 0
            return self.config.interval_seconds

        self._consecutive_rate_limits += 1
        base = self.config.interval_seconds * BACKOFF_MULTIPLIER ** self._consecutive_rate_limits
        retry_after = parse_retry_after(error.retry_after) or 0.0
        jitter = self._rng.uniform(0, self.config.jitter_seconds) if self.config.jitter_seconds > 0 else 0.0
        return min(self.config.max_backoff_seconds, max(retry_after, base) + jitter)

    async def poll_once(self) -> Optional[float]:
        """
        Fetch once and return the delay until the next fetch.

        Returns None without fetching when a fetch is already in flight.
        """
        if self._fetching:
            return None
        self._fetching = True
        try:
            accounts = await self._fetch()
        except Exception as e:
            delay = self.retry_delay(e)
            logger.warning("poll_failed", error_type=type(e).__name__, error=str(e), next_delay=delay)
            self._emit(PollerEvent.ERROR, e)
            if isinstance(e, ProvisioningRateLimited):
                self._emit(PollerEvent.BACKOFF, BackoffInfo(
                    delay_seconds=delay,
                    consecutive_rate_limits=self._consecutive_rate_limits,
                ))
            return delay
        finally:
            self._fetching = False

        self._consecutive_rate_limits = 0
        self._snapshot = AccountSnapshot(fetched_at=utcnow(), accounts=accounts)
        self._emit(PollerEvent.SNAPSHOT, self._snapshot)
        return self.config.interval_seconds

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _schedule(self, delay: float) -> None:
        if not self._running:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(max(delay, 0), self._fire)

    def _fire(self) -> None:
        self._timer = None
        if not self._running:
            return
        if self._fetching:
            # A manual poll_once owns the fetch; keep the timer chain alive
            self._schedule(self.config.interval_seconds)
            return
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        delay = await self.poll_once()
        self._schedule(self.config.interval_seconds if delay is None else delay)

    def _emit(self, event: PollerEvent, payload: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(payload)
            except Exception:
                logger.exception("poller_listener_failed", poller_event=event.value)
