"""
Deduplication Window.

Suppresses repeat call attempts for the same (caller, callee) pair inside
a short debounce interval. Double taps on the call button and client
retries land here before anything reaches the telephony provider.

A rejection is a control signal, not an error: ``try_accept_call`` never
raises, it returns False and the API answers 429.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, NamedTuple, Optional

import redis.asyncio as aioredis

from callbridge.logging_config import get_logger

logger = get_logger(__name__)

DEDUP_KEY = "calls:dedup:{}"  # String per (from, to) pair, expires with the window


class DedupKey(NamedTuple):
    """(caller, callee) pair. A tuple, so no separator can collide."""

    from_address: str
    to_address: str

    def encode(self) -> str:
        """Unambiguous flat encoding for external stores (length-prefixed)."""
        return f"{len(self.from_address)}:{self.from_address}:{self.to_address}"


class DedupWindow(ABC):
    """Interface shared by the in-process and Redis-backed windows."""

    def __init__(
        self,
        debounce_ms: int = 3000,
        retention_ms: int = 60000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.debounce_ms = debounce_ms
        self.retention_ms = retention_ms
        self._clock = clock

    def _now_ms(self, now: Optional[float]) -> float:
        return now if now is not None else self._clock() * 1000

    @abstractmethod
    async def try_accept_call(
        self,
        from_address: str | None,
        to_address: str | None,
        now: Optional[float] = None,
    ) -> bool:
        """
        Accept or reject a call attempt.

        Args:
            from_address: Caller address (may be empty for anonymous calls).
            to_address: Callee address.
            now: Current time in epoch milliseconds; defaults to the clock.

        Returns:
            True if the attempt is accepted and recorded, False if the same
            pair was accepted less than ``debounce_ms`` ago.
        """

    @abstractmethod
    async def sweep(self, now: Optional[float] = None) -> int:
        """Drop entries older than ``retention_ms``. Returns how many were removed."""


class InMemoryDedupWindow(DedupWindow):
    """Process-local window. The lock keeps check-and-set atomic under threads too."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._entries: dict[DedupKey, float] = {}
        self._lock = threading.Lock()

    async def try_accept_call(
        self,
        from_address: str | None,
        to_address: str | None,
        now: Optional[float] = None,
    ) -> bool:
        key = DedupKey(from_address or "", to_address or "")
        now_ms = self._now_ms(now)

        with self._lock:
            last = self._entries.get(key)
            if last is not None and now_ms - last < self.debounce_ms:
                logger.info(
                    "duplicate_call_rejected",
                    from_address=key.from_address,
                    to_address=key.to_address,
                    since_ms=round(now_ms - last),
                )
                return False
            self._entries[key] = now_ms

        return True

    async def sweep(self, now: Optional[float] = None) -> int:
        now_ms = self._now_ms(now)
        with self._lock:
            expired = [
                key for key, stamp in self._entries.items()
                if now_ms - stamp > self.retention_ms
            ]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("dedup_window_swept", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class RedisDedupWindow(DedupWindow):
    """
    Window shared by every instance behind a load balancer.

    ``SET NX PX`` is the atomic check-and-set: the key only exists while
    the debounce interval is running, so Redis expiry replaces the sweep.
    """

    def __init__(self, redis: aioredis.Redis, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._redis = redis

    async def try_accept_call(
        self,
        from_address: str | None,
        to_address: str | None,
        now: Optional[float] = None,
    ) -> bool:
        key = DedupKey(from_address or "", to_address or "")
        now_ms = self._now_ms(now)

        if self.debounce_ms <= 0:
            return True

        try:
            accepted = await self._redis.set(
                DEDUP_KEY.format(key.encode()),
                str(int(now_ms)),
                nx=True,
                px=self.debounce_ms,
            )
        except Exception as e:
            # Fail open: a Redis outage must not block every call
            logger.error("dedup_window_unavailable", error=str(e))
            return True

        if not accepted:
            logger.info(
                "duplicate_call_rejected",
                from_address=key.from_address,
                to_address=key.to_address,
            )
            return False
        return True

    async def sweep(self, now: Optional[float] = None) -> int:
        return 0
