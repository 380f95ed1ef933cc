"""
Call Record Store.

Table of in-flight and recently completed calls keyed by the provider call
SID. Holds status, timestamps, routing identities and the ``dialed`` flag
that guards against emitting a second dial for the same call leg.

Two backends share one async interface:

- ``InMemoryCallRecordStore``: process-local, the default. A restart loses
  all in-flight call state; late callbacks for those calls are then
  acknowledged and discarded.
- ``RedisCallRecordStore``: shared between instances, records expire via
  key TTLs.
"""

from __future__ import annotations

import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import redis.asyncio as aioredis

from callbridge.logging_config import get_logger
from callbridge.schemas.call import CallRecord, CallStatus, is_valid_transition

logger = get_logger(__name__)

# Redis key prefixes
CALL_RECORD_KEY = "calls:record:{}"      # JSON document per call
CALL_DIALED_KEY = "calls:dialed:{}"      # Single-dial guard per call
IDENTITY_CALLS_KEY = "calls:identity:{}"  # Set of call IDs per identity


def duration_of(record: CallRecord, now: float) -> int:
    """Seconds a call has lasted, without touching the record."""
    if record.status == CallStatus.COMPLETED:
        return record.duration
    if record.answered_at is not None:
        return max(0, math.floor(now - record.answered_at))
    return 0


def apply_status(record: CallRecord, status: CallStatus, now: float) -> bool:
    """
    Move ``record`` to ``status`` in place.

    Returns False (record untouched) when the transition table forbids it.
    """
    if status == record.status:
        return False
    if not is_valid_transition(record.status, status):
        logger.warning(
            "status_transition_ignored",
            call_id=record.call_id,
            current=record.status.value,
            requested=status.value,
        )
        return False

    record.status = status
    record.updated_at = now
    if status == CallStatus.IN_PROGRESS and record.answered_at is None:
        record.answered_at = now
    if status == CallStatus.COMPLETED and record.start_time is not None:
        record.duration = math.floor(now - record.start_time)
    return True


def merge_record(record: CallRecord | None, call_id: str, data: dict[str, Any], now: float) -> CallRecord:
    """Shallow merge, last write wins per field. Status goes through the transition table."""
    status = data.pop("status", None)
    data.pop("call_id", None)

    if record is None:
        return CallRecord.model_validate({
            "start_time": now,
            "duration": 0,
            "updated_at": now,
            **data,
            "call_id": call_id,
            "status": CallStatus(status) if status is not None else CallStatus.INITIATED,
        })

    record = CallRecord.model_validate({**record.model_dump(), **data, "updated_at": now})
    if status is not None:
        apply_status(record, CallStatus(status), now)
    return record


class CallRecordStore(ABC):
    """Operations the call core performs on call state."""

    def __init__(
        self,
        grace_seconds: int = 300,
        stale_seconds: int = 14400,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock

    @abstractmethod
    async def track_call(self, call_id: str, **data: Any) -> CallRecord:
        """Create the record with defaults, or merge ``data`` into the existing one."""

    @abstractmethod
    async def update_status(self, call_id: str, status: CallStatus) -> CallRecord | None:
        """Apply a status; None when the call is unknown. Never raises for unknown IDs."""

    @abstractmethod
    async def get_call(self, call_id: str) -> CallRecord | None:
        ...

    @abstractmethod
    async def remove_call(self, call_id: str) -> CallRecord | None:
        """Delete the record and return its prior value."""

    @abstractmethod
    async def claim_dial(self, call_id: str) -> bool:
        """
        Atomically set ``dialed``.

        Returns True only for the first caller; every later claim for the
        same call ID returns False.
        """

    @abstractmethod
    async def list_calls_for(self, identity: str, active_only: bool = True) -> list[CallRecord]:
        ...

    @abstractmethod
    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Age-based cleanup. Returns how many records were dropped."""

    async def calculate_duration(self, call_id: str) -> int:
        record = await self.get_call(call_id)
        if record is None:
            return 0
        return duration_of(record, self._clock())

    async def close(self) -> None:
        return None


class InMemoryCallRecordStore(CallRecordStore):
    """Dict-backed store. No awaits inside the lock, so every operation is atomic."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._calls: dict[str, CallRecord] = {}
        self._lock = threading.Lock()

    async def track_call(self, call_id: str, **data: Any) -> CallRecord:
        now = self._clock()
        with self._lock:
            existing = self._calls.get(call_id)
            record = merge_record(existing, call_id, dict(data), now)
            self._calls[call_id] = record

        if existing is None:
            logger.info(
                "call_tracked",
                call_id=call_id,
                direction=record.direction.value if record.direction else None,
                call_type=record.call_type.value if record.call_type else None,
            )
        return record.model_copy()

    async def update_status(self, call_id: str, status: CallStatus) -> CallRecord | None:
        now = self._clock()
        with self._lock:
            record = self._calls.get(call_id)
            if record is None:
                return None
            changed = apply_status(record, status, now)

        if changed:
            logger.info(
                "call_status_updated",
                call_id=call_id,
                status=status.value,
                duration=record.duration,
            )
        return record.model_copy()

    async def get_call(self, call_id: str) -> CallRecord | None:
        with self._lock:
            record = self._calls.get(call_id)
            return record.model_copy() if record else None

    async def remove_call(self, call_id: str) -> CallRecord | None:
        with self._lock:
            record = self._calls.pop(call_id, None)
        if record is not None:
            logger.info("call_removed", call_id=call_id)
        return record

    async def claim_dial(self, call_id: str) -> bool:
        now = self._clock()
        with self._lock:
            record = self._calls.get(call_id)
            if record is None:
                record = merge_record(None, call_id, {}, now)
                self._calls[call_id] = record
            if record.dialed:
                return False
            record.dialed = True
            record.updated_at = now
            return True

    async def list_calls_for(self, identity: str, active_only: bool = True) -> list[CallRecord]:
        with self._lock:
            return [
                record.model_copy()
                for record in self._calls.values()
                if record.involves(identity)
                and not (active_only and record.status.is_terminal)
            ]

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = now if now is not None else self._clock()
        with self._lock:
            expired = [
                call_id for call_id, record in self._calls.items()
                if self._is_expired(record, now)
            ]
            for call_id in expired:
                del self._calls[call_id]

        if expired:
            logger.info("call_records_purged", removed=len(expired))
        return len(expired)

    def _is_expired(self, record: CallRecord, now: float) -> bool:
        last_seen = record.updated_at or record.start_time or now
        if record.status.is_terminal:
            return now - last_seen > self.grace_seconds
        return now - last_seen > self.stale_seconds

    def __len__(self) -> int:
        return len(self._calls)


class RedisCallRecordStore(CallRecordStore):
    """
    Redis-backed store for multi-instance deployments.

    Records are JSON strings with a TTL: ``stale_seconds`` while the call
    is live, ``grace_seconds`` once it reaches a terminal state. The
    single-dial guard is a separate ``SET NX`` key so it stays atomic
    across processes.
    """

    def __init__(self, redis: aioredis.Redis, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._redis = redis

    async def _load(self, call_id: str) -> CallRecord | None:
        raw = await self._redis.get(CALL_RECORD_KEY.format(call_id))
        if not raw:
            return None
        return CallRecord.model_validate_json(raw)

    async def _save(self, record: CallRecord) -> None:
        ttl = self.grace_seconds if record.status.is_terminal else self.stale_seconds
        await self._redis.set(
            CALL_RECORD_KEY.format(record.call_id),
            record.model_dump_json(),
            ex=max(ttl, 1),
        )
        for identity in {record.from_identity, record.to_identity}:
            if identity:
                await self._redis.sadd(IDENTITY_CALLS_KEY.format(identity), record.call_id)

    async def track_call(self, call_id: str, **data: Any) -> CallRecord:
        existing = await self._load(call_id)
        record = merge_record(existing, call_id, dict(data), self._clock())
        await self._save(record)
        if existing is None:
            logger.info("call_tracked", call_id=call_id, backend="redis")
        return record

    async def update_status(self, call_id: str, status: CallStatus) -> CallRecord | None:
        record = await self._load(call_id)
        if record is None:
            return None
        if apply_status(record, status, self._clock()):
            await self._save(record)
            logger.info("call_status_updated", call_id=call_id, status=status.value, backend="redis")
        return record

    async def get_call(self, call_id: str) -> CallRecord | None:
        return await self._load(call_id)

    async def remove_call(self, call_id: str) -> CallRecord | None:
        record = await self._load(call_id)
        await self._redis.delete(CALL_RECORD_KEY.format(call_id), CALL_DIALED_KEY.format(call_id))
        if record is not None:
            for identity in {record.from_identity, record.to_identity}:
                if identity:
                    await self._redis.srem(IDENTITY_CALLS_KEY.format(identity), call_id)
            logger.info("call_removed", call_id=call_id, backend="redis")
        return record

    async def claim_dial(self, call_id: str) -> bool:
        claimed = await self._redis.set(
            CALL_DIALED_KEY.format(call_id), "1", nx=True, ex=self.stale_seconds
        )
        if not claimed:
            return False
        await self.track_call(call_id, dialed=True)
        return True

    async def list_calls_for(self, identity: str, active_only: bool = True) -> list[CallRecord]:
        call_ids = await self._redis.smembers(IDENTITY_CALLS_KEY.format(identity))
        records = []
        for call_id in sorted(call_ids):
            record = await self._load(call_id)
            if record is None:
                # Expired record; drop it from the index
                await self._redis.srem(IDENTITY_CALLS_KEY.format(identity), call_id)
                continue
            if active_only and record.status.is_terminal:
                continue
            records.append(record)
        return records

    async def purge_expired(self, now: Optional[float] = None) -> int:
        return 0

    async def close(self) -> None:
        await self._redis.aclose()
