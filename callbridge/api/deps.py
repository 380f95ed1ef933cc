"""
Service wiring for the API routes.

Everything is built once, on first use, from ``get_settings()``. Tests
replace ``get_services`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as aioredis

from callbridge.config import Settings, StateBackend, get_settings
from callbridge.db import get_db
from callbridge.logging_config import get_logger
from callbridge.services.call_service import CallService
from callbridge.services.call_store import (
    CallRecordStore,
    InMemoryCallRecordStore,
    RedisCallRecordStore,
)
from callbridge.services.connection import ConnectionProtocolHandler
from callbridge.services.dedup_window import DedupWindow, InMemoryDedupWindow, RedisDedupWindow
from callbridge.services.notifications import FcmPushSender, NotificationDispatcher
from callbridge.services.routing import RoutingResolver
from callbridge.services.telephony import TwilioProvider

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    dedup: DedupWindow
    store: CallRecordStore
    handler: ConnectionProtocolHandler
    provider: TwilioProvider
    dispatcher: NotificationDispatcher
    sender: Any
    calls: CallService

    async def close(self) -> None:
        await self.store.close()
        close_sender = getattr(self.sender, "close", None)
        if close_sender is not None:
            await close_sender()


def build_services(
    settings: Settings,
    db: Any = None,
    provider: Any = None,
    sender: Any = None,
    redis_client: Any = None,
) -> Services:
    """Assemble the call core for ``settings``."""
    db = db if db is not None else get_db()
    provider = provider if provider is not None else TwilioProvider(settings)
    sender = sender if sender is not None else FcmPushSender(
        settings.fcm_project_id,
        settings.fcm_access_token,
        timeout=settings.push_timeout_seconds,
    )

    timing = {
        "grace_seconds": settings.call_record_grace_seconds,
        "stale_seconds": settings.stale_call_seconds,
    }
    window = {
        "debounce_ms": settings.dedup_debounce_ms,
        "retention_ms": settings.dedup_retention_ms,
    }

    if settings.state_backend == StateBackend.REDIS:
        if redis_client is None:
            redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        store: CallRecordStore = RedisCallRecordStore(redis_client, **timing)
        dedup: DedupWindow = RedisDedupWindow(redis_client, **window)
    else:
        store = InMemoryCallRecordStore(**timing)
        dedup = InMemoryDedupWindow(**window)

    dispatcher = NotificationDispatcher(db, sender)
    handler = ConnectionProtocolHandler(
        store,
        dispatcher,
        db,
        action_url=settings.callback_url("/call-action-result"),
        ring_timeout=settings.ring_timeout_seconds,
        default_caller_id=settings.twilio_caller_id or None,
    )
    resolver = RoutingResolver(
        db,
        fallback_prefix=settings.fallback_identity_prefix,
        greet_on_fallback=settings.greet_on_fallback,
        default_identity=settings.default_client_identity,
    )
    calls = CallService(
        settings,
        dedup=dedup,
        store=store,
        resolver=resolver,
        handler=handler,
        provider=provider,
        dispatcher=dispatcher,
        db=db,
    )

    logger.info("services_built", state_backend=settings.state_backend.value)
    return Services(
        settings=settings,
        dedup=dedup,
        store=store,
        handler=handler,
        provider=provider,
        dispatcher=dispatcher,
        sender=sender,
        calls=calls,
    )


# Shared instance (initialized on first use)
_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


async def shutdown_services() -> None:
    global _services
    if _services is not None:
        await _services.close()
        _services = None
