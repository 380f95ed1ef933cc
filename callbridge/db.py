"""
Supabase Database Client.

Provides a singleton instance of the Supabase client and typed helper
methods for the lookups the call core needs: number-ownership mappings,
users, device tokens and call logs. Every helper raises
``StoreUnavailableError`` when the client is missing or the query fails,
so callers decide whether to degrade (routing) or give up (push).
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from supabase import Client, create_client

from callbridge.config import get_settings
from callbridge.errors import StoreUnavailableError
from callbridge.logging_config import get_logger
from callbridge.schemas.call import CallRecord
from callbridge.schemas.notification import DeviceToken, Platform

logger = get_logger(__name__)


class DatabaseClient:
    """Wrapper around the official Supabase Python client."""

    _instance: Optional[DatabaseClient] = None
    _client: Optional[Client]

    def __new__(cls) -> DatabaseClient:
        """Singleton pattern to ensure only one client instance."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._client = None
            settings = get_settings()

            if not settings.supabase_url or not settings.supabase_service_key:
                logger.warning(
                    "Supabase credentials missing. Routing will use fallback identities.",
                    url=bool(settings.supabase_url),
                    key=bool(settings.supabase_service_key),
                )
            else:
                # A broken store must not keep the call API from starting
                try:
                    cls._instance._client = create_client(
                        settings.supabase_url,
                        settings.supabase_service_key,
                    )
                    logger.info("Supabase client initialized", url=settings.supabase_url)
                except Exception as e:
                    logger.error("Failed to initialize Supabase client", error=str(e))

        return cls._instance

    @property
    def client(self) -> Client:
        """Access the raw Supabase client."""
        if self._client is None:
            raise StoreUnavailableError("Relational store is not configured")
        return self._client

    async def _execute(self, build: Callable[[Client], Any], message: str, **context: Any) -> Any:
        """
        Run a query in a worker thread.

        The Supabase client is synchronous; ``build`` assembles the query
        against the raw client and ``execute()`` runs off the event loop.
        """
        client = self.client
        try:
            return await asyncio.to_thread(lambda: build(client).execute())
        except Exception as e:
            logger.error(message, error=str(e), **context)
            raise StoreUnavailableError(str(e)) from e

    async def get_number_mapping(self, number: str) -> dict[str, Any] | None:
        """Fetch the active owner mapping of a provider-owned number."""
        response = await self._execute(
            lambda client: client.table("twilio_number_mapping")
            .select("*, users(id, email, identity)")
            .eq("twilio_number", number)
            .eq("is_active", True)
            .limit(1),
            "Error fetching number mapping",
            number=number,
        )
        return response.data[0] if response.data else None

    async def get_user_by_email(self, email: str) -> dict[str, Any] | None:
        return await self._get_user("email", email)

    async def get_user_by_id(self, user_id: str) -> dict[str, Any] | None:
        return await self._get_user("id", user_id)

    async def _get_user(self, column: str, value: str) -> dict[str, Any] | None:
        response = await self._execute(
            lambda client: client.table("users")
            .select("id, email, identity")
            .eq(column, value)
            .limit(1),
            "Error fetching user",
            column=column,
            value=value,
        )
        return response.data[0] if response.data else None

    async def get_device_tokens(self, identity: str) -> list[DeviceToken]:
        """All registered push tokens of an identity."""
        response = await self._execute(
            lambda client: client.table("device_tokens")
            .select("identity, platform, device_token")
            .eq("identity", identity),
            "Error fetching device tokens",
            identity=identity,
        )

        tokens = []
        for row in response.data or []:
            try:
                platform = Platform(str(row.get("platform", "")).lower())
            except ValueError:
                logger.warning("Skipping token with unknown platform", platform=row.get("platform"))
                continue
            tokens.append(
                DeviceToken(
                    owner_identity=row["identity"],
                    platform=platform,
                    token=row["device_token"],
                )
            )
        return tokens

    async def upsert_device_token(self, identity: str, platform: Platform, token: str) -> None:
        await self._execute(
            lambda client: client.table("device_tokens").upsert(
                {
                    "identity": identity,
                    "platform": platform.value,
                    "device_token": token,
                },
                on_conflict="device_token",
            ),
            "Error saving device token",
            identity=identity,
        )

    async def delete_device_token(self, token: str) -> None:
        await self._execute(
            lambda client: client.table("device_tokens").delete().eq("device_token", token),
            "Error deleting device token",
        )

    async def log_call(self, record: CallRecord) -> None:
        """Upsert the final state of a call into ``call_logs``."""
        payload = {
            "call_sid": record.call_id,
            "from_address": record.from_address,
            "to_address": record.to_address,
            "from_identity": record.from_identity,
            "to_identity": record.to_identity,
            "direction": record.direction.value if record.direction else None,
            "status": record.status.value,
            "duration": record.duration,
            "call_type": record.call_type.value if record.call_type else None,
            "parent_call_sid": record.parent_call_id,
        }
        await self._execute(
            lambda client: client.table("call_logs").upsert(payload, on_conflict="call_sid"),
            "Error writing call log",
            call_id=record.call_id,
        )


# Global accessor
def get_db() -> DatabaseClient:
    return DatabaseClient()
