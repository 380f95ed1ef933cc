"""
Notification Dispatcher.

Looks up an identity's device tokens and pushes a call or message alert to
every device at once. Delivery is best effort: one device failing never
stops the others, tokens the push service reports as unregistered are
deregistered, and nothing here raises into the call flow.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from callbridge.errors import InvalidPushTokenError, PushDeliveryError, StoreUnavailableError
from callbridge.logging_config import get_logger
from callbridge.schemas.notification import DeviceToken, Platform, PushPayload

logger = get_logger(__name__)

FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{}/messages:send"

# FCM v1 error statuses that mean the token will never work again
_INVALID_TOKEN_STATUSES = {"UNREGISTERED", "NOT_FOUND"}


class FcmPushSender:
    """Sends data messages through the FCM HTTP v1 API (Android and iOS via APNs)."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._project_id = project_id
        self._access_token = access_token
        self._timeout = timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _build_message(self, device: DeviceToken, payload: PushPayload) -> dict[str, Any]:
        message: dict[str, Any] = {
            "token": device.token,
            "data": payload.as_data(),
        }
        if device.platform == Platform.ANDROID:
            message["android"] = {"priority": "high", "ttl": "30s"}
        else:
            message["apns"] = {
                "headers": {"apns-priority": "10", "apns-push-type": "alert"},
                "payload": {"aps": {"content-available": 1}},
            }
        return {"message": message}

    async def send(self, device: DeviceToken, payload: PushPayload) -> None:
        """Deliver one push. Raises InvalidPushTokenError or PushDeliveryError."""
        if not self._project_id or not self._access_token:
            raise PushDeliveryError("FCM is not configured")

        client = await self._get_client()
        try:
            response = await client.post(
                FCM_SEND_URL.format(self._project_id),
                json=self._build_message(device, payload),
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        except httpx.HTTPError as e:
            raise PushDeliveryError(f"FCM request failed: {e}") from e

        if response.status_code == 200:
            return

        status = ""
        try:
            status = response.json().get("error", {}).get("status", "")
        except ValueError:
            pass

        if response.status_code == 404 or status in _INVALID_TOKEN_STATUSES:
            raise InvalidPushTokenError(f"Token rejected by FCM: {status or response.status_code}")
        raise PushDeliveryError(f"FCM error {response.status_code}: {status}")


class NotificationDispatcher:
    """Fans a payload out to every device of an identity."""

    def __init__(self, db: Any, sender: Any) -> None:
        self._db = db
        self._sender = sender

    async def notify(self, target_identity: str, payload: PushPayload) -> bool:
        """
        Push ``payload`` to all devices registered for ``target_identity``.

        Returns:
            True if at least one device accepted the payload. False when no
            device did, including when the identity has no tokens at all.
        """
        try:
            devices = await self._db.get_device_tokens(target_identity)
        except StoreUnavailableError as e:
            logger.warning("push_token_lookup_failed", identity=target_identity, error=str(e))
            return False

        # Same token registered twice must only be pushed once
        devices = list({device.token: device for device in devices}.values())
        if not devices:
            logger.info("push_no_devices", identity=target_identity, type=payload.type)
            return False

        results = await asyncio.gather(
            *(self._sender.send(device, payload) for device in devices),
            return_exceptions=True,
        )

        delivered = 0
        for device, result in zip(devices, results):
            if isinstance(result, InvalidPushTokenError):
                await self._deregister(device)
            elif isinstance(result, Exception):
                logger.warning(
                    "push_delivery_failed",
                    identity=target_identity,
                    platform=device.platform.value,
                    error=str(result),
                )
            else:
                delivered += 1

        logger.info(
            "push_dispatched",
            identity=target_identity,
            type=payload.type,
            delivered=delivered,
            devices=len(devices),
        )
        return delivered > 0

    async def _deregister(self, device: DeviceToken) -> None:
        try:
            await self._db.delete_device_token(device.token)
            logger.info(
                "push_token_deregistered",
                identity=device.owner_identity,
                platform=device.platform.value,
            )
        except StoreUnavailableError as e:
            logger.warning("push_token_deregister_failed", identity=device.owner_identity, error=str(e))
