"""Tests for push fan-out and the FCM HTTP v1 sender."""

import json

import httpx
import pytest

from callbridge.errors import InvalidPushTokenError, PushDeliveryError
from callbridge.schemas.notification import DeviceToken, Platform, PushPayload
from callbridge.services.notifications import FcmPushSender, NotificationDispatcher

PAYLOAD = PushPayload(type="incoming_call", call_id="CA1", from_address="+15550100", to_address="+15550123")


def device(token: str, platform: Platform = Platform.ANDROID, owner: str = "alice") -> DeviceToken:
    return DeviceToken(owner_identity=owner, platform=platform, token=token)


class TestNotificationDispatcher:
    async def test_invalid_token_is_deregistered(self, fake_db, fake_sender) -> None:
        fake_db.tokens = [device("good"), device("stale", Platform.IOS)]
        fake_sender.failures["stale"] = InvalidPushTokenError("UNREGISTERED")
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        assert await dispatcher.notify("alice", PAYLOAD) is True

        remaining = await fake_db.get_device_tokens("alice")
        assert [t.token for t in remaining] == ["good"]
        assert [d.token for d, _ in fake_sender.sent] == ["good"]

    async def test_transient_failure_keeps_token(self, fake_db, fake_sender) -> None:
        fake_db.tokens = [device("flaky")]
        fake_sender.failures["flaky"] = PushDeliveryError("FCM error 503")
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        assert await dispatcher.notify("alice", PAYLOAD) is False
        assert [t.token for t in fake_db.tokens] == ["flaky"]

    async def test_no_devices(self, fake_db, fake_sender) -> None:
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        assert await dispatcher.notify("nobody", PAYLOAD) is False
        assert fake_sender.sent == []

    async def test_duplicate_tokens_pushed_once(self, fake_db, fake_sender) -> None:
        fake_db.tokens = [device("same"), device("same")]
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        assert await dispatcher.notify("alice", PAYLOAD) is True
        assert len(fake_sender.sent) == 1

    async def test_store_outage_returns_false(self, fake_db, fake_sender) -> None:
        fake_db.available = False
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        assert await dispatcher.notify("alice", PAYLOAD) is False

    async def test_only_target_identity_is_pushed(self, fake_db, fake_sender) -> None:
        fake_db.tokens = [device("a1"), device("b1", owner="bob")]
        dispatcher = NotificationDispatcher(fake_db, fake_sender)

        await dispatcher.notify("bob", PAYLOAD)

        assert [d.token for d, _ in fake_sender.sent] == ["b1"]


class TestPushPayload:
    def test_data_is_flat_strings(self) -> None:
        payload = PushPayload(type="missed_call", call_id="CA9", from_address="+15550100", extra={"attempt": 2})

        assert payload.as_data() == {
            "type": "missed_call",
            "callSid": "CA9",
            "from": "+15550100",
            "attempt": "2",
        }


def sender_with(handler) -> FcmPushSender:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FcmPushSender("callbridge-test", "ya29.test-token", http_client=client)


class TestFcmPushSender:
    async def test_sends_data_message(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"name": "projects/callbridge-test/messages/1"})

        sender = sender_with(handler)
        await sender.send(device("tok-1"), PAYLOAD)
        await sender.close()

        assert seen["url"] == "https://fcm.googleapis.com/v1/projects/callbridge-test/messages:send"
        assert seen["auth"] == "Bearer ya29.test-token"
        message = seen["body"]["message"]
        assert message["token"] == "tok-1"
        assert message["data"]["callSid"] == "CA1"
        assert message["android"]["priority"] == "high"

    async def test_ios_uses_apns_headers(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        sender = sender_with(handler)
        await sender.send(device("tok-ios", Platform.IOS), PAYLOAD)

        assert seen["body"]["message"]["apns"]["headers"]["apns-priority"] == "10"
        assert "android" not in seen["body"]["message"]

    @pytest.mark.parametrize(
        "status_code, body",
        [
            (404, {"error": {"status": "NOT_FOUND"}}),
            (400, {"error": {"status": "UNREGISTERED"}}),
        ],
    )
    async def test_unregistered_token(self, status_code, body) -> None:
        sender = sender_with(lambda request: httpx.Response(status_code, json=body))

        with pytest.raises(InvalidPushTokenError):
            await sender.send(device("tok-1"), PAYLOAD)

    async def test_server_error(self) -> None:
        sender = sender_with(lambda request: httpx.Response(503, text="unavailable"))

        with pytest.raises(PushDeliveryError) as exc_info:
            await sender.send(device("tok-1"), PAYLOAD)
        assert not isinstance(exc_info.value, InvalidPushTokenError)

    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        sender = sender_with(handler)

        with pytest.raises(PushDeliveryError):
            await sender.send(device("tok-1"), PAYLOAD)

    async def test_unconfigured(self) -> None:
        sender = FcmPushSender("", "")

        with pytest.raises(PushDeliveryError):
            await sender.send(device("tok-1"), PAYLOAD)
