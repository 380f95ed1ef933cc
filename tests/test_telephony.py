"""Tests for the Twilio provider wrapper (Twilio REST client mocked)."""

from unittest.mock import MagicMock

import pytest
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator

from callbridge.config import Settings
from callbridge.errors import ProviderError
from callbridge.services.telephony import STATUS_CALLBACK_EVENTS, TwilioProvider


def rest_error(code: int, msg: str = "raw provider message") -> TwilioRestException:
    return TwilioRestException(400, "https://api.twilio.com/2010-04-01/Calls.json", msg=msg, code=code)


@pytest.fixture
def twilio_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def telephony(settings, twilio_client) -> TwilioProvider:
    return TwilioProvider(settings, client=twilio_client)


class TestCallControl:
    async def test_create_call(self, telephony, twilio_client) -> None:
        twilio_client.calls.create.return_value = MagicMock(sid="CA_TEST_CALL_SID_123")

        sid = await telephony.create_call(
            to="client:alice",
            from_="+15550000",
            url="https://callbridge.example.com/twiml",
            status_callback="https://callbridge.example.com/call-status",
        )

        assert sid == "CA_TEST_CALL_SID_123"
        kwargs = twilio_client.calls.create.call_args.kwargs
        assert kwargs["to"] == "client:alice"
        assert kwargs["from_"] == "+15550000"
        assert kwargs["status_callback_event"] == STATUS_CALLBACK_EVENTS

    @pytest.mark.parametrize(
        "code, message",
        [
            (21211, "Invalid phone number format"),
            (21214, "Phone number is not valid or verified"),
            (20404, "Twilio configuration issue - check your account"),
            (13224, "Twilio error (code: 13224): raw provider message"),
        ],
    )
    async def test_error_codes_translated(self, telephony, twilio_client, code, message) -> None:
        twilio_client.calls.create.side_effect = rest_error(code)

        with pytest.raises(ProviderError) as exc_info:
            await telephony.create_call("+1", "+15550000", "https://x/twiml", "https://x/call-status")

        assert exc_info.value.message == message
        assert exc_info.value.code == code
        assert exc_info.value.status_code == 500

    async def test_network_error_wrapped(self, telephony, twilio_client) -> None:
        twilio_client.calls.create.side_effect = ConnectionError("connection reset")

        with pytest.raises(ProviderError):
            await telephony.create_call("+15550199", "+15550000", "https://x/twiml", "https://x/call-status")

    async def test_end_call(self, telephony, twilio_client) -> None:
        await telephony.end_call("CA1")

        twilio_client.calls.assert_called_with("CA1")
        twilio_client.calls.return_value.update.assert_called_once_with(status="completed")

    async def test_fetch_call(self, telephony, twilio_client) -> None:
        call = MagicMock(
            sid="CA1",
            status="in-progress",
            from_="+15550100",
            to="+15550199",
            direction="outbound-api",
            duration=None,
            parent_call_sid=None,
            start_time=None,
            end_time=None,
        )
        twilio_client.calls.return_value.fetch.return_value = call

        view = await telephony.fetch_call("CA1")

        assert view["status"] == "in-progress"
        assert view["from"] == "+15550100"

    async def test_missing_credentials(self) -> None:
        telephony = TwilioProvider(Settings(_env_file=None, twilio_account_sid="", twilio_auth_token=""))

        with pytest.raises(ProviderError):
            await telephony.create_call("+15550199", "+15550000", "https://x/twiml", "https://x/call-status")


class TestTokensAndSignatures:
    def test_access_token_is_jwt(self, telephony) -> None:
        token = telephony.generate_access_token("alice")

        assert isinstance(token, str)
        assert token.count(".") == 2

    def test_access_token_requires_api_key(self) -> None:
        telephony = TwilioProvider(Settings(_env_file=None, twilio_account_sid="AC1", twilio_api_key=""))

        with pytest.raises(ProviderError):
            telephony.generate_access_token("alice")

    def test_signature_validation(self, telephony, settings) -> None:
        url = "https://callbridge.example.com/call-status"
        params = {"CallSid": "CA1", "CallStatus": "completed"}
        signature = RequestValidator(settings.twilio_auth_token).compute_signature(url, params)

        assert telephony.validate_signature(url, params, signature) is True
        assert telephony.validate_signature(url, params, "forged") is False
        assert telephony.validate_signature(url, params, None) is False
