"""
Telephony Provider (Twilio).

Thin async wrapper around the Twilio REST client: places and ends calls,
fetches the provider's view of a call, signs voice access tokens and
validates webhook signatures. The REST client is synchronous, so calls
run in a worker thread to keep the event loop free.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from twilio.base.exceptions import TwilioRestException
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from callbridge.config import Settings
from callbridge.errors import ProviderError
from callbridge.logging_config import get_logger

logger = get_logger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]


class TwilioProvider:
    """Places calls and signs tokens with the configured Twilio account."""

    def __init__(self, settings: Settings, client: Optional[Client] = None) -> None:
        self._settings = settings
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self._settings.twilio_account_sid or not self._settings.twilio_auth_token:
                raise ProviderError("Twilio credentials are not configured")
            self._client = Client(
                self._settings.twilio_account_sid,
                self._settings.twilio_auth_token,
            )
        return self._client

    async def create_call(
        self,
        to: str,
        from_: str,
        url: str,
        status_callback: str,
    ) -> str:
        """Ask the provider to place a call. Returns the call SID."""

        def _create() -> Any:
            return self.client.calls.create(
                to=to,
                from_=from_,
                url=url,
                status_callback=status_callback,
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
            )

        call = await self._run(_create, "create_call", to=to)
        logger.info("provider_call_created", call_id=call.sid, to=to)
        return call.sid

    async def end_call(self, call_id: str) -> None:
        """Transition a live call to completed on the provider side."""
        await self._run(
            lambda: self.client.calls(call_id).update(status="completed"),
            "end_call",
            call_id=call_id,
        )
        logger.info("provider_call_ended", call_id=call_id)

    async def fetch_call(self, call_id: str) -> dict[str, Any]:
        """The provider's view of a call."""
        call = await self._run(lambda: self.client.calls(call_id).fetch(), "fetch_call", call_id=call_id)
        return {
            "sid": call.sid,
            "status": call.status,
            "from": call.from_,
            "to": call.to,
            "direction": call.direction,
            "duration": call.duration,
            "parent_call_sid": call.parent_call_sid,
            "start_time": call.start_time.isoformat() if call.start_time else None,
            "end_time": call.end_time.isoformat() if call.end_time else None,
        }

    def generate_access_token(self, identity: str) -> str:
        """Voice SDK access token allowing outgoing and incoming calls."""
        settings = self._settings
        if not (settings.twilio_account_sid and settings.twilio_api_key and settings.twilio_api_secret):
            raise ProviderError("Twilio API key is not configured")

        token = AccessToken(
            settings.twilio_account_sid,
            settings.twilio_api_key,
            settings.twilio_api_secret,
            identity=identity,
            ttl=settings.access_token_ttl_seconds,
        )
        token.add_grant(
            VoiceGrant(
                outgoing_application_sid=settings.twilio_app_sid,
                incoming_allow=True,
            )
        )
        jwt = token.to_jwt()
        logger.info("access_token_generated", identity=identity)
        return jwt.decode("utf-8") if isinstance(jwt, bytes) else str(jwt)

    def validate_signature(self, url: str, params: dict[str, Any], signature: str | None) -> bool:
        if not signature or not self._settings.twilio_auth_token:
            return False
        validator = RequestValidator(self._settings.twilio_auth_token)
        return validator.validate(url, {k: str(v) for k, v in params.items()}, signature)

    async def _run(self, fn: Any, operation: str, **context: Any) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except ProviderError:
            raise
        except TwilioRestException as e:
            logger.error(
                "provider_request_failed",
                operation=operation,
                code=e.code,
                error=e.msg,
                **context,
            )
            raise ProviderError.from_provider(str(e.msg), e.code) from e
        except Exception as e:
            logger.error("provider_request_failed", operation=operation, error=str(e), **context)
            raise ProviderError(str(e)) from e
