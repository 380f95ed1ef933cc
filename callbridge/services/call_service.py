"""
Call Service.

Orchestrates the call core for the API and webhook routes: validates
requests, consults the dedup window, places calls through the telephony
provider, keeps the call record store current and hands resolved
destinations to the connection protocol handler.
"""

from __future__ import annotations

import time
from typing import Any, Optional
from urllib.parse import urlencode

from callbridge.config import Settings
from callbridge.errors import (
    CallNotFoundError,
    DuplicateCallError,
    ProviderError,
    RequestValidationFailed,
    StoreUnavailableError,
)
from callbridge.logging_config import get_logger
from callbridge.schemas.call import (
    CLIENT_PREFIX,
    CallDirection,
    CallEventRequest,
    CallRecord,
    CallStatus,
    CallType,
    MakeCallRequest,
    RegisterPushRequest,
)
from callbridge.schemas.notification import Platform, PushPayload
from callbridge.schemas.routing import ResolutionSource, RoutingDecision, RoutingRequest
from callbridge.services.connection import spoken_error

logger = get_logger(__name__)

# Events the mobile app may report for its own leg
CLIENT_EVENTS = {
    "ringing": CallStatus.RINGING,
    "answered": CallStatus.IN_PROGRESS,
    "rejected": CallStatus.REJECTED,
}


def _strip_client(address: str | None) -> Optional[str]:
    if address and address.startswith(CLIENT_PREFIX):
        return address[len(CLIENT_PREFIX):]
    return None


class CallService:
    """Entry point of every call-related route."""

    def __init__(
        self,
        settings: Settings,
        dedup: Any,
        store: Any,
        resolver: Any,
        handler: Any,
        provider: Any,
        dispatcher: Any,
        db: Any,
    ) -> None:
        self.settings = settings
        self.dedup = dedup
        self.store = store
        self.resolver = resolver
        self.handler = handler
        self.provider = provider
        self.dispatcher = dispatcher
        self.db = db

    # -- Outbound calls --

    async def make_call(self, request: MakeCallRequest, direct: bool = False) -> str:
        """
        Place an outbound call and start tracking it.

        The provider first rings the caller's own leg (their app client, or
        their phone), then fetches connection instructions that dial the
        destination exactly once.

        Returns:
            The provider call SID.
        """
        to = (request.to or "").strip()
        from_ = (request.from_ or "").strip()
        if not to:
            raise RequestValidationFailed("Missing 'to' parameter.")

        caller_leg = f"{CLIENT_PREFIX}{request.from_identity}" if request.from_identity else from_
        if not caller_leg:
            raise RequestValidationFailed("Missing 'from' or 'fromIdentity' parameter.")

        caller_id = self.settings.twilio_caller_id or from_
        if not caller_id or caller_id.startswith(CLIENT_PREFIX):
            raise RequestValidationFailed("No caller ID available for this call.")

        if not await self.dedup.try_accept_call(from_ or caller_leg, to):
            raise DuplicateCallError(from_ or caller_leg, to)

        call_unique_id = f"{from_ or caller_leg}-{to}-{int(time.time() * 1000)}"
        to_client = _strip_client(to)

        if direct and to_client:
            call_type = CallType.DIRECT_CLIENT
            path = "/twiml-direct-client?" + urlencode({"callUniqueId": call_unique_id, "clientId": to_client})
        elif direct:
            call_type = CallType.DIRECT_NUMBER
            path = "/twiml-direct-number?" + urlencode({"callUniqueId": call_unique_id, "to": to})
        else:
            call_type = CallType.DEFAULT_DIAL
            path = "/twiml?" + urlencode({"callUniqueId": call_unique_id, "to": to})

        call_id = await self.provider.create_call(
            to=caller_leg,
            from_=caller_id,
            url=self.settings.callback_url(path),
            status_callback=self.settings.callback_url("/call-status"),
        )

        await self.store.track_call(
            call_id,
            from_address=from_ or caller_leg,
            to_address=to,
            from_identity=request.from_identity or _strip_client(from_),
            to_identity=to_client,
            direction=CallDirection.OUTBOUND,
            call_type=call_type,
            call_unique_id=call_unique_id,
        )
        logger.info(
            "outbound_call_initiated",
            call_id=call_id,
            call_type=call_type.value,
            call_unique_id=call_unique_id,
        )
        return call_id

    async def end_call(self, call_id: str | None) -> CallRecord | None:
        """Ask the provider to complete the call, then forget it locally."""
        if not call_id:
            raise RequestValidationFailed("Missing callSid parameter")
        await self.provider.end_call(call_id)
        record = await self.store.update_status(call_id, CallStatus.COMPLETED)
        if record is not None and record.status.is_terminal:
            # The provider's own "completed" callback arrives after removal
            try:
                await self.db.log_call(record)
            except StoreUnavailableError as e:
                logger.warning("call_log_write_failed", call_id=call_id, error=str(e))
        return await self.store.remove_call(call_id)

    # -- Queries --

    async def describe(self, record: CallRecord) -> dict[str, Any]:
        data = record.model_dump(mode="json")
        data["duration"] = await self.store.calculate_duration(record.call_id)
        return data

    async def get_call_info(self, call_id: str) -> dict[str, Any]:
        """Local record merged with the provider's view of the call."""
        record = await self.store.get_call(call_id)

        provider_view: Optional[dict[str, Any]] = None
        try:
            provider_view = await self.provider.fetch_call(call_id)
        except ProviderError as e:
            logger.warning("provider_call_lookup_failed", call_id=call_id, error=str(e))

        if record is None and provider_view is None:
            raise CallNotFoundError(f"Call {call_id} not found")

        return {
            "call": await self.describe(record) if record else None,
            "provider": provider_view,
        }

    async def list_active_calls(self, identity: str) -> list[dict[str, Any]]:
        records = await self.store.list_calls_for(identity, active_only=True)
        records.sort(key=lambda r: r.start_time or 0, reverse=True)
        return [await self.describe(record) for record in records]

    async def record_client_event(self, request: CallEventRequest) -> CallRecord:
        """Apply a state change reported by the app for its own leg."""
        identity = (request.identity or "").strip()
        event = (request.event or "").strip().lower()
        if not identity or not event:
            raise RequestValidationFailed("Missing required parameters: identity, event")
        if event not in CLIENT_EVENTS:
            raise RequestValidationFailed(f"Unsupported call event: {event}")

        call_id = request.call_sid
        if not call_id:
            active = await self.store.list_calls_for(identity, active_only=True)
            if not active:
                raise CallNotFoundError(f"No active call for {identity}")
            call_id = max(active, key=lambda r: r.start_time or 0).call_id

        record = await self.handler.apply_client_status(call_id, CLIENT_EVENTS[event])
        if record is None:
            raise CallNotFoundError(f"Call {call_id} not found")

        logger.info("client_call_event", call_id=call_id, identity=identity, call_event=event)
        return record

    # -- Provider instruction requests --

    async def connect_call_leg(self, params: dict[str, Any]) -> str:
        """Instructions for POST /twiml (voice SDK connect or a /call/make bridge)."""
        call_id = str(params.get("CallSid") or "")
        to = str(params.get("to") or params.get("To") or "").strip()
        from_ = str(params.get("From") or "").strip() or None

        if not to:
            logger.warning("twiml_missing_destination", call_id=call_id)
            return spoken_error("Sorry, we couldn't determine who to call. Please try again.")
        if not call_id:
            return spoken_error()

        record = await self.store.get_call(call_id)
        if record is None:
            # Voice SDK connect: the first time this call SID is seen
            record = await self.store.track_call(
                call_id,
                from_address=from_,
                to_address=to,
                from_identity=_strip_client(from_),
                direction=CallDirection.OUTBOUND,
                parent_call_id=params.get("ParentCallSid") or None,
            )

        decision = await self.resolver.resolve_destination(
            RoutingRequest(
                to_address=to,
                direction=record.direction or CallDirection.OUTBOUND,
                from_address=from_,
                identity_hint=params.get("identity") or params.get("toIdentity") or None,
            )
        )
        return await self.handler.build_connection_instructions(
            call_id,
            decision,
            caller_id=self._caller_id_for(decision, from_),
        )

    async def incoming_call(self, params: dict[str, Any]) -> tuple[str, RoutingDecision]:
        """Instructions for an inbound call on a provider number."""
        call_id = str(params.get("CallSid") or "")
        to = str(params.get("To") or "").strip()
        from_ = str(params.get("From") or "").strip() or None
        if not call_id:
            raise RequestValidationFailed("Missing CallSid")

        await self.store.track_call(
            call_id,
            from_address=from_,
            to_address=to,
            from_identity=_strip_client(from_),
            direction=CallDirection.INBOUND,
        )

        decision = await self.resolver.resolve_destination(
            RoutingRequest(
                to_address=to,
                direction=CallDirection.INBOUND,
                from_address=from_,
                identity_hint=params.get("identity") or None,
                dialed_number=to if to and not to.startswith(CLIENT_PREFIX) else None,
            )
        )
        twiml = await self.handler.build_connection_instructions(
            call_id,
            decision,
            caller_id=from_ or self.settings.twilio_caller_id,
        )
        logger.info(
            "inbound_call_routed",
            call_id=call_id,
            target=decision.target,
            source=decision.source.value,
            degraded=decision.degraded,
        )
        return twiml, decision

    async def direct_call_leg(
        self,
        call_id: str,
        client_id: str | None = None,
        number: str | None = None,
    ) -> str:
        """Instructions for the single-shot direct connection variants."""
        if client_id is not None:
            if not client_id:
                return spoken_error("Missing client ID parameter. Cannot complete call.")
            decision = RoutingDecision(
                target=client_id,
                is_client=True,
                play_greeting=False,
                source=ResolutionSource.LITERAL_CLIENT,
            )
            call_type = CallType.DIRECT_CLIENT
        else:
            if not number:
                return spoken_error("Missing destination number. Cannot complete call.")
            decision = RoutingDecision(
                target=number,
                is_client=False,
                play_greeting=False,
                source=ResolutionSource.PSTN,
            )
            call_type = CallType.DIRECT_NUMBER

        if not call_id:
            return spoken_error()
        return await self.handler.build_connection_instructions(
            call_id,
            decision,
            caller_id=self.settings.twilio_caller_id or None,
            call_type=call_type,
        )

    def _caller_id_for(self, decision: RoutingDecision, from_: str | None) -> Optional[str]:
        # Client legs may show the calling client; PSTN legs need an owned number
        if decision.is_client and from_:
            return from_
        if from_ and not from_.startswith(CLIENT_PREFIX):
            return self.settings.twilio_caller_id or from_
        return self.settings.twilio_caller_id or None

    # -- Notifications --

    async def notify_incoming_call(self, call_id: str, identity: str, from_: str | None, to: str | None) -> bool:
        return await self.dispatcher.notify(
            identity,
            PushPayload(type="incoming_call", call_id=call_id, from_address=from_, to_address=to),
        )

    async def register_push(self, request: RegisterPushRequest) -> Platform:
        if not request.identity or not request.platform or not request.device_token:
            raise RequestValidationFailed("Missing required parameters: identity, platform, deviceToken")
        try:
            platform = Platform(request.platform.strip().lower())
        except ValueError:
            raise RequestValidationFailed(f"Unsupported platform: {request.platform}")

        await self.db.upsert_device_token(request.identity, platform, request.device_token)
        logger.info("push_token_registered", identity=request.identity, platform=platform.value)
        return platform

    def access_token(self, identity: str | None) -> str:
        if not identity:
            raise RequestValidationFailed("Identity is required")
        return self.provider.generate_access_token(identity)
