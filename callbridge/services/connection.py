"""
Call Connection Protocol Handler.

Produces the TwiML documents Twilio executes for each call leg and
consumes Twilio's asynchronous status callbacks.

A ``<Dial>`` makes Twilio spawn a child call leg, and a retried or
re-fetched instruction request for the same parent would otherwise dial
again. The handler therefore emits a real dial at most once per call SID:
the ``dialed`` flag is claimed in the call record store before the
document is returned, and every later request gets a neutral
"already connected" document instead.
"""

from __future__ import annotations

from typing import Any, Optional

from twilio.twiml.voice_response import VoiceResponse

from callbridge.errors import RequestValidationFailed, StoreUnavailableError
from callbridge.logging_config import get_logger
from callbridge.schemas.call import CallDirection, CallRecord, CallStatus, CallType, StatusCallback
from callbridge.schemas.notification import PushPayload
from callbridge.schemas.routing import RoutingDecision

logger = get_logger(__name__)

GREETING_PROMPT = "Thanks for calling. Please wait while we connect you."
ALREADY_CONNECTED_PROMPT = "Call is already connected."
TECHNICAL_PROBLEM_PROMPT = "Sorry, there was a technical problem. Please try again later."
INPUT_RECEIVED_PROMPT = "Thank you for your input. Ending the call now."

# Spoken explanation for each unsuccessful <Dial> outcome
DIAL_RESULT_PROMPTS: dict[CallStatus, str] = {
    CallStatus.NO_ANSWER: "The person you are calling is not available. Please try again later.",
    CallStatus.FAILED: "We could not connect your call. Please try again later.",
    CallStatus.BUSY: "The person you are calling is busy. Please try again later.",
    CallStatus.CANCELED: "The call was canceled.",
}

MISSED_CALL_STATUSES = frozenset(
    {CallStatus.NO_ANSWER, CallStatus.BUSY, CallStatus.CANCELED, CallStatus.REJECTED}
)


def spoken_error(message: str = TECHNICAL_PROBLEM_PROMPT) -> str:
    """A document that explains the problem and hangs up."""
    response = VoiceResponse()
    response.say(message)
    response.hangup()
    return str(response)


class ConnectionProtocolHandler:
    """Builds connection instructions and applies status callbacks."""

    def __init__(
        self,
        store: Any,
        dispatcher: Any,
        db: Any,
        action_url: str,
        ring_timeout: int = 30,
        default_caller_id: Optional[str] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._db = db
        self._action_url = action_url
        self._ring_timeout = ring_timeout
        self._default_caller_id = default_caller_id

    async def build_connection_instructions(
        self,
        call_id: str,
        decision: RoutingDecision,
        caller_id: Optional[str] = None,
        call_type: Optional[CallType] = None,
    ) -> str:
        """
        Instructions that connect ``call_id`` to the resolved destination.

        Only the first request for a call SID gets a ``<Dial>``; repeats get
        the neutral already-connected document.
        """
        if not call_id:
            raise RequestValidationFailed("Missing CallSid")

        if not await self._store.claim_dial(call_id):
            logger.info("dial_suppressed", call_id=call_id, target=decision.target)
            return self.already_connected()

        direct = call_type in (CallType.DIRECT_CLIENT, CallType.DIRECT_NUMBER)
        if call_type is None:
            call_type = CallType.GREETING if decision.play_greeting else CallType.DEFAULT_DIAL

        updates: dict[str, Any] = {"call_type": call_type}
        if decision.is_client:
            updates["to_identity"] = decision.target
        await self._store.track_call(call_id, **updates)

        response = VoiceResponse()
        if decision.play_greeting and not direct:
            response.say(GREETING_PROMPT)

        dial_options: dict[str, Any] = {
            "timeout": self._ring_timeout,
            "record": "do-not-record",
        }
        caller_id = caller_id or self._default_caller_id
        if caller_id:
            dial_options["caller_id"] = caller_id
        if not direct:
            dial_options["action"] = self._action_url
            dial_options["method"] = "POST"

        dial = response.dial(**dial_options)
        if decision.is_client:
            dial.client(decision.target)
        else:
            dial.number(decision.target)

        logger.info(
            "dial_emitted",
            call_id=call_id,
            target=decision.target,
            is_client=decision.is_client,
            source=decision.source.value,
            call_type=call_type.value,
        )
        return str(response)

    @staticmethod
    def already_connected() -> str:
        response = VoiceResponse()
        response.say(ALREADY_CONNECTED_PROMPT)
        response.hangup()
        return str(response)

    @staticmethod
    def input_received(digits: Optional[str] = None) -> str:
        """Caller pressed keys during a prompt: acknowledge and end the call."""
        logger.info("caller_input_received", has_digits=bool(digits))
        response = VoiceResponse()
        response.say(INPUT_RECEIVED_PROMPT)
        response.hangup()
        return str(response)

    async def handle_status_callback(self, event: StatusCallback) -> None:
        """
        Apply a provider status callback to the call record store.

        Never raises: the provider gets a 200 whatever happens here, and
        callbacks for calls this process does not know are discarded.
        """
        try:
            await self._apply_status_callback(event)
        except Exception as e:
            logger.error(
                "status_callback_error",
                call_id=event.call_id,
                status=event.status,
                error=str(e),
            )

    async def _apply_status_callback(self, event: StatusCallback) -> None:
        status = CallStatus.parse(event.status)
        if status is None:
            logger.warning("status_callback_unknown_status", call_id=event.call_id, status=event.status)
            return

        logger.info(
            "status_callback_received",
            call_id=event.call_id,
            status=status.value,
            parent_call_id=event.parent_call_id,
        )

        previous = await self._store.get_call(event.call_id)
        record = await self._store.update_status(event.call_id, status) if previous else None
        if record is None:
            if event.parent_call_id and await self._store.get_call(event.parent_call_id):
                logger.info(
                    "status_callback_child_leg",
                    call_id=event.call_id,
                    parent_call_id=event.parent_call_id,
                )
            else:
                logger.info("status_callback_unknown_call", call_id=event.call_id, status=status.value)
            return

        if event.parent_call_id and record.parent_call_id != event.parent_call_id:
            record = await self._store.track_call(event.call_id, parent_call_id=event.parent_call_id)

        if record.status.is_terminal and previous.status != record.status:
            await self._on_terminal(record)

    async def apply_client_status(self, call_id: str, status: CallStatus) -> CallRecord | None:
        """
        Apply a state the app reported for its own leg.

        Goes through the same terminal handling as provider callbacks, since
        a terminal state locks the record and later callbacks are ignored.
        Returns ``None`` for unknown calls.
        """
        previous = await self._store.get_call(call_id)
        if previous is None:
            return None

        record = await self._store.update_status(call_id, status)
        if record is not None and record.status.is_terminal and previous.status != record.status:
            await self._on_terminal(record)
        return record

    async def apply_dial_result(self, call_id: str, dial_status: str) -> str:
        """
        Instructions after a ``<Dial>`` finished, plus the status update.

        A successful dial (``completed``/``answered``) just hangs up.
        """
        status = CallStatus.parse(dial_status)
        response = VoiceResponse()
        prompt = DIAL_RESULT_PROMPTS.get(status) if status else None
        if prompt:
            response.say(prompt)
        response.hangup()

        if call_id and status in DIAL_RESULT_PROMPTS:
            await self.handle_status_callback(StatusCallback(call_id=call_id, status=status.value))

        logger.info("dial_result", call_id=call_id, dial_status=dial_status)
        return str(response)

    async def _on_terminal(self, record: CallRecord) -> None:
        try:
            await self._db.log_call(record)
        except StoreUnavailableError as e:
            logger.warning("call_log_write_failed", call_id=record.call_id, error=str(e))

        if (
            record.direction == CallDirection.INBOUND
            and record.status in MISSED_CALL_STATUSES
            and record.to_identity
        ):
            await self._dispatcher.notify(
                record.to_identity,
                PushPayload(
                    type="missed_call",
                    call_id=record.call_id,
                    from_address=record.from_address,
                    to_address=record.to_address,
                ),
            )
