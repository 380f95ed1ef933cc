"""
Data models for call records, status transitions and call API payloads.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

CLIENT_PREFIX = "client:"


class CallStatus(str, Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, raw: str | None) -> Optional[CallStatus]:
        """Map a provider or client status string onto a CallStatus.

        Twilio reports ``queued`` before ``initiated`` and the voice SDK
        reports ``answered`` instead of ``in-progress``.
        """
        if not raw:
            return None
        value = raw.strip().lower().replace("_", "-")
        value = _STATUS_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


_STATUS_ALIASES = {
    "queued": "initiated",
    "answered": "in-progress",
    "inprogress": "in-progress",
    "noanswer": "no-answer",
    "cancelled": "canceled",
}

TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
    CallStatus.REJECTED,
})

# initiated < ringing < in-progress < any terminal state
_STATUS_RANK: dict[CallStatus, int] = {
    CallStatus.INITIATED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    **{status: 3 for status in TERMINAL_STATUSES},
}


def is_valid_transition(current: CallStatus, new: CallStatus) -> bool:
    """True when ``new`` moves the call strictly forward.

    Terminal states never re-open and a terminal state cannot be replaced
    by another terminal state.
    """
    return _STATUS_RANK[new] > _STATUS_RANK[current]


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class CallType(str, Enum):
    """Which connection protocol variant a call leg uses."""

    DIRECT_CLIENT = "direct-client"
    DIRECT_NUMBER = "direct-number"
    GREETING = "greeting"
    DEFAULT_DIAL = "default-dial"


class CallRecord(BaseModel):
    """One outbound or inbound call attempt, keyed by the provider call SID."""

    model_config = ConfigDict(use_enum_values=False)

    call_id: str
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    from_identity: Optional[str] = None
    to_identity: Optional[str] = None
    direction: Optional[CallDirection] = None
    status: CallStatus = CallStatus.INITIATED
    start_time: Optional[float] = None
    answered_at: Optional[float] = None
    duration: int = 0
    call_type: Optional[CallType] = None
    dialed: bool = False
    call_unique_id: Optional[str] = None
    parent_call_id: Optional[str] = None
    updated_at: Optional[float] = None

    def involves(self, identity: str) -> bool:
        """Whether ``identity`` is either party of this call."""
        candidates = {
            self.from_identity,
            self.to_identity,
            self.from_address,
            self.to_address,
        }
        return identity in candidates or f"{CLIENT_PREFIX}{identity}" in candidates


# -- API payloads --


class MakeCallRequest(BaseModel):
    """Body of POST /call/make and /call/make-direct."""

    model_config = ConfigDict(populate_by_name=True)

    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    from_identity: Optional[str] = Field(default=None, alias="fromIdentity")


class EndCallRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    call_sid: Optional[str] = Field(default=None, alias="callSid")


class CallEventRequest(BaseModel):
    """Client-reported state transition, e.g. the callee's app ringing."""

    model_config = ConfigDict(populate_by_name=True)

    identity: Optional[str] = None
    call_sid: Optional[str] = Field(default=None, alias="callSid")
    event: Optional[str] = None


class RegisterPushRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity: Optional[str] = None
    platform: Optional[str] = None
    device_token: Optional[str] = Field(default=None, alias="deviceToken")


class StatusCallback(BaseModel):
    """Fields of a provider status callback that the core consumes."""

    call_id: str = ""
    status: str = ""
    parent_call_id: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    direction: Optional[str] = None

    @classmethod
    def from_form(cls, form: dict[str, Any]) -> StatusCallback:
        return cls(
            call_id=str(form.get("CallSid") or ""),
            status=str(form.get("CallStatus") or form.get("DialCallStatus") or ""),
            parent_call_id=form.get("ParentCallSid") or None,
            from_address=form.get("From") or None,
            to_address=form.get("To") or None,
            direction=form.get("Direction") or None,
        )
