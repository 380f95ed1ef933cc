"""
Domain exceptions.

API routes let these propagate; ``api_server`` maps them to the JSON
``{"success": false, "error": ...}`` envelope with the matching status.
"""

from __future__ import annotations

from typing import Optional

# Twilio REST error codes with a message a mobile user can act on
PROVIDER_ERROR_MESSAGES: dict[int, str] = {
    21211: "Invalid phone number format",
    21214: "Phone number is not valid or verified",
    20404: "Twilio configuration issue - check your account",
}


class CallbridgeError(Exception):
    """Base class for all callbridge errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class RequestValidationFailed(CallbridgeError):
    """A required address or identifier is missing or malformed."""

    status_code = 400


class DuplicateCallError(CallbridgeError):
    """The dedup window rejected a repeat (from, to) attempt."""

    status_code = 429

    def __init__(self, from_address: str, to_address: str) -> None:
        super().__init__(
            "A call to this number was just initiated. "
            "Please wait a moment before trying again."
        )
        self.from_address = from_address
        self.to_address = to_address


class ProviderError(CallbridgeError):
    """The telephony provider refused or failed a request."""

    status_code = 500

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code

    @classmethod
    def from_provider(cls, raw_message: str, code: Optional[int] = None) -> ProviderError:
        """Translate a provider error code into a human-readable message."""
        if code is None:
            return cls(raw_message)
        message = PROVIDER_ERROR_MESSAGES.get(
            code, f"Twilio error (code: {code}): {raw_message}"
        )
        return cls(message, code=code)


class StoreUnavailableError(CallbridgeError):
    """The relational store could not be reached or the query failed."""


class PushDeliveryError(CallbridgeError):
    """A push could not be delivered to one device."""


class InvalidPushTokenError(PushDeliveryError):
    """The push service reports the device token as unregistered or invalid."""


class CallNotFoundError(CallbridgeError):
    """Neither the call record store nor the provider knows the call."""

    status_code = 404
