"""
Data models for destination resolution.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from callbridge.schemas.call import CallDirection


class ResolutionSource(str, Enum):
    """Which resolver rule produced the destination."""

    LITERAL_CLIENT = "literal_client"
    IDENTITY_HINT = "identity_hint"
    NUMBER_MAPPING = "number_mapping"
    EMAIL_LOOKUP = "email_lookup"
    USER_ID_LOOKUP = "user_id_lookup"
    FALLBACK = "fallback"
    PSTN = "pstn"


@dataclass
class RoutingRequest:
    """
    Input of ``RoutingResolver.resolve_destination``.

    ``to_address`` is either ``client:<identity>`` or a bare phone number.
    ``dialed_number`` is the provider-owned number that received an
    inbound call.
    """
    to_address: str
    direction: CallDirection = CallDirection.OUTBOUND
    from_address: Optional[str] = None
    identity_hint: Optional[str] = None
    dialed_number: Optional[str] = None


@dataclass(frozen=True)
class RoutingDecision:
    target: str
    is_client: bool
    play_greeting: bool
    source: ResolutionSource
    degraded: bool = False
