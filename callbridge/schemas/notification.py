"""
Data models for device tokens and push payloads.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class DeviceToken(BaseModel):
    owner_identity: str
    platform: Platform
    token: str


class PushPayload(BaseModel):
    """Data-only push. The mobile app renders the alert itself."""

    type: str
    call_id: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    extra: dict[str, Any] = {}

    def as_data(self) -> dict[str, str]:
        """Flatten to the string-only map FCM data messages require."""
        data = {"type": self.type}
        if self.call_id:
            data["callSid"] = self.call_id
        if self.from_address:
            data["from"] = self.from_address
        if self.to_address:
            data["to"] = self.to_address
        for key, value in self.extra.items():
            data[key] = str(value)
        return data
