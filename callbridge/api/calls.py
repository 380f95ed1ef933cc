"""
API Router: Call Management Endpoints.

JSON endpoints used by the mobile app: placing, ending and inspecting
calls, client-reported call events, voice access tokens and push token
registration.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query

from callbridge.api.deps import Services, get_services
from callbridge.errors import CallbridgeError
from callbridge.logging_config import call_id_var, get_logger
from callbridge.schemas.call import (
    CallEventRequest,
    EndCallRequest,
    MakeCallRequest,
    RegisterPushRequest,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Calls"])


async def _make_call(body: MakeCallRequest, services: Services, direct: bool) -> dict[str, Any]:
    try:
        call_sid = await services.calls.make_call(body, direct=direct)
    except CallbridgeError:
        raise
    except Exception as e:
        logger.error("make_call_error", to=body.to, direct=direct, error=str(e))
        raise CallbridgeError(str(e))

    call_id_var.set(call_sid)
    return {"success": True, "callSid": call_sid}


@router.post("/call/make")
async def make_call(body: MakeCallRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Place an outbound call through the standard connection flow."""
    return await _make_call(body, services, direct=False)


@router.post("/call/make-direct")
async def make_direct_call(body: MakeCallRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Place an outbound call that connects without prompts or dial callbacks."""
    return await _make_call(body, services, direct=True)


@router.post("/call/end")
async def end_call(body: EndCallRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    record = await services.calls.end_call(body.call_sid)
    return {
        "success": True,
        "callSid": body.call_sid,
        "call": record.model_dump(mode="json") if record else None,
    }


@router.get("/call/info/{call_id}")
async def get_call_info(call_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Local call record merged with the provider's view."""
    info = await services.calls.get_call_info(call_id)
    return {"success": True, **info}


@router.get("/call/active/{identity}")
async def get_active_calls(identity: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    calls = await services.calls.list_active_calls(identity)
    return {"success": True, "identity": identity, "calls": calls}


@router.post("/call/event")
async def record_call_event(body: CallEventRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    """The app reports its own leg ringing, being answered or being rejected."""
    record = await services.calls.record_client_event(body)
    return {"success": True, "call": await services.calls.describe(record)}


@router.get("/token")
async def get_access_token(
    identity: Optional[str] = Query(default=None),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    token = services.calls.access_token(identity)
    return {"success": True, "identity": identity, "token": token}


@router.post("/register-push-notification")
async def register_push_notification(
    body: RegisterPushRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    platform = await services.calls.register_push(body)
    return {"success": True, "identity": body.identity, "platform": platform.value}
