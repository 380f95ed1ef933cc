"""
API Router: Twilio Webhooks.

Endpoints Twilio calls during a call's life: connection instruction
requests (TwiML), status callbacks, dial results and caller input.

Twilio treats any non-2xx answer as an application error and plays a
generic failure message, so every handler here answers 200. Failures
become a spoken error document (TwiML) or a logged, acknowledged
callback.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse

from callbridge.api.deps import Services, get_services
from callbridge.api.middleware import TWILIO_SIGNATURE_HEADER
from callbridge.logging_config import call_id_var, get_logger
from callbridge.schemas.call import StatusCallback
from callbridge.services.connection import ConnectionProtocolHandler, spoken_error

logger = get_logger(__name__)
router = APIRouter(tags=["Webhooks"])

TWIML_MEDIA_TYPE = "text/xml"


def _twiml(document: str) -> Response:
    return Response(content=document, media_type=TWIML_MEDIA_TYPE)


async def webhook_params(request: Request, services: Services = Depends(get_services)) -> dict[str, Any]:
    """
    Form fields of a webhook, with query parameters merged in.

    Rejects the request with 403 when signature checks are enabled and
    the ``X-Twilio-Signature`` header does not match.
    """
    form = await request.form()
    form_params = {key: value for key, value in form.items()}

    if services.settings.validate_twilio_signature:
        url = services.settings.callback_url(request.url.path)
        if request.url.query:
            url = f"{url}?{request.url.query}"
        signature = request.headers.get(TWILIO_SIGNATURE_HEADER)
        if not services.provider.validate_signature(url, form_params, signature):
            logger.warning("webhook_signature_invalid", path=request.url.path)
            raise HTTPException(status_code=403, detail="Invalid Twilio signature")

    params: dict[str, Any] = dict(request.query_params)
    params.update(form_params)
    call_id_var.set(str(params.get("CallSid") or ""))
    return params


@router.api_route("/twiml", methods=["GET", "POST"])
async def twiml(
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> Response:
    """Connection instructions for an outgoing leg (voice SDK or /call/make)."""
    try:
        return _twiml(await services.calls.connect_call_leg(params))
    except Exception as e:
        logger.error("twiml_error", call_id=params.get("CallSid"), error=str(e))
        return _twiml(spoken_error())


@router.api_route("/twiml-direct-client", methods=["GET", "POST"])
async def twiml_direct_client(
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> Response:
    try:
        document = await services.calls.direct_call_leg(
            str(params.get("CallSid") or ""),
            client_id=str(params.get("clientId") or ""),
        )
        return _twiml(document)
    except Exception as e:
        logger.error("twiml_direct_client_error", call_id=params.get("CallSid"), error=str(e))
        return _twiml(spoken_error())


@router.api_route("/twiml-direct-number", methods=["GET", "POST"])
async def twiml_direct_number(
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> Response:
    # ``To`` is the caller's own leg here; the destination travels as ``to``
    try:
        document = await services.calls.direct_call_leg(
            str(params.get("CallSid") or ""),
            number=str(params.get("to") or ""),
        )
        return _twiml(document)
    except Exception as e:
        logger.error("twiml_direct_number_error", call_id=params.get("CallSid"), error=str(e))
        return _twiml(spoken_error())


@router.post("/call/incoming")
async def incoming_call(
    background_tasks: BackgroundTasks,
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> Response:
    """Inbound call on a provider number: ring the owner's app and push an alert."""
    try:
        document, decision = await services.calls.incoming_call(params)
    except Exception as e:
        logger.error("incoming_call_error", call_id=params.get("CallSid"), error=str(e))
        return _twiml(spoken_error())

    if decision.is_client:
        background_tasks.add_task(
            services.calls.notify_incoming_call,
            str(params.get("CallSid")),
            decision.target,
            params.get("From"),
            params.get("To"),
        )
    return _twiml(document)


@router.post("/call-status")
async def call_status(
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> PlainTextResponse:
    """Status callback. Always acknowledged, known call or not."""
    await services.handler.handle_status_callback(StatusCallback.from_form(params))
    return PlainTextResponse("OK")


@router.post("/call-action-result")
async def call_action_result(
    params: dict[str, Any] = Depends(webhook_params),
    services: Services = Depends(get_services),
) -> Response:
    """Outcome of a ``<Dial>``: explain unsuccessful results, then hang up."""
    try:
        document = await services.handler.apply_dial_result(
            str(params.get("CallSid") or ""),
            str(params.get("DialCallStatus") or ""),
        )
        return _twiml(document)
    except Exception as e:
        logger.error("call_action_result_error", call_id=params.get("CallSid"), error=str(e))
        return _twiml(spoken_error())


@router.post("/call-action")
async def call_action(params: dict[str, Any] = Depends(webhook_params)) -> Response:
    return _twiml(ConnectionProtocolHandler.input_received(params.get("Digits")))


async def acknowledge_unrouted_callback(request: Request) -> Response | None:
    """
    ``200 OK`` for a Twilio request that hit no route, else ``None``.

    A misconfigured callback URL would otherwise 404 and make Twilio retry
    or play its application-error message.
    """
    params: dict[str, Any] = dict(request.query_params)
    if request.headers.get("content-type", "").startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        params.update(form.items())

    if not (params.get("CallSid") or params.get("AccountSid")):
        return None

    logger.warning(
        "unrouted_provider_callback",
        path=request.url.path,
        method=request.method,
        call_id=params.get("CallSid"),
    )
    return PlainTextResponse("OK")
