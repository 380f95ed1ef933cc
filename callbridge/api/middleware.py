"""
API Middleware.

Request ID injection and structured audit logging for every incoming
request. Provider webhooks are tagged with their call SID so every log
line of the request carries it.
"""

from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from callbridge.logging_config import call_id_var, generate_trace_id, get_logger, trace_id_var

logger = get_logger(__name__)

TWILIO_SIGNATURE_HEADER = "X-Twilio-Signature"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Inject a unique request ID into every request and response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", generate_trace_id())
        trace_id_var.set(request_id)
        call_id_var.set(request.query_params.get("CallSid", ""))

        start = time.monotonic()

        response = await call_next(request)

        elapsed_ms = round((time.monotonic() - start) * 1000, 1)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)

        logger.info(
            "api_request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            elapsed_ms=elapsed_ms,
            request_id=request_id,
            provider_webhook=TWILIO_SIGNATURE_HEADER in request.headers,
        )

        return response
