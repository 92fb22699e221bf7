"""Gateway middleware: request correlation, access logging, body size limit.

``RequestIdMiddleware`` gives every request an identifier, reusing a sane
client-supplied ``X-Request-Id`` (the payment gateway and the print partner
send their own on callbacks) or generating a UUIDv4. The id is kept on the
request and in ``REQUEST_ID_CTX`` so log records and outgoing HTTP calls can
carry it, and it is echoed in the ``X-Request-ID`` response header. Each
finished request is logged with its method, path, status and duration.
"""

import contextvars
import logging
import os
import re
import time
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger("gateway.access")

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))
REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


class RequestIdMiddleware(MiddlewareMixin):
    """Set and return a per-request identifier.

    Attributes:
        HEADER (str): Incoming header in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to outgoing responses.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER, "")
        if not REQUEST_ID_RE.match(rid):
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._started_at = time.monotonic()
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started_at", None)
        if started is not None:
            logger.info(
                "request",
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject API bodies larger than ``API_MAX_BYTES`` before parsing."""

    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse(
                    {"detail": "PAYLOAD_TOO_LARGE", "message": f"Body exceeds {MAX_API_BYTES} bytes"},
                    status=413,
                )
