"""Gateway middleware: request correlation, access logging and body limits.

``RequestIdMiddleware`` gives every request an identifier, read from the
incoming ``X-Request-Id`` header or generated as a UUIDv4, and exposes it
through ``REQUEST_ID_CTX`` so log records and outgoing HTTP calls (the cart
client) can carry it without passing it around. The buyer id from
``X-User-Id`` is exposed the same way through ``USER_ID_CTX``. Each request
produces one structured "request handled" log line.

``ApiSizeLimitMiddleware`` rejects API bodies larger than
``API_MAX_BYTES`` with 413 before they are parsed.
"""

import contextvars
import logging
import os
import time
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
USER_ID_CTX = contextvars.ContextVar("user_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(64 * 1024)))

logger = logging.getLogger("gateway")


class RequestIdMiddleware(MiddlewareMixin):
    """Sets and returns a per-request identifier.

    Attributes:
        HEADER (str): Incoming header in ``request.META`` casing.
        RESPONSE_HEADER (str): Header added to every response.
    """

    HEADER = "HTTP_X_REQUEST_ID"
    USER_HEADER = "HTTP_X_USER_ID"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._ctx_tokens = (
            REQUEST_ID_CTX.set(rid),
            USER_ID_CTX.set(request.META.get(self.USER_HEADER) or "-"),
        )
        request._started = time.monotonic()

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        started = getattr(request, "_started", None)
        logger.info(
            "request handled",
            extra={
                "path": request.path,
                "method": request.method,
                "status": response.status_code,
                "duration_ms": round((time.monotonic() - started) * 1000, 1) if started else None,
            },
        )
        tokens = getattr(request, "_ctx_tokens", None)
        if tokens:
            REQUEST_ID_CTX.reset(tokens[0])
            USER_ID_CTX.reset(tokens[1])
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
