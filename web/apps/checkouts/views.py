"""HTTP views for the checkouts app.

Views are kept intentionally small: they validate requests (via Pydantic),
delegate to the domain services obtained from ``providers`` and map domain
errors to HTTP responses.

The buyer is identified by the ``X-User-Id`` header set by the upstream
authentication gateway.

Idempotency: when an ``Idempotency-Key`` header is provided, the create
endpoint stores the outcome of the first request and replays it for
retries with the same payload (``Idempotent-Replay: true``). Reusing a key
with a different payload returns 409. Retryable failures (lock contention,
cart service unavailable) release the key so the client can retry it.

The payment callback endpoint only validates and enqueues the webhook; the
queue worker reconciles it later.
"""
import logging

import httpx
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import callback_queue, idempotency, providers
from .domain import CheckoutConflict, CheckoutError, PaymentCallback
from .http_adapters import CircuitOpen
from .models import CheckoutModel
from .repository import to_domain
from .schemas import CheckoutReadDTO, CreateCheckoutDTO, PaymentCallbackDTO

logger = logging.getLogger("checkouts")

ERROR_STATUS = {
    "EMPTY_CART": status.HTTP_400_BAD_REQUEST,
    "BOOK_UNAVAILABLE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PRICE_CHANGED": status.HTTP_409_CONFLICT,
}


def _user_id(request):
    raw = request.headers.get("X-User-Id", "")
    if not (raw.isascii() and raw.isdigit()):
        return None
    user_id = int(raw)
    return user_id if user_id > 0 else None


def _unauthenticated():
    return Response({"detail": "UNAUTHENTICATED"}, status=status.HTTP_401_UNAUTHORIZED)


def _retry_later(body: dict) -> Response:
    resp = Response(body, status=status.HTTP_503_SERVICE_UNAVAILABLE)
    resp["Retry-After"] = "1"
    return resp


class CheckoutsCollectionView(APIView):
    """List the buyer's checkouts or create one from the buyer's cart."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        self.throttle_scope = "checkouts_list" if self.request.method == "GET" else "checkouts_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()

        qs = CheckoutModel.objects.filter(user_id=user_id).prefetch_related("items__book").order_by("-created_at", "-id")
        try:
            page = max(1, int(request.GET.get("page", 1)))
            page_size = min(100, max(1, int(request.GET.get("page_size", 10))))
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)

        results = [
            CheckoutReadDTO.from_domain(to_domain(o)).model_dump(mode="json", exclude_none=True)
            for o in page_obj.object_list
        ]
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "total_pages": p.num_pages,
                "results": results,
            },
            status=200,
        )

    def post(self, request):
        """Create a checkout.

        Returns:
            Response: One of the following responses.
            - 201 with the checkout when it is created.
            - replay of the stored response for a retried idempotency key.
            - 400 for validation errors or ``EMPTY_CART``.
            - 401 without a valid ``X-User-Id``.
            - 409 for ``PRICE_CHANGED`` or ``IDEMPOTENCY_CONFLICT``.
            - 422 for ``BOOK_UNAVAILABLE`` or ``INSUFFICIENT_STOCK`` (with
              the available quantity).
            - 503 with ``Retry-After`` for ``CHECKOUT_CONFLICT`` or
              ``UPSTREAM_UNAVAILABLE``.
        """
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()

        try:
            dto = CreateCheckoutDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        idem_key = request.headers.get("Idempotency-Key")
        claimed = None
        if idem_key:
            try:
                claimed = idempotency.claim(idem_key, {"user_id": user_id, **dto.model_dump(mode="json")})
            except idempotency.IdempotencyConflict:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if claimed.in_flight:
                return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
            if claimed.replay:
                resp = Response(claimed.record.response_body, status=claimed.record.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        service = providers.get_checkout_service()
        try:
            checkout = service.create_checkout(user_id, dto.payment_method)
        except CheckoutConflict as e:
            logger.warning("checkout conflict", extra={"user_id": user_id, "reason": e.reason})
            if claimed:
                idempotency.forget(claimed.record)
            return _retry_later(e.as_dict())
        except CheckoutError as e:
            body = e.as_dict()
            status_code = ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST)
            if claimed:
                idempotency.remember(claimed.record, status_code, body)
            return Response(body, status=status_code)
        except (httpx.HTTPError, CircuitOpen):
            logger.warning("cart service unavailable", extra={"user_id": user_id}, exc_info=True)
            if claimed:
                idempotency.forget(claimed.record)
            return _retry_later({"detail": "UPSTREAM_UNAVAILABLE"})
        except Exception:
            # Unexpected failure: the key must not stay in flight
            if claimed:
                idempotency.forget(claimed.record)
            raise

        body = CheckoutReadDTO.from_domain(checkout).model_dump(mode="json", exclude_none=True)
        if claimed:
            idempotency.remember(claimed.record, status.HTTP_201_CREATED, body, checkout_id=checkout.id)
        return Response(body, status=status.HTTP_201_CREATED)


class CheckoutDetailView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkouts_detail"

    def get(self, request, reference: str):
        user_id = _user_id(request)
        if user_id is None:
            return _unauthenticated()
        o = (
            CheckoutModel.objects.filter(reference_number=reference, user_id=user_id)
            .prefetch_related("items__book")
            .first()
        )
        if o is None:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        dto = CheckoutReadDTO.from_domain(to_domain(o))
        return Response(dto.model_dump(mode="json", exclude_none=True), status=200)


class PaymentCallbackView(APIView):
    """Webhook receiver for the payment gateway.

    Validates the body and enqueues it; returns 202 as soon as the callback
    is durably stored. Settlement happens asynchronously in the worker.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "payment_callback"

    def post(self, request):
        try:
            dto = PaymentCallbackDTO.model_validate(request.data)
        except ValidationError as e:
            return Response({"detail": str(e)}, status=status.HTTP_400_BAD_REQUEST)

        callback_queue.enqueue(
            PaymentCallback(
                checkout_reference_number=dto.checkout_reference_number,
                status=dto.status,
                payment_reference_number=dto.payment_reference_number,
            )
        )
        return Response(
            {"checkoutReferenceNumber": dto.checkout_reference_number, "status": "queued"},
            status=status.HTTP_202_ACCEPTED,
        )
