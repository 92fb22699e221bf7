"""HTTP views for the orders app.

Views are kept small: they validate requests with pydantic, delegate to
the completion handlers or the compensating actions obtained from
``providers``, and map domain errors to JSON responses
(``{"detail": code, "message": ...}``). Upstream failures (transport
errors, open circuits) become 503 ``UPSTREAM_UNAVAILABLE``.

Checkout idempotency: when an ``Idempotency-Key`` header is provided, the
first request stores its final response; retries with the same payload
replay it (``Idempotent-Replay: true``) and reuse of the key with a
different payload returns 409.
"""

import logging

import httpx
from django.conf import settings
from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .callbacks import FulfillmentCallbackProcessor
from .exceptions import CircuitOpenError, IdempotencyConflictError, OrderError
from .idempotency import finalize, get_or_create_idempotent
from .models import OrderModel
from .providers import get_compensating_actions, get_direct_handler, get_ports, get_webhook_handler
from .repository import OrderRepository
from .schemas import (
    AddressUpdateDTO,
    CancelOrderDTO,
    CompletePaymentDTO,
    MetadataPatchDTO,
    OrderReadDTO,
    ShippingUpdateDTO,
)
from .signatures import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

UPSTREAM_ERRORS = (httpx.HTTPError, CircuitOpenError)


def _validation_error(exc: ValidationError) -> Response:
    errors = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    return Response({"detail": "VALIDATION_ERROR", "errors": errors}, status=status.HTTP_400_BAD_REQUEST)


def _upstream_unavailable(exc: Exception) -> Response:
    logger.warning("upstream unavailable", extra={"error": str(exc)})
    return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)


def _order_body(order, detail: bool = False) -> dict:
    return OrderReadDTO.from_model(order, detail=detail).model_dump(mode="json", exclude_none=True)


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    def get(self, request):
        return Response({"ok": True})


class CompletePaymentView(APIView):
    """Checkout: create the order, charge it and complete it synchronously.

    The charge uses the deterministic idempotency key ``charge-<orderId>``
    and the order id as ``reference_id``, so the webhook for the same payment
    resolves the order directly.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        """Handle a checkout.

        Returns:
            Response: One of the following responses.
            - 201 with the order, payment and fulfillment outcome.
            - 200 replay of a stored response for a repeated Idempotency-Key.
            - 400 for validation errors.
            - 402 with {detail: "PAYMENT_FAILED"} when the charge is declined.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} on key reuse.
            - 422 for an invalid discount code.
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when the gateway is down.
        """
        idem_key = request.headers.get("Idempotency-Key")
        try:
            dto = CompletePaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return _validation_error(e)

        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except IdempotencyConflictError as e:
                return Response(e.as_body(), status=e.status_code)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        body, status_code, order_id = self._checkout(dto)
        if rec:
            finalize(rec, status_code, body, order_id=order_id)
        return Response(body, status=status_code)

    def _checkout(self, dto: CompletePaymentDTO):
        repository = OrderRepository()
        try:
            order = repository.create_from_checkout(dto, currency=getattr(settings, "ORDER_CURRENCY", "USD"))
        except OrderError as e:
            return e.as_body(), e.status_code, None

        gateway, _, _ = get_ports()
        try:
            charge = gateway.create_charge(
                order.total_cents,
                order.currency,
                dto.source_token,
                idempotency_key=f"charge-{order.pk}",
                reference_id=str(order.pk),
            )
        except UPSTREAM_ERRORS as e:
            logger.warning("charge failed upstream", extra={"order_id": order.pk, "error": str(e)})
            return {"detail": "UPSTREAM_UNAVAILABLE", "order_id": order.pk}, 503, order.pk

        result = get_direct_handler().handle(order.pk, charge) if charge.id else None
        if not charge.succeeded:
            logger.info("charge declined", extra={"order_id": order.pk, "payment_status": charge.status})
            body = {"detail": "PAYMENT_FAILED", "order_id": order.pk, "payment_status": charge.status}
            return body, status.HTTP_402_PAYMENT_REQUIRED, order.pk

        order_status = OrderModel.objects.values_list("status", flat=True).get(pk=order.pk)
        body = {
            "order_id": order.pk,
            "status": order_status,
            "total_cents": order.total_cents,
            "currency": order.currency,
            "payment_id": charge.id,
            "payment_status": charge.status,
            "fulfillment": result.as_dict(),
        }
        return body, status.HTTP_201_CREATED, order.pk


class PaymentWebhookView(APIView):
    """Payment gateway notifications (payments and refunds).

    2xx tells the gateway the event is handled; 503 asks it to redeliver.
    """

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        handler = get_webhook_handler()
        try:
            body = handler.handle(request.body, request.META.get(SIGNATURE_HEADER))
        except OrderError as e:
            logger.warning("webhook rejected", extra={"detail": e.code})
            return Response(e.as_body(), status=e.status_code)
        except ValueError as e:
            return Response({"detail": "INVALID_PAYLOAD", "message": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        except UPSTREAM_ERRORS as e:
            return _upstream_unavailable(e)
        return Response(body, status=status.HTTP_200_OK)


class FulfillmentCallbackView(APIView):
    """Print partner status callbacks."""

    authentication_classes = []
    permission_classes = []

    def post(self, request):
        processor = FulfillmentCallbackProcessor(OrderRepository())
        try:
            body = processor.handle(request.data)
        except ValueError as e:
            return Response({"detail": "INVALID_CALLBACK", "message": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(body, status=status.HTTP_200_OK)


class OrdersCollectionView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        try:
            page = int(request.GET.get("page", 1))
            page_size = min(max(int(request.GET.get("page_size", 20)), 1), 100)
        except ValueError:
            return Response({"detail": "INVALID_PAGINATION"}, status=status.HTTP_400_BAD_REQUEST)

        qs = OrderModel.objects.order_by("-created_at", "-id")
        if request.GET.get("status"):
            qs = qs.filter(status=request.GET["status"].upper())
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [_order_body(o) for o in page_obj.object_list],
            },
            status=200,
        )


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, order_id: int):
        try:
            order = OrderRepository().get(order_id)
        except OrderError as e:
            return Response(e.as_body(), status=e.status_code)
        return Response(_order_body(order, detail=True), status=200)


class OrderActionView(APIView):
    """Base for compensating-action endpoints.

    Subclasses implement ``perform`` and return the response body.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "order_actions"
    dto_class = None
    success_status = status.HTTP_200_OK

    def perform(self, actions, order_id, dto):
        raise NotImplementedError()

    def _run(self, request, order_id):
        dto = None
        if self.dto_class is not None:
            try:
                dto = self.dto_class.model_validate(request.data or {})
            except ValidationError as e:
                return _validation_error(e)
        actions = get_compensating_actions()
        try:
            body = self.perform(actions, order_id, dto)
        except OrderError as e:
            logger.info("order action refused", extra={"order_id": order_id, "detail": e.code, "action": type(self).__name__})
            return Response(e.as_body(), status=e.status_code)
        except UPSTREAM_ERRORS as e:
            return _upstream_unavailable(e)
        return Response(body, status=self.success_status)

    def post(self, request, order_id: int):
        return self._run(request, order_id)


class OrderActionsView(OrderActionView):
    """Partner action availability, cached on the order."""

    def get(self, request, order_id: int):
        return self._run(request, order_id)

    def post(self, request, order_id: int):
        return Response({"detail": "METHOD_NOT_ALLOWED"}, status=status.HTTP_405_METHOD_NOT_ALLOWED)

    def perform(self, actions, order_id, dto):
        return actions.available_actions(order_id).as_payload()


class CancelOrderView(OrderActionView):
    dto_class = CancelOrderDTO

    def perform(self, actions, order_id, dto):
        return _order_body(actions.cancel_with_refund(order_id, reason=dto.reason), detail=True)


class UpdateAddressView(OrderActionView):
    dto_class = AddressUpdateDTO

    def perform(self, actions, order_id, dto):
        actions.update_address(order_id, dto.model_dump(exclude_none=True))
        return _order_body(OrderRepository().get(order_id), detail=True)


class UpdateShippingView(OrderActionView):
    dto_class = ShippingUpdateDTO

    def perform(self, actions, order_id, dto):
        order = actions.downgrade_shipping(order_id, dto.shipping_method.value)
        return _order_body(order, detail=True)


class PatchMetadataView(OrderActionView):
    dto_class = MetadataPatchDTO

    def perform(self, actions, order_id, dto):
        return _order_body(actions.patch_metadata(order_id, dto.metadata), detail=True)

    def patch(self, request, order_id: int):
        return self._run(request, order_id)


class RetryFulfillmentView(OrderActionView):
    def perform(self, actions, order_id, dto):
        return actions.retry_fulfillment(order_id).as_dict()
