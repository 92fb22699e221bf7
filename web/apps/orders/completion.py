"""Order completion: one pipeline, two entry points.

The checkout response (``DirectCompletionHandler``) and the payment
gateway webhook (``WebhookCompletionHandler``) both reduce their input to a
``PaymentConfirmed`` event and hand it to ``CompletionPipeline.run``:

    mark paid -> record discount usage -> try_claim -> prepare assets -> submit

Only the caller that wins ``try_claim`` does the work after it. Fulfillment
failures never propagate out of the pipeline: they are recorded on the order
(ProcessingError row + metadata breadcrumb), the claim is released and the
result carries ``FAILED`` so the caller can still answer its own client.
"""

import json
import logging

from pydantic import ValidationError

from .assets import AssetPreparationService
from .claims import release_claim, try_claim
from .dedup import WebhookEventDedup
from .domain import (
    ChargeResult,
    CompletionOutcome,
    CompletionResult,
    OrderStatus,
    PaymentConfirmed,
    PaymentGatewayPort,
)
from .fulfillment import FulfillmentSubmitter
from .models import OrderModel
from .repository import OrderRepository
from .schemas import GuestOrderData
from .signatures import verify_signature

logger = logging.getLogger(__name__)


class CompletionPipeline:
    """Shared completion sequence for both payment triggers."""

    def __init__(self, repository: OrderRepository, assets: AssetPreparationService,
                 submitter: FulfillmentSubmitter):
        self.repository = repository
        self.assets = assets
        self.submitter = submitter

    def run(self, event: PaymentConfirmed) -> CompletionResult:
        """Apply a payment confirmation and fulfill the order if it is ours to do.

        Args:
            event: Normalized confirmation from either trigger.

        Returns:
            CompletionResult: Outcome of this invocation. ``ALREADY_*`` and
            ``PAYMENT_NOT_COMPLETED`` are normal outcomes, not errors.
        """
        order = self.repository.mark_paid(event)
        if order.status == OrderStatus.CANCELED.value:
            logger.info("payment confirmation for canceled order", extra={"order_id": order.pk, "source": event.source})
            return CompletionResult(order.pk, CompletionOutcome.ORDER_CANCELED)
        if not event.succeeded:
            logger.info(
                "payment not completed",
                extra={"order_id": order.pk, "payment_status": event.payment_status, "source": event.source},
            )
            return CompletionResult(order.pk, CompletionOutcome.PAYMENT_NOT_COMPLETED)

        if self.repository.record_discount_usage(order):
            logger.info("discount usage recorded", extra={"order_id": order.pk, "discount_code_id": order.discount_code_id})
        return self.fulfill(order.pk)

    def fulfill(self, order_id) -> CompletionResult:
        """Claim the order and, when claimed, prepare assets and submit it."""
        claim = try_claim(order_id)
        if not claim.claimed:
            logger.info("completion skipped", extra={"order_id": order_id, "outcome": claim.outcome.value})
            return CompletionResult(
                order_id, CompletionOutcome(claim.outcome.value), fulfillment_order_id=claim.fulfillment_order_id
            )

        token = claim.claim.token
        try:
            order = self.repository.get(order_id)
            if order.status == OrderStatus.CANCELED.value:
                release_claim(order_id, token)
                return CompletionResult(order_id, CompletionOutcome.ORDER_CANCELED)
            assets = self.assets.prepare_order(order, self.repository)
            fulfillment_order_id = self.submitter.submit(order, assets)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.exception("fulfillment failed", extra={"order_id": order_id})
            self.repository.record_failure(order_id, message, claim_token=token)
            return CompletionResult(order_id, CompletionOutcome.FAILED, error=message)

        return CompletionResult(order_id, CompletionOutcome.FULFILLED, fulfillment_order_id=fulfillment_order_id)


class DirectCompletionHandler:
    """Completion right after the checkout's charge call returns."""

    def __init__(self, pipeline: CompletionPipeline):
        self.pipeline = pipeline

    def handle(self, order_id, charge: ChargeResult) -> CompletionResult:
        if not charge.id:
            raise ValueError("Charge result has no payment id")
        event = PaymentConfirmed(
            order_id=order_id,
            payment_id=charge.id,
            payment_status=charge.status,
            gateway_order_id=charge.gateway_order_id,
            source="direct",
        )
        return self.pipeline.run(event)


class WebhookCompletionHandler:
    """Payment gateway webhook: verify, dedup, resolve the order, complete.

    Deliveries are acknowledged once the event id is recorded, including when
    fulfillment then fails. The exception is a failure before the pipeline
    ran (the gateway lookup or the database): the event id is forgotten and
    the error propagates so the gateway redelivers.
    """

    PAYMENT_EVENTS = ("payment.created", "payment.updated")
    REFUND_EVENTS = ("refund.created", "refund.updated")

    def __init__(self, pipeline: CompletionPipeline, gateway: PaymentGatewayPort,
                 repository: OrderRepository, dedup: WebhookEventDedup, currency: str = "USD"):
        self.pipeline = pipeline
        self.gateway = gateway
        self.repository = repository
        self.dedup = dedup
        self.currency = currency

    def handle(self, raw_body: bytes, signature: str | None) -> dict:
        """Process one signed webhook delivery.

        Returns:
            dict: Acknowledgement body (``status`` plus event details).

        Raises:
            WebhookSignatureError: On a missing or invalid signature.
            ValueError: If the body is not a JSON object.
        """
        verify_signature(raw_body, signature)
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValueError("Webhook body is not valid JSON")
        if not isinstance(payload, dict):
            raise ValueError("Webhook body must be a JSON object")

        event_id = str(payload.get("event_id") or payload.get("id") or "")
        event_type = payload.get("type") or ""
        entity = self._event_entity(payload, event_type)
        if not self.dedup.first_seen(event_id):
            logger.info("duplicate webhook event", extra={"event_id": event_id, "event_type": event_type})
            return {"status": "duplicate", "event_id": event_id}

        if event_type in self.PAYMENT_EVENTS:
            return self._handle_payment(event_id, entity)
        if event_type in self.REFUND_EVENTS:
            return self._handle_refund(event_id, entity)
        logger.info("webhook event ignored", extra={"event_id": event_id, "event_type": event_type})
        return {"status": "ignored", "event_id": event_id}

    def _event_entity(self, payload: dict, event_type: str) -> dict:
        """Return ``data.object.payment`` or ``data.object.refund`` for the event type.

        Raises:
            ValueError: If any level of that path is present but not an object.
        """
        data = payload.get("data") or {}
        obj = (data.get("object") or {}) if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise ValueError("Webhook data.object must be a JSON object")
        if event_type in self.PAYMENT_EVENTS:
            entity = obj.get("payment") or {}
        elif event_type in self.REFUND_EVENTS:
            entity = obj.get("refund") or {}
        else:
            entity = {}
        if not isinstance(entity, dict):
            raise ValueError(f"Webhook {event_type} object must be a JSON object")
        return entity

    def _handle_payment(self, event_id: str, payment: dict) -> dict:
        try:
            order_id = self._resolve_order_id(payment)
            if order_id is None:
                logger.warning(
                    "webhook payment without resolvable order",
                    extra={"event_id": event_id, "payment_id": payment.get("id")},
                )
                return {"status": "ignored", "event_id": event_id}
            event = PaymentConfirmed(
                order_id=order_id,
                payment_id=payment.get("id") or "",
                payment_status=payment.get("status") or "",
                gateway_order_id=payment.get("order_id"),
                source="webhook",
            )
            result = self.pipeline.run(event)
        except Exception:
            self.dedup.forget(event_id)
            raise
        return {"status": "processed", "event_id": event_id, **result.as_dict()}

    def _handle_refund(self, event_id: str, refund: dict) -> dict:
        refund_id = refund.get("id")
        status = refund.get("status")
        updated = bool(refund_id and status) and self.repository.update_refund_status(refund_id, status)
        logger.info("refund status update", extra={"event_id": event_id, "refund_id": refund_id, "status": status, "matched": updated})
        return {"status": "processed" if updated else "ignored", "event_id": event_id}

    def _resolve_order_id(self, payment: dict):
        """Find the local order a payment belongs to.

        Order: ``reference_id`` stamped at checkout, then an order already
        linked to the gateway order id, then the gateway order's metadata
        (``orderId``, or guest ``orderData`` for just-in-time creation).
        """
        reference_id = str(payment.get("reference_id") or "")
        if reference_id.isdigit() and OrderModel.objects.filter(pk=int(reference_id)).exists():
            return int(reference_id)

        gateway_order_id = payment.get("order_id")
        if not gateway_order_id:
            return None
        linked = OrderModel.objects.filter(gateway_order_id=gateway_order_id).values_list("pk", flat=True).first()
        if linked is not None:
            return linked

        metadata = self.gateway.get_order(gateway_order_id) or {}
        local_id = str(metadata.get("orderId") or "")
        if local_id.isdigit() and OrderModel.objects.filter(pk=int(local_id)).exists():
            return int(local_id)

        if str(metadata.get("isGuestCheckout", "")).lower() == "true" and metadata.get("orderData"):
            try:
                data = GuestOrderData.model_validate_json(metadata["orderData"])
            except ValidationError:
                logger.error("invalid guest order data", extra={"gateway_order_id": gateway_order_id}, exc_info=True)
                return None
            email = metadata.get("customerEmail") or data.shipping_address.email or payment.get("buyer_email_address") or ""
            order, _ = self.repository.get_or_create_guest_order(
                gateway_order_id, data, email=email, currency=self.currency
            )
            return order.pk
        return None
