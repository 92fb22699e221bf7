"""Compensating actions on a submitted order.

Each action asks the print partner whether it is still possible before
doing anything, and performs its side effects partner first, gateway
second, store last. A partner-side change that succeeded is recorded as a
metadata breadcrumb before the refund is attempted, so a failed refund
leaves a re-invocable order instead of an unrecorded partner change.
"""

import logging

from .domain import (
    FulfillmentPort,
    OrderActions,
    OrderStatus,
    PaymentGatewayPort,
    RESERVED_METADATA_KEYS,
    ShippingMethod,
    shipping_price_cents,
    utcnow,
)
from .exceptions import ActionUnavailableError, BusinessRuleError, RefundFailedError
from .repository import OrderRepository

logger = logging.getLogger(__name__)

# Address fields an operator may change, mapped to recipient columns.
EDITABLE_ADDRESS_FIELDS = {
    "full_name": "name",
    "email": "email",
    "phone": "phone_number",
    "address_line1": "address_line1",
    "address_line2": "address_line2",
    "city": "city",
    "state": "state",
}


def _require(availability, action: str) -> None:
    if not availability.is_available:
        raise ActionUnavailableError(availability.reason or f"{action} is not available for this order")


class CompensatingActions:
    def __init__(self, partner: FulfillmentPort, gateway: PaymentGatewayPort,
                 repository: OrderRepository, pipeline=None):
        self.partner = partner
        self.gateway = gateway
        self.repository = repository
        self.pipeline = pipeline

    def _submitted(self, order_id):
        order = self.repository.get(order_id)
        if not order.fulfillment_order_id:
            raise BusinessRuleError(
                f"Order {order_id} has not been submitted for fulfillment", code="NOT_FULFILLED"
            )
        return order

    def available_actions(self, order_id) -> OrderActions:
        """Fetch the partner's action availability and cache it on the order."""
        order = self._submitted(order_id)
        actions = self.partner.get_actions(order.fulfillment_order_id)
        self.repository.cache_actions(order.pk, actions.as_payload())
        return actions

    def _refund(self, order, amount_cents: int, reason: str, idempotency_key: str):
        payment_id = (order.metadata or {}).get("gatewayPaymentId")
        try:
            refund = self.gateway.refund(payment_id, amount_cents, order.currency, reason, idempotency_key)
        except Exception as exc:
            logger.exception("refund failed", extra={"order_id": order.pk, "amount_cents": amount_cents})
            self.repository.record_failure(order.pk, f"{type(exc).__name__}: {exc}", breadcrumb="refund")
            raise RefundFailedError(f"Refund for order {order.pk} failed: {exc}")
        self.repository.record_refund(order.pk, refund, amount_cents, order.currency, reason)
        return refund

    def cancel_with_refund(self, order_id, reason: str = "Order canceled"):
        """Cancel at the partner, refund what is left, then mark CANCELED.

        Raises:
            BusinessRuleError: Already canceled, never submitted, or no payment.
            ActionUnavailableError: Partner refuses the cancel (its reason).
            RefundFailedError: Partner canceled but the refund failed.
        """
        order = self.repository.get(order_id)
        if order.status == OrderStatus.CANCELED.value:
            raise BusinessRuleError(f"Order {order_id} is already canceled", code="ALREADY_CANCELED")
        if not order.fulfillment_order_id:
            raise BusinessRuleError(
                f"Order {order_id} has no fulfillment order to cancel", code="NOT_FULFILLED"
            )
        if not (order.metadata or {}).get("gatewayPaymentId"):
            raise BusinessRuleError(f"Order {order_id} has no captured payment", code="NO_PAYMENT")

        if not order.metadata.get("partnerCanceledAt"):
            actions = self.partner.get_actions(order.fulfillment_order_id)
            _require(actions.cancel, "cancel")
            self.partner.cancel(order.fulfillment_order_id)
            order = self.repository.patch_metadata(order.pk, {"partnerCanceledAt": utcnow().isoformat()})
            logger.info("partner order canceled", extra={"order_id": order.pk, "fulfillment_order_id": order.fulfillment_order_id})

        patch = {"canceledAt": utcnow().isoformat(), "cancelReason": reason}
        amount = order.total_cents - self.repository.refunded_cents(order.pk)
        if amount > 0:
            refund = self._refund(order, amount, reason, f"refund-{order.pk}-cancel")
            patch.update({"refundId": refund.id, "refundAmount": amount})
        return self.repository.mark_canceled(order.pk, patch)

    def update_address(self, order_id, address: dict):
        """Change free-text recipient fields at the partner, then locally.

        ``address`` uses the checkout field names. Postal code and country
        can never change.
        """
        order = self._submitted(order_id)
        recipient = order.recipient
        postal = address.get("postal_code")
        if postal is not None and postal.strip().upper() != recipient.postal_code.strip().upper():
            raise BusinessRuleError(
                "Postal code changes are not allowed", code="POSTAL_CODE_CHANGE_NOT_ALLOWED"
            )
        country = address.get("country")
        if country is not None and country.strip().upper() != recipient.country_code.upper():
            raise BusinessRuleError("Country changes are not allowed", code="COUNTRY_CHANGE_NOT_ALLOWED")

        changes = {
            column: address[field]
            for field, column in EDITABLE_ADDRESS_FIELDS.items()
            if address.get(field) is not None and address[field] != getattr(recipient, column)
        }
        if not changes:
            return recipient

        actions = self.partner.get_actions(order.fulfillment_order_id)
        _require(actions.change_recipient_details, "changeRecipientDetails")

        merged = {column: getattr(recipient, column) for column in EDITABLE_ADDRESS_FIELDS.values()}
        merged.update(changes)
        partner_recipient = {
            "name": merged["name"],
            "email": merged["email"] or None,
            "phoneNumber": merged["phone_number"] or None,
            "address": {
                "line1": merged["address_line1"],
                "line2": merged["address_line2"] or None,
                "postalOrZipCode": recipient.postal_code,
                "countryCode": recipient.country_code,
                "townOrCity": merged["city"],
                "stateOrCounty": merged["state"] or None,
            },
        }
        self.partner.update_recipient(order.fulfillment_order_id, partner_recipient)
        updated = self.repository.update_recipient(order, changes)
        self.repository.patch_metadata(order.pk, {"recipientUpdatedAt": utcnow().isoformat()})
        logger.info("recipient updated", extra={"order_id": order.pk, "fields": sorted(changes)})
        return updated

    def downgrade_shipping(self, order_id, new_method: str):
        """Move to a strictly cheaper shipping method and refund the difference."""
        order = self._submitted(order_id)
        if order.status == OrderStatus.CANCELED.value:
            raise BusinessRuleError(f"Order {order_id} is canceled", code="ALREADY_CANCELED")
        if not (order.metadata or {}).get("gatewayPaymentId"):
            raise BusinessRuleError(f"Order {order_id} has no captured payment", code="NO_PAYMENT")
        old_method = ShippingMethod(order.shipping_method)
        new = ShippingMethod(new_method)
        delta = shipping_price_cents(old_method) - shipping_price_cents(new)
        if delta <= 0:
            raise BusinessRuleError(
                f"Cannot change shipping from {old_method.value} to {new.value}: only downgrades are allowed",
                code="SHIPPING_UPGRADE_NOT_ALLOWED",
            )

        if order.metadata.get("partnerShippingMethod") != new.value:
            actions = self.partner.get_actions(order.fulfillment_order_id)
            _require(actions.change_shipping_method, "changeShippingMethod")
            self.partner.update_shipping_method(order.fulfillment_order_id, new.value)
            order = self.repository.patch_metadata(order.pk, {"partnerShippingMethod": new.value})

        refund = self._refund(
            order,
            delta,
            f"Shipping downgrade from {old_method.value} to {new.value}",
            f"refund-{order.pk}-shipping-{old_method.value}-{new.value}",
        )
        return self.repository.set_shipping_method(
            order.pk,
            new.value,
            {
                "previousShippingMethod": old_method.value,
                "shippingRefundId": refund.id,
                "shippingRefundAmount": delta,
                "shippingMethodChangedAt": utcnow().isoformat(),
            },
        )

    def patch_metadata(self, order_id, patch: dict):
        """Merge ``patch`` into the partner's and the local metadata."""
        reserved = sorted(RESERVED_METADATA_KEYS.intersection(patch))
        if reserved:
            raise BusinessRuleError(f"Reserved metadata keys: {', '.join(reserved)}", code="RESERVED_METADATA_KEY")
        order = self._submitted(order_id)
        self.partner.update_metadata(order.fulfillment_order_id, patch)
        return self.repository.patch_metadata(order.pk, {**patch, "metadataUpdatedAt": utcnow().isoformat()})

    def retry_fulfillment(self, order_id):
        """Operator trigger for a paid order whose fulfillment failed."""
        order = self.repository.get(order_id)
        if order.status != OrderStatus.COMPLETED.value:
            raise BusinessRuleError(
                f"Order {order_id} is {order.status}; only completed orders can be fulfilled",
                code="ORDER_NOT_COMPLETED",
            )
        if order.fulfillment_order_id:
            raise BusinessRuleError(f"Order {order_id} is already fulfilled", code="ALREADY_FULFILLED")
        return self.pipeline.fulfill(order.pk)
