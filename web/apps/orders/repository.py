"""Repository layer for persisting orders.

This module keeps the Django ORM details out of the completion pipeline and
the compensating actions. Every read-modify-write of an order row happens
inside ``transaction.atomic`` with ``select_for_update()`` so concurrent
triggers never interleave a read and a write on the same order.
"""

import logging

from django.db import IntegrityError, transaction
from django.db.models import F, Sum

from .domain import (
    OrderStatus,
    PartnerOrder,
    PaymentConfirmed,
    PreparedAsset,
    ProcessingClaim,
    RefundResult,
    ShippingMethod,
    merge_patch,
    shipping_price_cents,
    utcnow,
)
from .exceptions import BusinessRuleError, OrderNotFoundError
from .models import (
    DiscountCode,
    DiscountUsage,
    OrderItemModel,
    OrderModel,
    ProcessingError,
    RecipientModel,
    RefundModel,
)

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000


class OrderRepository:
    """Repository that persists orders and their bookkeeping rows.

    The methods return ORM instances; callers treat them as read-only
    snapshots and go back through the repository for every write.
    """

    # ---- Reads ----
    def get(self, order_id) -> OrderModel:
        try:
            return (
                OrderModel.objects.select_related("recipient", "discount_code")
                .prefetch_related("items")
                .get(pk=order_id)
            )
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"Order {order_id} not found")

    def get_by_fulfillment_order_id(self, fulfillment_order_id: str) -> OrderModel:
        try:
            return OrderModel.objects.get(fulfillment_order_id=fulfillment_order_id)
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"No order for partner order {fulfillment_order_id}")

    def _locked(self, order_id) -> OrderModel:
        try:
            return OrderModel.objects.select_for_update().get(pk=order_id)
        except OrderModel.DoesNotExist:
            raise OrderNotFoundError(f"Order {order_id} not found")

    def refunded_cents(self, order_id) -> int:
        total = RefundModel.objects.filter(order_id=order_id).aggregate(total=Sum("amount_cents"))["total"]
        return total or 0

    # ---- Creation ----
    def _resolve_discount(self, code: str | None, enforce_cap: bool = True) -> DiscountCode | None:
        """Look up a discount code.

        With ``enforce_cap`` false (the payment was already captured with the
        code applied) an exhausted or inactive code is still honoured and an
        unknown one is dropped with a warning instead of failing.
        """
        if not code:
            return None
        discount = DiscountCode.objects.filter(code__iexact=code.strip()).first()
        if enforce_cap and (discount is None or not discount.is_usable()):
            raise BusinessRuleError(f"Discount code {code!r} is not valid", code="INVALID_DISCOUNT_CODE")
        if discount is None:
            logger.warning("unknown discount code on paid order", extra={"discount_code": code})
        return discount

    def _create(self, *, items, address, shipping_method, currency, user_id, email,
                discount_code=None, gateway_order_id=None, enforce_cap=True) -> OrderModel:
        shipping_method = ShippingMethod(shipping_method).value
        subtotal = sum(i.price_cents * i.copies for i in items)
        discount = self._resolve_discount(discount_code, enforce_cap=enforce_cap)
        discount_cents = discount.discount_for(subtotal) if discount else 0
        total = subtotal + shipping_price_cents(shipping_method) - discount_cents

        order = OrderModel.objects.create(
            user_id=user_id or "guest",
            customer_email=email or "",
            status=OrderModel.Status.PENDING,
            total_cents=total,
            discount_cents=discount_cents,
            discount_code=discount,
            currency=currency,
            shipping_method=shipping_method,
            gateway_order_id=gateway_order_id,
        )
        RecipientModel.objects.create(
            order=order,
            name=address.full_name,
            email=address.email or email or "",
            phone_number=address.phone or "",
            address_line1=address.address_line1,
            address_line2=address.address_line2 or "",
            city=address.city,
            state=address.state or "",
            postal_code=address.postal_code,
            country_code=address.country,
        )
        OrderItemModel.objects.bulk_create(
            [
                OrderItemModel(
                    order=order,
                    product_id=i.product_id,
                    sku=i.sku,
                    copies=i.copies,
                    price_cents=i.price_cents,
                    attributes=i.attributes(),
                    design_url=i.design_url or "",
                    print_ready_url=i.print_ready_url,
                )
                for i in items
            ]
        )
        return order

    @transaction.atomic
    def create_from_checkout(self, dto, user_id: str = "guest", currency: str = "USD") -> OrderModel:
        """Persist a PENDING order with its recipient and items.

        Args:
            dto: Validated ``CompletePaymentDTO``.
            user_id: Authenticated user id, or ``guest``.
            currency: ISO currency of the order.

        Returns:
            OrderModel: The created order.

        Raises:
            BusinessRuleError: If the discount code is unknown or exhausted.
        """
        order = self._create(
            items=dto.items,
            address=dto.shipping_address,
            shipping_method=dto.shipping_method,
            currency=currency,
            user_id=user_id,
            email=dto.shipping_address.email,
            discount_code=dto.discount_code,
        )
        logger.info("order created", extra={"order_id": order.pk, "total_cents": order.total_cents})
        return order

    def get_or_create_guest_order(self, gateway_order_id: str, data, email: str,
                                  currency: str = "USD") -> tuple[OrderModel, bool]:
        """Create the order of a guest checkout the first time its payment is seen.

        The gateway order id is unique on the table, so two deliveries racing
        here end with one row: the loser hits IntegrityError and reads the
        winner's order.

        Returns:
            tuple[OrderModel, bool]: (order, created).
        """
        existing = OrderModel.objects.filter(gateway_order_id=gateway_order_id).first()
        if existing is not None:
            return existing, False
        try:
            with transaction.atomic():
                order = self._create(
                    items=data.items,
                    address=data.shipping_address,
                    shipping_method=data.shipping_method,
                    currency=currency,
                    user_id=f"guest:{email}" if email else "guest",
                    email=email,
                    discount_code=data.discount_code,
                    gateway_order_id=gateway_order_id,
                    enforce_cap=False,
                )
        except IntegrityError:
            return OrderModel.objects.get(gateway_order_id=gateway_order_id), False
        logger.info("guest order created", extra={"order_id": order.pk, "gateway_order_id": gateway_order_id})
        return order, True

    # ---- Payment bookkeeping ----
    @transaction.atomic
    def mark_paid(self, event: PaymentConfirmed) -> OrderModel:
        """Stamp gateway identifiers and move PENDING to COMPLETED on success.

        Canceled orders are returned untouched. A non-successful status never
        overwrites the refs of an order that is already COMPLETED.
        """
        order = self._locked(event.order_id)
        if order.status == OrderStatus.CANCELED.value:
            return order
        if order.status == OrderStatus.COMPLETED.value and not event.succeeded:
            return order

        fields = ["metadata", "updated_at"]
        order.metadata = merge_patch(order.metadata, event.gateway_refs())
        if event.gateway_order_id and not order.gateway_order_id:
            order.gateway_order_id = event.gateway_order_id
            fields.append("gateway_order_id")
        if event.succeeded and order.status == OrderStatus.PENDING.value:
            order.status = OrderStatus.COMPLETED.value
            fields.append("status")
        order.save(update_fields=fields)
        return order

    def record_discount_usage(self, order: OrderModel) -> bool:
        """Record the order's discount usage once and bump the code counter.

        Returns:
            bool: True when the usage row was created by this call.
        """
        if not order.discount_code_id:
            return False
        try:
            # Savepoint: the unique constraint rejects the second attempt.
            with transaction.atomic():
                DiscountUsage.objects.create(
                    discount_code_id=order.discount_code_id,
                    order_id=order.pk,
                    user_id=order.user_id,
                    amount_cents=order.discount_cents,
                )
                DiscountCode.objects.filter(pk=order.discount_code_id).update(used_count=F("used_count") + 1)
        except IntegrityError:
            return False
        return True

    # ---- Metadata ----
    @transaction.atomic
    def patch_metadata(self, order_id, patch: dict) -> OrderModel:
        order = self._locked(order_id)
        order.metadata = merge_patch(order.metadata, patch)
        order.save(update_fields=["metadata", "updated_at"])
        return order

    @transaction.atomic
    def cache_actions(self, order_id, actions_payload: dict) -> None:
        OrderModel.objects.filter(pk=order_id).update(
            available_actions=actions_payload, last_action_check=utcnow()
        )

    # ---- Fulfillment ----
    def save_item_asset(self, item: OrderItemModel, prepared: PreparedAsset) -> None:
        OrderItemModel.objects.filter(pk=item.pk).update(
            print_ready_url=prepared.url, asset_outcome=prepared.outcome.value
        )
        item.print_ready_url = prepared.url
        item.asset_outcome = prepared.outcome.value

    @transaction.atomic
    def record_fulfillment(self, order_id, partner_order: PartnerOrder) -> OrderModel:
        """Store the partner order id once and drop the processing claim."""
        order = self._locked(order_id)
        if order.fulfillment_order_id:
            if order.fulfillment_order_id != partner_order.id:
                logger.error(
                    "partner order id mismatch",
                    extra={"order_id": order.pk, "stored": order.fulfillment_order_id, "received": partner_order.id},
                )
            return order
        now = utcnow()
        order.fulfillment_order_id = partner_order.id
        order.metadata = merge_patch(
            order.metadata,
            {
                **ProcessingClaim.clearing_patch(),
                "fulfillmentStatus": partner_order.status,
                "fulfilledAt": now.isoformat(),
                "fulfillmentError": None,
                "fulfillmentErrorTime": None,
            },
        )
        order.save(update_fields=["fulfillment_order_id", "metadata", "updated_at"])
        return order

    @transaction.atomic
    def record_failure(self, order_id, error: str, claim_token: str | None = None,
                       breadcrumb: str = "fulfillment") -> ProcessingError:
        """Append a ProcessingError, leave a breadcrumb and release the claim.

        The claim is only cleared when ``claim_token`` still owns it, so a
        claimant whose lease was taken over cannot clear the new owner's
        claim. ``fulfillment_order_id`` is never touched.
        """
        order = self._locked(order_id)
        now = utcnow()
        message = (error or "unknown error")[:MAX_ERROR_LENGTH]
        previous = ProcessingError.objects.filter(order_id=order.pk, stage=breadcrumb).count()
        entry = ProcessingError.objects.create(
            order=order, stage=breadcrumb, error=message, retry_count=previous, last_attempt=now
        )

        patch = {f"{breadcrumb}Error": message, f"{breadcrumb}ErrorTime": now.isoformat()}
        if claim_token is not None:
            current = ProcessingClaim.from_metadata(order.metadata)
            if current is not None and current.token == claim_token:
                patch.update(ProcessingClaim.clearing_patch())
        order.metadata = merge_patch(order.metadata, patch)
        order.save(update_fields=["metadata", "updated_at"])
        return entry

    # ---- Compensation ----
    def record_refund(self, order_id, refund: RefundResult, amount_cents: int,
                      currency: str, reason: str) -> RefundModel:
        obj, _ = RefundModel.objects.get_or_create(
            gateway_refund_id=refund.id,
            defaults={
                "order_id": order_id,
                "amount_cents": amount_cents,
                "currency": currency,
                "reason": reason[:255],
                "status": refund.status or "PENDING",
            },
        )
        return obj

    def update_refund_status(self, gateway_refund_id: str, status: str) -> bool:
        return RefundModel.objects.filter(gateway_refund_id=gateway_refund_id).update(status=status) > 0

    @transaction.atomic
    def mark_canceled(self, order_id, patch: dict) -> OrderModel:
        order = self._locked(order_id)
        order.status = OrderStatus.CANCELED.value
        order.metadata = merge_patch(order.metadata, patch)
        order.save(update_fields=["status", "metadata", "updated_at"])
        return order

    @transaction.atomic
    def set_shipping_method(self, order_id, method: str, patch: dict) -> OrderModel:
        order = self._locked(order_id)
        order.shipping_method = method
        order.metadata = merge_patch(order.metadata, patch)
        order.save(update_fields=["shipping_method", "metadata", "updated_at"])
        return order

    def update_recipient(self, order: OrderModel, address: dict) -> RecipientModel:
        recipient = order.recipient
        for name, value in address.items():
            setattr(recipient, name, value)
        recipient.save(update_fields=list(address.keys()))
        return recipient
