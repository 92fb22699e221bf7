"""Completion claim protocol.

Both completion triggers (the synchronous checkout response and the
gateway webhook) call ``try_claim`` before doing any fulfillment work. The
claim is a lease (token + start time) stored in the order's ``metadata``;
reading the order, deciding and writing the lease happen in one
transaction holding the row lock, so two callers can never both observe
"no claim" and proceed.

Outcomes:
    - ``ALREADY_FULFILLED``: the partner order id is set; nothing to do.
    - ``ALREADY_CLAIMED``: another caller holds a lease younger than the
      lease duration.
    - ``CLAIMED``: this caller owns a fresh lease. An expired lease is
      overridden, which is how a crashed claimant is recovered.
"""

import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.db import transaction

from .domain import ClaimOutcome, ClaimResult, ProcessingClaim, merge_patch, utcnow
from .exceptions import OrderNotFoundError
from .models import OrderModel

logger = logging.getLogger(__name__)


def claim_lease() -> timedelta:
    return timedelta(seconds=getattr(settings, "FULFILLMENT_CLAIM_LEASE_SECONDS", 300))


@transaction.atomic
def try_claim(order_id, now: datetime | None = None) -> ClaimResult:
    """Atomically decide whether the caller may fulfill ``order_id``.

    Args:
        order_id: Order primary key.
        now: Clock override (tests); defaults to the current UTC time.

    Returns:
        ClaimResult: The outcome and, when claimed, the issued lease.

    Raises:
        OrderNotFoundError: If the order does not exist.
    """
    now = now or utcnow()
    try:
        order = OrderModel.objects.select_for_update().get(pk=order_id)
    except OrderModel.DoesNotExist:
        raise OrderNotFoundError(f"Order {order_id} not found")

    if order.fulfillment_order_id:
        return ClaimResult(ClaimOutcome.ALREADY_FULFILLED, fulfillment_order_id=order.fulfillment_order_id)

    current = ProcessingClaim.from_metadata(order.metadata)
    if current is not None:
        if not current.is_expired(now, claim_lease()):
            return ClaimResult(ClaimOutcome.ALREADY_CLAIMED, claim=current)
        logger.warning(
            "overriding stale processing claim",
            extra={"order_id": order.pk, "stale_token": current.token, "age_s": current.age(now).total_seconds()},
        )

    claim = ProcessingClaim.issue(now)
    order.metadata = merge_patch(order.metadata, claim.as_patch())
    order.save(update_fields=["metadata", "updated_at"])
    logger.info("processing claim acquired", extra={"order_id": order.pk, "token": claim.token})
    return ClaimResult(ClaimOutcome.CLAIMED, claim=claim)


@transaction.atomic
def release_claim(order_id, token: str) -> bool:
    """Clear the lease if ``token`` still owns it.

    Returns:
        bool: True when the claim fields were cleared.
    """
    order = OrderModel.objects.select_for_update().filter(pk=order_id).first()
    if order is None:
        return False
    current = ProcessingClaim.from_metadata(order.metadata)
    if current is None or current.token != token:
        return False
    order.metadata = merge_patch(order.metadata, ProcessingClaim.clearing_patch())
    order.save(update_fields=["metadata", "updated_at"])
    return True
