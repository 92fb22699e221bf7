"""Translation of orders into print-partner requests, and submission.

The partner accepts its own product codes and a closed vocabulary for
colors and sizes. Internal SKUs carry a region/namespace prefix
(``US-TEE-SS-ABC``, ``GLOBAL-TEE-SS-ABC``) that is stripped here; colors and
sizes go through explicit mapping tables. Any item that cannot be
translated fails the whole submission: the partner never receives a
partial order.
"""

import logging
import re

from django.conf import settings

from .domain import FulfillmentPort, PartnerOrder
from .exceptions import FulfillmentValidationError

logger = logging.getLogger(__name__)

SKU_PREFIX_RE = re.compile(r"^(?:GLOBAL-|[A-Z]{2}-)")
PARTNER_SKU_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{2,63}$")

SIZE_MAP = {
    "XS": "xs",
    "S": "s",
    "SMALL": "s",
    "M": "m",
    "MEDIUM": "m",
    "L": "l",
    "LARGE": "l",
    "XL": "xl",
    "XXL": "2xl",
    "2XL": "2xl",
    "XXXL": "3xl",
    "3XL": "3xl",
    "4XL": "4xl",
    "5XL": "5xl",
}

COLOR_ALIASES = {
    "gray": "grey",
    "heather-gray": "heather-grey",
    "dark-heather-gray": "dark-heather-grey",
    "sport-grey": "sports-grey",
    "navy-blue": "navy",
    "dark-navy": "navy",
    "burgundy": "maroon",
    "off-white": "natural",
}

PARTNER_COLORS = frozenset(
    {
        "black",
        "white",
        "navy",
        "grey",
        "heather-grey",
        "dark-heather-grey",
        "sports-grey",
        "athletic-heather",
        "charcoal",
        "red",
        "maroon",
        "royal-blue",
        "light-blue",
        "sky-blue",
        "forest-green",
        "military-green",
        "irish-green",
        "kelly-green",
        "purple",
        "heather-purple",
        "pink",
        "light-pink",
        "orange",
        "gold",
        "yellow",
        "sand",
        "natural",
        "brown",
    }
)


def partner_sku(sku: str) -> str:
    """Strip the internal prefix from a SKU and validate the result."""
    code = SKU_PREFIX_RE.sub("", (sku or "").strip().upper(), count=1)
    if not PARTNER_SKU_RE.match(code):
        raise FulfillmentValidationError(f"Cannot resolve partner SKU from {sku!r}", code="INVALID_SKU")
    return code


def normalize_size(size: str) -> str:
    key = re.sub(r"\s+", "", (size or "")).upper()
    try:
        return SIZE_MAP[key]
    except KeyError:
        raise FulfillmentValidationError(f"Unsupported size {size!r}", code="UNSUPPORTED_SIZE")


def normalize_color(color: str) -> str:
    slug = re.sub(r"[\s_]+", "-", (color or "").strip().lower())
    slug = COLOR_ALIASES.get(slug, slug)
    if slug not in PARTNER_COLORS:
        raise FulfillmentValidationError(f"Unsupported color {color!r}", code="UNSUPPORTED_COLOR")
    return slug


def idempotency_key_for(order_id) -> str:
    """Deterministic partner idempotency key: one partner order per order."""
    return f"order-{order_id}-fulfillment"


def _partner_attributes(attributes: dict) -> dict:
    out = {}
    if attributes.get("color"):
        out["color"] = normalize_color(attributes["color"])
    if attributes.get("size"):
        out["size"] = normalize_size(attributes["size"])
    return out


def _partner_recipient(recipient) -> dict:
    address = {
        "line1": recipient.address_line1,
        "postalOrZipCode": recipient.postal_code,
        "countryCode": recipient.country_code,
        "townOrCity": recipient.city,
    }
    if recipient.address_line2:
        address["line2"] = recipient.address_line2
    if recipient.state:
        address["stateOrCounty"] = recipient.state
    body = {"name": recipient.name, "address": address}
    if recipient.email:
        body["email"] = recipient.email
    if recipient.phone_number:
        body["phoneNumber"] = recipient.phone_number
    return body


def build_partner_request(order, assets_by_item: dict) -> dict:
    """Build the partner's create-order body for ``order``.

    Args:
        order: OrderModel with recipient and items.
        assets_by_item: Print-ready URL keyed by order item id.

    Returns:
        dict: JSON body for the partner's create-order endpoint.

    Raises:
        FulfillmentValidationError: If the order has no items or recipient,
            or any item lacks a resolvable SKU or an asset URL.
    """
    items = list(order.items.all())
    if not items:
        raise FulfillmentValidationError(f"Order {order.pk} has no items", code="EMPTY_ORDER")
    recipient = getattr(order, "recipient", None)
    if recipient is None:
        raise FulfillmentValidationError(f"Order {order.pk} has no recipient", code="MISSING_RECIPIENT")

    partner_items = []
    for item in items:
        url = assets_by_item.get(item.pk) or item.print_ready_url or item.design_url
        if not url:
            raise FulfillmentValidationError(f"Item {item.pk} has no asset url", code="MISSING_ASSET")
        entry = {
            "merchantReference": f"item-{item.pk}",
            "sku": partner_sku(item.sku),
            "copies": item.copies,
            "sizing": "fillPrintArea",
            "assets": [{"printArea": "default", "url": url}],
        }
        attributes = _partner_attributes(item.attributes or {})
        if attributes:
            entry["attributes"] = attributes
        partner_items.append(entry)

    request = {
        "merchantReference": f"ORDER-{order.pk}",
        "shippingMethod": order.shipping_method,
        "idempotencyKey": idempotency_key_for(order.pk),
        "recipient": _partner_recipient(recipient),
        "items": partner_items,
        "metadata": {"orderId": str(order.pk)},
    }
    callback_url = getattr(settings, "FULFILLMENT_CALLBACK_URL", "")
    if callback_url:
        request["callbackUrl"] = callback_url
    return request


class FulfillmentSubmitter:
    """Submit a claimed order to the print partner and record the result."""

    def __init__(self, partner: FulfillmentPort, repository):
        self.partner = partner
        self.repository = repository

    def submit(self, order, assets_by_item: dict) -> str:
        """Create the partner order and store its id on the order.

        Failures propagate to the caller, which owns the claim and records
        the error.

        Returns:
            str: The partner order id.
        """
        request = build_partner_request(order, assets_by_item)
        partner_order: PartnerOrder = self.partner.create_order(request)
        if not partner_order.id:
            raise RuntimeError(f"Partner returned no order id for order {order.pk}")
        stored = self.repository.record_fulfillment(order.pk, partner_order)
        logger.info(
            "fulfillment order created",
            extra={"order_id": order.pk, "fulfillment_order_id": stored.fulfillment_order_id, "items": len(request["items"])},
        )
        return stored.fulfillment_order_id
