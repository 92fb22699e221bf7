"""Print partner status callbacks (CloudEvents).

Callbacks only enrich the order's ``metadata`` with the partner stage,
shipments and issues. They never move ``status``: PENDING -> COMPLETED is
driven by payment and CANCELED by the cancel action.
"""

import logging
import re

from .domain import utcnow
from .exceptions import OrderNotFoundError
from .repository import OrderRepository

logger = logging.getLogger(__name__)

EVENT_TYPE_RE = re.compile(r"^com\.prodigi\.(?P<path>.+?)#(?P<value>.+)$")
FAILURE_MARKERS = ("Failed", "Error")


def parse_event_type(event_type: str) -> tuple[str, str] | None:
    match = EVENT_TYPE_RE.match(event_type or "")
    if not match:
        return None
    return match.group("path"), match.group("value")


def _shipment_summary(shipment: dict) -> dict:
    carrier = shipment.get("carrier") or {}
    tracking = shipment.get("tracking") or {}
    return {
        "id": shipment.get("id"),
        "carrier": carrier.get("name"),
        "service": carrier.get("service"),
        "trackingNumber": tracking.get("number"),
        "trackingUrl": tracking.get("url"),
        "dispatchDate": shipment.get("dispatchDate"),
    }


class FulfillmentCallbackProcessor:
    def __init__(self, repository: OrderRepository):
        self.repository = repository

    def handle(self, event: dict) -> dict:
        """Merge one partner callback into the matching order.

        Returns:
            dict: ``{"matched": bool, ...}``. Unknown orders and event types
            are acknowledged and logged.

        Raises:
            ValueError: If the body is not a CloudEvents 1.0 envelope.
        """
        if not isinstance(event, dict) or event.get("specversion") != "1.0":
            raise ValueError("Not a CloudEvents 1.0 payload")
        parsed = parse_event_type(event.get("type", ""))
        if parsed is None:
            raise ValueError(f"Unknown event type {event.get('type')!r}")
        path, value = parsed

        partner_order_id = event.get("subject") or ""
        try:
            order = self.repository.get_by_fulfillment_order_id(partner_order_id)
        except OrderNotFoundError:
            logger.warning("callback for unknown partner order", extra={"fulfillment_order_id": partner_order_id})
            return {"matched": False}

        partner_order = ((event.get("data") or {}).get("order")) or {}
        status = partner_order.get("status") or {}
        now = utcnow().isoformat()
        patch = {
            "fulfillmentStatus": status.get("stage") or value,
            "fulfillmentEventId": event.get("id"),
            "fulfillmentUpdatedAt": now,
        }
        if status.get("details"):
            patch["fulfillmentDetails"] = status["details"]
        shipments = partner_order.get("shipments") or []
        if shipments:
            patch["shipments"] = [_shipment_summary(s) for s in shipments]
        issues = status.get("issues") or []
        if issues:
            patch["fulfillmentIssues"] = issues
        self.repository.patch_metadata(order.pk, patch)

        for issue in issues:
            code = str(issue.get("errorCode") or "")
            if any(marker in code for marker in FAILURE_MARKERS):
                self.repository.record_failure(
                    order.pk, f"{code}: {issue.get('description', '')}", breadcrumb="partner"
                )

        logger.info(
            "partner callback applied",
            extra={"order_id": order.pk, "event_path": path, "stage": patch["fulfillmentStatus"], "shipments": len(shipments)},
        )
        return {"matched": True, "order_id": order.pk, "stage": patch["fulfillmentStatus"]}
