"""In-process stub adapters for the orders domain ports.

These stubs implement ``PaymentGatewayPort``, ``FulfillmentPort`` and
``UpscalerPort`` without any network calls. They are intended for unit
tests and local development where deterministic behavior is useful and
external services are not required. Each stub honors idempotency keys the
same way the real services do, and records its calls for assertions.
"""

import uuid
from typing import Optional

from .assets import needs_upscaling
from .domain import (
    ActionAvailability,
    ChargeResult,
    FulfillmentPort,
    OrderActions,
    PartnerOrder,
    PaymentGatewayPort,
    RefundResult,
    UpscaleContext,
    UpscaleResult,
    UpscalerPort,
)

DECLINED_SOURCE_TOKEN = "declined"


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Approves every charge except those made with the ``declined`` source
    token. Replays the stored result when an idempotency key is reused.
    """

    def __init__(self):
        self.charges: dict[str, ChargeResult] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.refund_calls: list[dict] = []
        self.orders: dict[str, dict] = {}

    def create_charge(self, amount_cents: int, currency: str, source_token: str,
                      idempotency_key: str, reference_id: Optional[str] = None) -> ChargeResult:
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]
        status = "FAILED" if source_token == DECLINED_SOURCE_TOKEN or amount_cents <= 0 else "COMPLETED"
        result = ChargeResult(id=f"pay_{uuid.uuid4().hex[:12]}", status=status, gateway_order_id=None)
        self.charges[idempotency_key] = result
        return result

    def refund(self, payment_id: str, amount_cents: int, currency: str, reason: str,
               idempotency_key: str) -> RefundResult:
        self.refund_calls.append(
            {"payment_id": payment_id, "amount_cents": amount_cents, "currency": currency, "key": idempotency_key}
        )
        if idempotency_key not in self.refunds:
            self.refunds[idempotency_key] = RefundResult(id=f"ref_{uuid.uuid4().hex[:12]}", status="PENDING")
        return self.refunds[idempotency_key]

    def get_order(self, gateway_order_id: str) -> dict:
        return dict(self.orders.get(gateway_order_id, {}))


class FulfillmentStub(FulfillmentPort):
    """Stub implementation of ``FulfillmentPort``.

    One partner order per idempotency key. Actions are available until the
    order is canceled; ``unavailable`` can force an action to ``No``.
    """

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.by_key: dict[str, str] = {}
        self.create_calls: list[dict] = []
        self.unavailable: dict[str, str] = {}

    def create_order(self, request: dict) -> PartnerOrder:
        self.create_calls.append(request)
        key = request.get("idempotencyKey")
        if key and key in self.by_key:
            return PartnerOrder(id=self.by_key[key], status="InProgress")
        partner_id = f"ord_{len(self.orders) + 1000}"
        self.orders[partner_id] = {"request": request, "stage": "InProgress", "metadata": {}}
        if key:
            self.by_key[key] = partner_id
        return PartnerOrder(id=partner_id, status="InProgress")

    def _availability(self, partner_order_id: str, action: str) -> ActionAvailability:
        order = self.orders.get(partner_order_id)
        if order is None:
            return ActionAvailability(False, "Order not found")
        if order["stage"] == "Cancelled":
            return ActionAvailability(False, "Order has been cancelled")
        if action in self.unavailable:
            return ActionAvailability(False, self.unavailable[action])
        return ActionAvailability(True)

    def get_actions(self, partner_order_id: str) -> OrderActions:
        return OrderActions(
            cancel=self._availability(partner_order_id, "cancel"),
            change_recipient_details=self._availability(partner_order_id, "changeRecipientDetails"),
            change_shipping_method=self._availability(partner_order_id, "changeShippingMethod"),
            update_metadata=self._availability(partner_order_id, "updateMetadata"),
        )

    def cancel(self, partner_order_id: str) -> None:
        self.orders[partner_order_id]["stage"] = "Cancelled"

    def update_recipient(self, partner_order_id: str, recipient: dict) -> None:
        self.orders[partner_order_id]["request"]["recipient"] = recipient

    def update_shipping_method(self, partner_order_id: str, method: str) -> None:
        self.orders[partner_order_id]["request"]["shippingMethod"] = method

    def update_metadata(self, partner_order_id: str, metadata: dict) -> None:
        self.orders[partner_order_id]["metadata"].update(metadata)


class UpscalerStub(UpscalerPort):
    """Stub implementation of ``UpscalerPort``.

    Returns a deterministic ``/orders/...-300dpi.png`` URL. With ``fail``
    set every upscale raises, which exercises the fallback path.
    """

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []

    def needs_upscaling(self, url: str) -> bool:
        return needs_upscaling(url)

    def upscale(self, source_url: str, context: UpscaleContext) -> UpscaleResult:
        self.calls.append(source_url)
        if self.fail:
            raise RuntimeError("upscaler unavailable")
        return UpscaleResult(
            print_ready_url=f"https://assets.local/orders/{context.order_id}/item-{context.item_index}-300dpi.png",
            size_bytes=1024,
        )
