"""Domain types, ports and helpers for order completion and fulfillment.

This module contains the value types shared by the completion pipeline
(the processing claim, the canonical ``PaymentConfirmed`` event and the
results handed back to views), protocol definitions (ports) for the
external payment gateway, print partner and asset upscaler, and the
merge-patch helper used for every write to an order's ``metadata`` bag.

Nothing here performs I/O; persistence lives in ``repository``/``claims``
and network access in ``http_adapters``.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Protocol


# ---- Enums ----
class OrderStatus(str, Enum):
    """Order lifecycle. COMPLETED is reached once; CANCELED is terminal."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELED = "CANCELED"


class ShippingMethod(str, Enum):
    BUDGET = "Budget"
    STANDARD = "Standard"
    EXPRESS = "Express"
    OVERNIGHT = "Overnight"


# Price table used for checkout pricing and shipping downgrades (minor units).
SHIPPING_PRICES_CENTS = {
    ShippingMethod.BUDGET: 500,
    ShippingMethod.STANDARD: 1000,
    ShippingMethod.EXPRESS: 2000,
    ShippingMethod.OVERNIGHT: 3500,
}


def shipping_price_cents(method) -> int:
    return SHIPPING_PRICES_CENTS[ShippingMethod(method)]


class ClaimOutcome(str, Enum):
    CLAIMED = "CLAIMED"
    ALREADY_FULFILLED = "ALREADY_FULFILLED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"


class AssetOutcome(str, Enum):
    """How the print asset of an order item was obtained."""

    PASSTHROUGH = "PASSTHROUGH"
    UPSCALED = "UPSCALED"
    FALLBACK = "FALLBACK"


class CompletionOutcome(str, Enum):
    FULFILLED = "FULFILLED"
    ALREADY_FULFILLED = "ALREADY_FULFILLED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    PAYMENT_NOT_COMPLETED = "PAYMENT_NOT_COMPLETED"
    ORDER_CANCELED = "ORDER_CANCELED"
    FAILED = "FAILED"


SUCCESSFUL_PAYMENT_STATUSES = frozenset({"COMPLETED"})


# ---- Metadata bag ----
CLAIM_KEY_FIELD = "processingClaimKey"
CLAIM_STARTED_FIELD = "processingClaimStartedAt"
DEFAULT_CLAIM_LEASE = timedelta(minutes=5)

# Keys owned by the completion pipeline; operators cannot patch them.
RESERVED_METADATA_KEYS = frozenset(
    {
        CLAIM_KEY_FIELD,
        CLAIM_STARTED_FIELD,
        "gatewayPaymentId",
        "gatewayPaymentStatus",
        "gatewayOrderId",
        # fulfillment and partner callbacks
        "fulfilledAt",
        "fulfillmentStatus",
        "fulfillmentError",
        "fulfillmentErrorTime",
        "fulfillmentEventId",
        "fulfillmentUpdatedAt",
        "fulfillmentDetails",
        "fulfillmentIssues",
        "shipments",
        "partnerError",
        "partnerErrorTime",
        # compensating actions; partner* markers skip an already-done partner step
        "partnerCanceledAt",
        "partnerShippingMethod",
        "canceledAt",
        "cancelReason",
        "refundId",
        "refundAmount",
        "refundError",
        "refundErrorTime",
        "previousShippingMethod",
        "shippingRefundId",
        "shippingRefundAmount",
        "shippingMethodChangedAt",
        "recipientUpdatedAt",
        "metadataUpdatedAt",
    }
)


def merge_patch(target: Optional[dict], patch: dict) -> dict:
    """Apply a JSON merge-patch (RFC 7386) and return a new dict.

    ``None`` values delete keys, nested dicts are merged recursively and
    every other value replaces the existing one. ``target`` is not mutated.
    """
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            result[key] = merge_patch(result.get(key), value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(raw) -> Optional[datetime]:
    if not isinstance(raw, str) or not raw:
        return None
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class ProcessingClaim:
    """Lease over an order's fulfillment work, stored in ``metadata``.

    Attributes:
        token: Unique value identifying the claimant.
        started_at: When the lease was taken (timezone-aware UTC).
    """

    token: str
    started_at: datetime

    @classmethod
    def issue(cls, now: Optional[datetime] = None) -> "ProcessingClaim":
        return cls(token=uuid.uuid4().hex, started_at=now or utcnow())

    @classmethod
    def from_metadata(cls, metadata: Optional[dict]) -> Optional["ProcessingClaim"]:
        """Read the claim from a metadata bag.

        A token without a parseable start time is returned with the epoch
        as start, so it is always considered expired.
        """
        if not isinstance(metadata, dict):
            return None
        token = metadata.get(CLAIM_KEY_FIELD)
        if not token:
            return None
        started = _parse_timestamp(metadata.get(CLAIM_STARTED_FIELD))
        if started is None:
            started = datetime.fromtimestamp(0, tz=timezone.utc)
        return cls(token=str(token), started_at=started)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.started_at

    def is_expired(self, now: Optional[datetime] = None, lease: timedelta = DEFAULT_CLAIM_LEASE) -> bool:
        return self.age(now) >= lease

    def as_patch(self) -> dict:
        return {
            CLAIM_KEY_FIELD: self.token,
            CLAIM_STARTED_FIELD: self.started_at.isoformat(),
        }

    @staticmethod
    def clearing_patch() -> dict:
        return {CLAIM_KEY_FIELD: None, CLAIM_STARTED_FIELD: None}


@dataclass(frozen=True)
class ClaimResult:
    outcome: ClaimOutcome
    claim: Optional[ProcessingClaim] = None
    fulfillment_order_id: Optional[str] = None

    @property
    def claimed(self) -> bool:
        return self.outcome == ClaimOutcome.CLAIMED


# ---- Events / results ----
@dataclass(frozen=True)
class PaymentConfirmed:
    """Canonical completion signal produced by both entry points.

    Attributes:
        order_id: Local order identifier.
        payment_id: Gateway payment identifier.
        payment_status: Gateway payment status (e.g. ``COMPLETED``).
        gateway_order_id: Gateway-side order identifier, when known.
        source: Which trigger produced the event (``direct`` or ``webhook``).
    """

    order_id: int
    payment_id: str
    payment_status: str
    gateway_order_id: Optional[str] = None
    source: str = "direct"

    @property
    def succeeded(self) -> bool:
        return (self.payment_status or "").upper() in SUCCESSFUL_PAYMENT_STATUSES

    def gateway_refs(self) -> dict:
        refs = {
            "gatewayPaymentId": self.payment_id,
            "gatewayPaymentStatus": self.payment_status,
        }
        if self.gateway_order_id:
            refs["gatewayOrderId"] = self.gateway_order_id
        return refs


@dataclass
class CompletionResult:
    order_id: int
    outcome: CompletionOutcome
    fulfillment_order_id: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        body = {"order_id": self.order_id, "outcome": self.outcome.value}
        if self.fulfillment_order_id:
            body["fulfillment_order_id"] = self.fulfillment_order_id
        if self.error:
            body["error"] = self.error
        return body


@dataclass(frozen=True)
class ChargeResult:
    id: str
    status: str
    gateway_order_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return (self.status or "").upper() in SUCCESSFUL_PAYMENT_STATUSES


@dataclass(frozen=True)
class RefundResult:
    id: str
    status: str


@dataclass(frozen=True)
class PartnerOrder:
    id: str
    status: str


@dataclass(frozen=True)
class ActionAvailability:
    is_available: bool
    reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "ActionAvailability":
        if not isinstance(payload, dict):
            return cls(False, None)
        raw = payload.get("isAvailable")
        available = raw is True or (isinstance(raw, str) and raw.lower() == "yes")
        return cls(available, payload.get("reason"))

    def as_payload(self) -> dict:
        body = {"isAvailable": "Yes" if self.is_available else "No"}
        if self.reason:
            body["reason"] = self.reason
        return body


@dataclass(frozen=True)
class OrderActions:
    """Per-order action availability reported by the print partner."""

    cancel: ActionAvailability
    change_recipient_details: ActionAvailability
    change_shipping_method: ActionAvailability
    update_metadata: ActionAvailability = field(default_factory=lambda: ActionAvailability(True))

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> "OrderActions":
        payload = payload or {}
        return cls(
            cancel=ActionAvailability.from_payload(payload.get("cancel")),
            change_recipient_details=ActionAvailability.from_payload(payload.get("changeRecipientDetails")),
            change_shipping_method=ActionAvailability.from_payload(payload.get("changeShippingMethod")),
            update_metadata=ActionAvailability.from_payload(payload.get("updateMetadata", {"isAvailable": "Yes"})),
        )

    def as_payload(self) -> dict:
        return {
            "cancel": self.cancel.as_payload(),
            "changeRecipientDetails": self.change_recipient_details.as_payload(),
            "changeShippingMethod": self.change_shipping_method.as_payload(),
            "updateMetadata": self.update_metadata.as_payload(),
        }


@dataclass(frozen=True)
class UpscaleContext:
    order_id: int
    item_index: int
    product_code: Optional[str] = None


@dataclass(frozen=True)
class UpscaleResult:
    print_ready_url: str
    size_bytes: int = 0


@dataclass(frozen=True)
class PreparedAsset:
    url: str
    outcome: AssetOutcome


# ---- Ports (DIP) ----
class PaymentGatewayPort(Protocol):
    """Port describing the payment gateway operations used by the domain."""

    def create_charge(self, amount_cents: int, currency: str, source_token: str,
                      idempotency_key: str, reference_id: Optional[str] = None) -> ChargeResult:
        raise NotImplementedError()

    def refund(self, payment_id: str, amount_cents: int, currency: str, reason: str,
               idempotency_key: str) -> RefundResult:
        raise NotImplementedError()

    def get_order(self, gateway_order_id: str) -> dict:
        """Return the gateway order's metadata mapping."""
        raise NotImplementedError()


class FulfillmentPort(Protocol):
    """Port describing the print partner operations used by the domain."""

    def create_order(self, request: dict) -> PartnerOrder:
        raise NotImplementedError()

    def get_actions(self, partner_order_id: str) -> OrderActions:
        raise NotImplementedError()

    def cancel(self, partner_order_id: str) -> None:
        raise NotImplementedError()

    def update_recipient(self, partner_order_id: str, recipient: dict) -> None:
        raise NotImplementedError()

    def update_shipping_method(self, partner_order_id: str, method: str) -> None:
        raise NotImplementedError()

    def update_metadata(self, partner_order_id: str, metadata: dict) -> None:
        raise NotImplementedError()


class UpscalerPort(Protocol):
    """Port describing the asset upscaling collaborator."""

    def needs_upscaling(self, url: str) -> bool:
        raise NotImplementedError()

    def upscale(self, source_url: str, context: UpscaleContext) -> UpscaleResult:
        raise NotImplementedError()
