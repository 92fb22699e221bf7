"""Builders shared by the orders tests."""

import json

from apps.orders.domain import PaymentConfirmed
from apps.orders.repository import OrderRepository
from apps.orders.schemas import CompletePaymentDTO
from apps.orders.signatures import compute_signature

WEBHOOK_URL = "/api/webhooks/payments/"
CHECKOUT_URL = "/api/checkout/complete-payment/"


def checkout_payload(**overrides) -> dict:
    payload = {
        "source_token": "cnon:card-nonce-ok",
        "items": [
            {
                "sku": "US-TEE-SS-ABC",
                "product_id": 7,
                "copies": 1,
                "price_cents": 4000,
                "color": "Navy Blue",
                "size": "L",
                "design_url": "https://cdn.test/designs/tmp/abc.png",
            }
        ],
        "shipping_address": {
            "full_name": "Ada Lovelace",
            "email": "ada@example.com",
            "phone": "+14155550100",
            "address_line1": "1 Market St",
            "city": "San Francisco",
            "state": "CA",
            "postal_code": "94107",
            "country": "US",
        },
        "shipping_method": "Standard",
    }
    payload.update(overrides)
    return payload


def create_order(**overrides):
    dto = CompletePaymentDTO.model_validate(checkout_payload(**overrides))
    return OrderRepository().create_from_checkout(dto)


def paid(order_id, payment_id="pay_1", status="COMPLETED", source="direct", gateway_order_id=None):
    return PaymentConfirmed(
        order_id=order_id,
        payment_id=payment_id,
        payment_status=status,
        gateway_order_id=gateway_order_id,
        source=source,
    )


def payment_event(event_id, payment_id="pay_1", status="COMPLETED", reference_id=None,
                  gateway_order_id=None, event_type="payment.updated") -> dict:
    return {
        "merchant_id": "MERCHANT",
        "type": event_type,
        "event_id": event_id,
        "created_at": "2026-10-19T10:00:00Z",
        "data": {
            "type": "payment",
            "id": payment_id,
            "object": {
                "payment": {
                    "id": payment_id,
                    "status": status,
                    "reference_id": reference_id,
                    "order_id": gateway_order_id,
                }
            },
        },
    }


def refund_event(event_id, refund_id, status) -> dict:
    return {
        "merchant_id": "MERCHANT",
        "type": "refund.updated",
        "event_id": event_id,
        "data": {"type": "refund", "id": refund_id, "object": {"refund": {"id": refund_id, "status": status}}},
    }


def sign(body: bytes, settings) -> str:
    return compute_signature(body, settings.PAYMENT_WEBHOOK_SIGNATURE_KEY, settings.PAYMENT_WEBHOOK_URL)


def post_webhook(client, settings, payload: dict, signature: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    sig = signature if signature is not None else sign(body, settings)
    return client.post(
        WEBHOOK_URL, data=body, content_type="application/json", HTTP_X_SQUARE_HMACSHA256_SIGNATURE=sig
    )
