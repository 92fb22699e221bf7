import json

import httpx
import pytest

from apps.orders.models import DiscountCode, DiscountUsage, OrderModel, ProcessingError, RefundModel
from apps.orders.providers import get_ports
from apps.orders.signatures import verify_signature
from apps.orders.exceptions import WebhookSignatureError

from .factories import (
    CHECKOUT_URL,
    checkout_payload,
    create_order,
    payment_event,
    post_webhook,
    refund_event,
    sign,
)


def test_signature_covers_url_and_body(settings):
    body = b'{"event_id":"e1"}'
    good = sign(body, settings)
    verify_signature(body, good)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body + b" ", good)
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, good, notification_url="https://elsewhere.test/hook")
    with pytest.raises(WebhookSignatureError):
        verify_signature(body, None)


@pytest.mark.django_db
def test_invalid_signature_is_rejected_without_mutation(client, settings):
    order = create_order()
    r = post_webhook(client, settings, payment_event("evt-bad", reference_id=str(order.pk)), signature="bm9wZQ==")
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_SIGNATURE"
    stored = OrderModel.objects.get(pk=order.pk)
    assert stored.status == "PENDING" and stored.metadata == {}


@pytest.mark.django_db
def test_webhook_after_direct_checkout_is_already_fulfilled(client, settings):
    r = client.post(CHECKOUT_URL, data=checkout_payload(), content_type="application/json")
    assert r.status_code == 201
    order_id = r.json()["order_id"]
    payment_id = r.json()["payment_id"]

    w = post_webhook(client, settings, payment_event("evt-1", payment_id=payment_id, reference_id=str(order_id)))
    assert w.status_code == 200
    assert w.json()["outcome"] == "ALREADY_FULFILLED"
    _, partner, _ = get_ports()
    assert len(partner.create_calls) == 1


@pytest.mark.django_db
def test_webhook_completes_order_when_direct_path_did_not(client, settings):
    order = create_order()
    r = post_webhook(client, settings, payment_event("evt-2", reference_id=str(order.pk)))
    assert r.status_code == 200
    assert r.json()["outcome"] == "FULFILLED"
    stored = OrderModel.objects.get(pk=order.pk)
    assert stored.status == "COMPLETED"
    assert stored.fulfillment_order_id


@pytest.mark.django_db
def test_duplicate_event_id_is_processed_once(client, settings):
    order = create_order()
    event = payment_event("evt-dup", reference_id=str(order.pk))

    r1 = post_webhook(client, settings, event)
    snapshot = OrderModel.objects.values().get(pk=order.pk)
    r2 = post_webhook(client, settings, event)

    assert r1.json()["status"] == "processed"
    assert r2.status_code == 200 and r2.json()["status"] == "duplicate"
    assert OrderModel.objects.values().get(pk=order.pk) == snapshot
    _, partner, _ = get_ports()
    assert len(partner.create_calls) == 1


@pytest.mark.django_db
def test_guest_checkout_creates_order_just_in_time_once(client, settings):
    gateway, partner, _ = get_ports()
    data = checkout_payload()
    data.pop("source_token")
    gateway.orders["gw_order_1"] = {
        "isGuestCheckout": "true",
        "customerEmail": "guest@example.com",
        "orderData": json.dumps(data),
    }

    r1 = post_webhook(client, settings, payment_event("evt-g1", payment_id="pay_g", gateway_order_id="gw_order_1"))
    r2 = post_webhook(client, settings, payment_event("evt-g2", payment_id="pay_g", gateway_order_id="gw_order_1"))

    assert r1.json()["outcome"] == "FULFILLED"
    assert r2.json()["outcome"] == "ALREADY_FULFILLED"
    order = OrderModel.objects.get(gateway_order_id="gw_order_1")
    assert order.user_id == "guest:guest@example.com"
    assert order.total_cents == 5000
    assert OrderModel.objects.count() == 1
    assert len(partner.create_calls) == 1


@pytest.mark.django_db
def test_order_resolved_through_gateway_metadata(client, settings):
    gateway, _, _ = get_ports()
    order = create_order()
    gateway.orders["gw_order_2"] = {"orderId": str(order.pk)}

    r = post_webhook(client, settings, payment_event("evt-m", gateway_order_id="gw_order_2"))
    assert r.json()["outcome"] == "FULFILLED"
    assert OrderModel.objects.get(pk=order.pk).gateway_order_id == "gw_order_2"


@pytest.mark.django_db
def test_transient_lookup_failure_allows_redelivery(client, settings, monkeypatch):
    gateway, _, _ = get_ports()
    order = create_order()
    gateway.orders["gw_order_3"] = {"orderId": str(order.pk)}
    event = payment_event("evt-t", gateway_order_id="gw_order_3")

    def down(gateway_order_id):
        raise httpx.ConnectError("gateway down")

    monkeypatch.setattr(gateway, "get_order", down)
    r1 = post_webhook(client, settings, event)
    assert r1.status_code == 503

    monkeypatch.undo()
    r2 = post_webhook(client, settings, event)
    assert r2.status_code == 200
    assert r2.json()["outcome"] == "FULFILLED"


@pytest.mark.django_db
def test_fulfillment_failure_still_acknowledged(client, settings, monkeypatch):
    _, partner, _ = get_ports()
    order = create_order()

    def boom(request):
        raise httpx.ReadTimeout("partner timeout")

    monkeypatch.setattr(partner, "create_order", boom)
    r = post_webhook(client, settings, payment_event("evt-f", reference_id=str(order.pk)))
    assert r.status_code == 200
    assert r.json()["outcome"] == "FAILED"
    assert ProcessingError.objects.filter(order_id=order.pk).count() == 1


@pytest.mark.django_db
def test_refund_event_updates_refund_status(client, settings):
    order = create_order()
    RefundModel.objects.create(order=order, gateway_refund_id="ref_1", amount_cents=500, currency="USD", reason="x")
    r = post_webhook(client, settings, refund_event("evt-r", "ref_1", "COMPLETED"))
    assert r.json()["status"] == "processed"
    assert RefundModel.objects.get(gateway_refund_id="ref_1").status == "COMPLETED"


@pytest.mark.django_db
def test_unknown_event_type_is_ignored(client, settings):
    r = post_webhook(client, settings, {"event_id": "evt-x", "type": "customer.created", "data": {}})
    assert r.status_code == 200
    assert r.json()["status"] == "ignored"


@pytest.mark.django_db
def test_guest_order_honours_discount_exhausted_after_payment(client, settings):
    gateway, partner, _ = get_ports()
    DiscountCode.objects.create(code="ONCE", kind="FIXED", value=500, max_uses=1, used_count=1)
    data = checkout_payload(discount_code="ONCE")
    data.pop("source_token")
    gateway.orders["gw_order_d"] = {
        "isGuestCheckout": "true",
        "customerEmail": "guest@example.com",
        "orderData": json.dumps(data),
    }

    r = post_webhook(client, settings, payment_event("evt-d", payment_id="pay_d", gateway_order_id="gw_order_d"))

    assert r.status_code == 200
    assert r.json()["outcome"] == "FULFILLED"
    order = OrderModel.objects.get(gateway_order_id="gw_order_d")
    assert order.total_cents == 4500
    assert order.discount_code.code == "ONCE"
    assert DiscountUsage.objects.filter(order=order).count() == 1
    assert len(partner.create_calls) == 1


@pytest.mark.django_db
@pytest.mark.parametrize(
    "data",
    [["not", "an", "object"], {"object": "payment"}, {"object": {"payment": ["pay_1"]}}],
)
def test_malformed_event_is_rejected_before_dedup(client, settings, data):
    order = create_order()
    bad = {"event_id": "evt-bad", "type": "payment.updated", "data": data}

    r = post_webhook(client, settings, bad)
    assert r.status_code == 400
    assert r.json()["detail"] == "INVALID_PAYLOAD"

    r = post_webhook(client, settings, payment_event("evt-bad", reference_id=str(order.pk)))
    assert r.json()["status"] == "processed"
    assert r.json()["outcome"] == "FULFILLED"


@pytest.mark.django_db
def test_events_with_plain_id_are_deduplicated(client, settings):
    _, partner, _ = get_ports()
    order = create_order()
    event = payment_event("ignored", reference_id=str(order.pk))
    event.pop("event_id")
    event["id"] = "evt-plain"

    r1 = post_webhook(client, settings, event)
    r2 = post_webhook(client, settings, event)

    assert r1.json()["event_id"] == "evt-plain"
    assert r2.json() == {"status": "duplicate", "event_id": "evt-plain"}
    assert len(partner.create_calls) == 1
