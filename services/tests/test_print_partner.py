"""Tests for the sandbox print partner API."""

import httpx

from services.print_partner import main

BASE = "/v4.0/orders"


def partner_request(**overrides):
    body = {
        "merchantReference": "ORDER-42",
        "shippingMethod": "Standard",
        "idempotencyKey": "order-42-fulfillment",
        "recipient": {
            "name": "Ada Lovelace",
            "email": "ada@example.com",
            "address": {
                "line1": "1 Market St",
                "postalOrZipCode": "94107",
                "countryCode": "US",
                "townOrCity": "San Francisco",
                "stateOrCounty": "CA",
            },
        },
        "items": [
            {
                "merchantReference": "item-1",
                "sku": "TEE-SS-ABC",
                "copies": 1,
                "sizing": "fillPrintArea",
                "attributes": {"color": "navy", "size": "l"},
                "assets": [{"printArea": "default", "url": "https://assets.local/orders/42/item-0-300dpi.png"}],
            }
        ],
        "metadata": {"orderId": "42"},
    }
    body.update(overrides)
    return body


def _create(client, **overrides) -> str:
    r = client.post(BASE, json=partner_request(**overrides))
    assert r.status_code == 200
    return r.json()["order"]["id"]


def test_create_order_is_idempotent(partner_client):
    r1 = partner_client.post(BASE, json=partner_request(), headers={"Idempotency-Key": "order-42-fulfillment"})
    r2 = partner_client.post(BASE, json=partner_request(), headers={"Idempotency-Key": "order-42-fulfillment"})

    assert r1.json()["outcome"] == "Created"
    assert r1.json()["order"]["status"]["stage"] == "InProgress"
    assert r2.json()["outcome"] == "AlreadyExists"
    assert r2.json()["order"]["id"] == r1.json()["order"]["id"]


def test_body_idempotency_key_is_used_without_header(partner_client):
    first = _create(partner_client)
    assert _create(partner_client) == first
    assert _create(partner_client, idempotencyKey="order-43-fulfillment", merchantReference="ORDER-43") != first


def test_key_reuse_with_other_payload_conflicts(partner_client):
    _create(partner_client)
    r = partner_client.post(BASE, json=partner_request(shippingMethod="Express"))
    assert r.status_code == 409


def test_invalid_sku_is_rejected(partner_client):
    body = partner_request()
    body["items"][0]["sku"] = "x"
    assert partner_client.post(BASE, json=body).status_code == 422


def test_actions_follow_stage(partner_client):
    oid = _create(partner_client)
    actions = partner_client.get(f"{BASE}/{oid}/actions").json()
    assert actions["cancel"] == {"isAvailable": "Yes"}

    partner_client.post(f"/v4.0/sandbox/orders/{oid}/stage", json={"stage": "InProduction"})
    actions = partner_client.get(f"{BASE}/{oid}/actions").json()
    assert actions["cancel"] == {"isAvailable": "No", "reason": "Order is in production"}
    assert actions["changeRecipientDetails"] == {"isAvailable": "Yes"}

    r = partner_client.post(f"{BASE}/{oid}/actions/cancel")
    assert r.status_code == 409
    assert r.json()["reason"] == "Order is in production"


def test_cancel_then_actions_are_closed(partner_client):
    oid = _create(partner_client)
    r = partner_client.post(f"{BASE}/{oid}/actions/cancel")
    assert r.json()["outcome"] == "Cancelled"
    assert r.json()["order"]["status"]["stage"] == "Cancelled"
    assert partner_client.get(f"{BASE}/{oid}/actions").json()["updateMetadata"]["isAvailable"] == "No"


def test_update_actions(partner_client):
    oid = _create(partner_client)
    recipient = partner_request()["recipient"]
    recipient["address"]["line2"] = "Suite 5"

    r = partner_client.post(f"{BASE}/{oid}/actions/updateRecipient", json={"recipient": recipient})
    assert r.json()["order"]["recipient"]["address"]["line2"] == "Suite 5"

    r = partner_client.post(f"{BASE}/{oid}/actions/updateShippingMethod", json={"shippingMethod": "Budget"})
    assert r.json()["order"]["shippingMethod"] == "Budget"

    r = partner_client.post(f"{BASE}/{oid}/actions/updateMetadata", json={"metadata": {"giftNote": "hi"}})
    assert r.json()["order"]["metadata"] == {"orderId": "42", "giftNote": "hi"}


def test_unknown_order_returns_404(partner_client):
    assert partner_client.get(f"{BASE}/ord_999/actions").status_code == 404
    assert partner_client.get(f"{BASE}/bogus").status_code == 404


def test_stage_change_delivers_cloudevent(partner_client, monkeypatch):
    sent = []

    class Resp:
        def raise_for_status(self):
            pass

    def fake_post(url, json=None, **kwargs):
        sent.append((url, json))
        return Resp()

    monkeypatch.setattr(main.httpx, "post", fake_post)
    oid = _create(partner_client, callbackUrl="https://shop.test/api/webhooks/fulfillment/")
    shipments = [{"id": "shp_1", "carrier": {"name": "USPS"}, "tracking": {"number": "9400"}}]

    r = partner_client.post(f"/v4.0/sandbox/orders/{oid}/stage", json={"stage": "Complete", "shipments": shipments})
    assert r.json()["callbackDelivered"] is True
    url, event = sent[0]
    assert url == "https://shop.test/api/webhooks/fulfillment/"
    assert event["type"] == "com.prodigi.order.status.stage.changed#Complete"
    assert event["data"]["order"]["id"] == oid
    assert event["data"]["order"]["shipments"] == shipments


def test_failed_callback_delivery_keeps_stage(partner_client, monkeypatch):
    def down(url, json=None, **kwargs):
        raise httpx.ConnectError("shop down")

    monkeypatch.setattr(main.httpx, "post", down)
    oid = _create(partner_client, callbackUrl="https://shop.test/api/webhooks/fulfillment/")
    r = partner_client.post(f"/v4.0/sandbox/orders/{oid}/stage", json={"stage": "InProduction"})
    assert r.json()["callbackDelivered"] is False
    assert partner_client.get(f"{BASE}/{oid}").json()["order"]["status"]["stage"] == "InProduction"


def test_api_key_is_enforced_when_configured(partner_client, monkeypatch):
    monkeypatch.setenv("PARTNER_API_KEY", "k-123")
    assert partner_client.post(BASE, json=partner_request()).status_code == 401
    r = partner_client.post(BASE, json=partner_request(), headers={"X-API-Key": "k-123"})
    assert r.status_code == 200
