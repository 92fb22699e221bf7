"""Tests for the sandbox payment gateway (charges, refunds, gateway orders)."""


def _charge(client, key=None, **overrides):
    body = {"amount_cents": 5000, "currency": "USD", "source_id": "cnon:card-ok", "reference_id": "42"}
    body.update(overrides)
    headers = {"Idempotency-Key": key} if key else {}
    return client.post("/charges", json=body, headers=headers)


def test_health(payments_client):
    r = payments_client.get("/health")
    assert r.status_code == 200 and r.json() == {"ok": True}


def test_charge_completes_and_links_reference(payments_client):
    r = _charge(payments_client)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "COMPLETED"
    assert body["reference_id"] == "42"

    order = payments_client.get(f"/orders/{body['order_id']}")
    assert order.json()["metadata"] == {"orderId": "42"}


def test_declined_source_returns_402(payments_client):
    r = _charge(payments_client, source_id="declined")
    assert r.status_code == 402
    assert r.json()["status"] == "FAILED"


def test_idempotent_charge_replays_same_response(payments_client):
    r1 = _charge(payments_client, key="charge-42")
    r2 = _charge(payments_client, key="charge-42")
    assert r1.status_code == r2.status_code == 200
    assert r2.json()["id"] == r1.json()["id"]
    assert r2.headers.get("Idempotent-Replay") == "true"

    d1 = _charge(payments_client, key="charge-43", source_id="declined", reference_id="43")
    d2 = _charge(payments_client, key="charge-43", source_id="declined", reference_id="43")
    assert d1.status_code == d2.status_code == 402
    assert d2.json()["id"] == d1.json()["id"]


def test_idempotency_key_reuse_with_other_payload_conflicts(payments_client):
    _charge(payments_client, key="charge-42")
    r = _charge(payments_client, key="charge-42", amount_cents=9999)
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"


def test_refunds_are_bounded_by_captured_amount(payments_client):
    payment_id = _charge(payments_client).json()["id"]
    refund = {"payment_id": payment_id, "amount_cents": 1000, "currency": "USD", "reason": "shipping downgrade"}

    r1 = payments_client.post("/refunds", json=refund, headers={"Idempotency-Key": "refund-42-shipping"})
    r2 = payments_client.post("/refunds", json=refund, headers={"Idempotency-Key": "refund-42-shipping"})
    assert r1.status_code == 200 and r1.json()["status"] == "COMPLETED"
    assert r2.json()["id"] == r1.json()["id"]
    assert payments_client.get(f"/charges/{payment_id}").json()["refunded_cents"] == 1000

    too_much = dict(refund, amount_cents=4500)
    r = payments_client.post("/refunds", json=too_much, headers={"Idempotency-Key": "refund-42-cancel"})
    assert r.status_code == 422
    assert r.json()["detail"] == "REFUND_EXCEEDS_CAPTURED"

    rest = dict(refund, amount_cents=4000)
    r = payments_client.post("/refunds", json=rest, headers={"Idempotency-Key": "refund-42-cancel-2"})
    assert r.status_code == 200
    assert payments_client.get(f"/charges/{payment_id}").json()["refunded_cents"] == 5000


def test_refund_of_declined_or_unknown_payment(payments_client):
    declined_id = _charge(payments_client, source_id="declined").json()["id"]
    r = payments_client.post("/refunds", json={"payment_id": declined_id, "amount_cents": 100, "currency": "USD"})
    assert r.status_code == 422
    assert r.json()["detail"] == "PAYMENT_NOT_COMPLETED"

    r = payments_client.post(
        "/refunds",
        json={"payment_id": "00000000-0000-0000-0000-000000000000", "amount_cents": 100, "currency": "USD"},
    )
    assert r.status_code == 404


def test_guest_checkout_order_metadata(payments_client):
    metadata = {"isGuestCheckout": "true", "customerEmail": "guest@example.com"}
    created = payments_client.post("/orders", json={"metadata": metadata})
    assert created.status_code == 201
    gw_id = created.json()["id"]

    charge = _charge(payments_client, reference_id=None, order_id=gw_id).json()
    assert charge["order_id"] == gw_id

    r = payments_client.post(f"/orders/{gw_id}", json={"metadata": {"note": "gift"}})
    assert r.json()["metadata"] == {**metadata, "note": "gift"}
    assert payments_client.get("/orders/gw_missing").status_code == 404


def test_bearer_token_is_enforced_when_configured(payments_client, monkeypatch):
    monkeypatch.setenv("PAYMENTS_API_TOKEN", "secret")
    assert _charge(payments_client).status_code == 401
    r = payments_client.post(
        "/charges",
        json={"amount_cents": 100, "currency": "USD", "source_id": "cnon:ok"},
        headers={"Authorization": "Bearer secret"},
    )
    assert r.status_code == 200


def test_request_id_is_echoed(payments_client):
    r = payments_client.get("/health", headers={"X-Request-ID": "req-9"})
    assert r.headers["X-Request-ID"] == "req-9"
