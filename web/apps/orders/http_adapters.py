"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the domain ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (payments, fulfillment, assets) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Idempotency: every mutating call that the domain gives a key to carries
    it as an ``Idempotency-Key`` header, so a retried request maps to the
    same charge, refund or partner order.
"""

import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .assets import needs_upscaling
from .domain import (
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
from .exceptions import CircuitOpenError

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; stays HALF_OPEN while a
      single probe is in flight; transitions back to OPEN on failure.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        """Current breaker state with time-based transition handling."""
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                # allow only one concurrent probe
                if self._half_open_probe_in_flight:
                    raise CircuitOpenError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        """Record a successful call and close/reset the breaker."""
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        """Record a failed call and open the breaker if threshold exceeded."""
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        """Release any HALF_OPEN probe flag after a call finishes."""
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
_payments_cb = _breaker("payments")
_fulfillment_cb = _breaker("fulfillment")
_assets_cb = _breaker("assets")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update({k: v for k, v in extra.items() if v is not None})
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retries are attempted only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


class _ServiceClient:
    """Shared request loop: breaker precheck, retries, header propagation."""

    breaker: CircuitBreaker

    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def auth_headers(self) -> dict:
        return {}

    def _send(self, method: str, path: str, payload: Optional[dict] = None,
              idempotency_key: Optional[str] = None, accept: tuple = ()):
        """Send one logical request, retrying transport errors and 5xx.

        Responses below 400, or with a status listed in ``accept`` (business
        outcomes such as 402 or 404), are returned and count as breaker
        successes. Other 4xx raise immediately without touching the breaker.

        Raises:
            CircuitOpenError: When the breaker refuses the call.
            httpx.RequestError: For transport errors after retries.
            httpx.HTTPStatusError: For non-accepted error responses.
        """
        max_attempts, backoff = _retry_policy()
        cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
        tries = 0

        state = self.breaker.before_call()
        headers = _request_headers(
            {
                **self.auth_headers(),
                "Idempotency-Key": idempotency_key,
                "X-Circuit-State": state,
                "X-Retry-Count": "0",
            }
        )
        url = f"{self.base_url}{path}"

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        if method == "GET":
                            resp = client.get(url, headers=headers)
                        else:
                            resp = client.post(url, json=payload or {}, headers=headers)
                        if resp.status_code < 400 or resp.status_code in accept:
                            self.breaker.on_success()
                            return resp
                        if not _should_retry(resp, None):
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_attempts or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    time.sleep(min(backoff * (2 ** (tries - 1)), cap))
        finally:
            self.breaker.on_finish()


# ---------------- Payment gateway ---------------- #

class HttpPaymentGatewayClient(_ServiceClient, PaymentGatewayPort):
    """HTTP client for the payment gateway."""

    breaker = _payments_cb

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(base_url or settings.PAYMENTS_BASE_URL, timeout)

    def auth_headers(self) -> dict:
        token = getattr(settings, "PAYMENTS_API_TOKEN", "")
        return {"Authorization": f"Bearer {token}"} if token else {}

    def create_charge(self, amount_cents: int, currency: str, source_token: str,
                      idempotency_key: str, reference_id: Optional[str] = None) -> ChargeResult:
        """Create a charge.

        A 402 (declined) is a business outcome and returns a FAILED result
        rather than raising.
        """
        payload = {
            "amount_cents": amount_cents,
            "currency": currency,
            "source_id": source_token,
            "reference_id": reference_id,
        }
        resp = self._send("POST", "/charges", payload, idempotency_key=idempotency_key, accept=(402,))
        data = resp.json()
        if resp.status_code == 402:
            return ChargeResult(id=data.get("id") or "", status=data.get("status") or "FAILED",
                                gateway_order_id=data.get("order_id"))
        return ChargeResult(id=data["id"], status=data.get("status", ""), gateway_order_id=data.get("order_id"))

    def refund(self, payment_id: str, amount_cents: int, currency: str, reason: str,
               idempotency_key: str) -> RefundResult:
        payload = {
            "payment_id": payment_id,
            "amount_cents": amount_cents,
            "currency": currency,
            "reason": reason,
        }
        data = self._send("POST", "/refunds", payload, idempotency_key=idempotency_key).json()
        return RefundResult(id=data["id"], status=data.get("status", "PENDING"))

    def get_order(self, gateway_order_id: str) -> dict:
        resp = self._send("GET", f"/orders/{gateway_order_id}", accept=(404,))
        if resp.status_code == 404:
            return {}
        return resp.json().get("metadata") or {}


# ---------------- Print partner ---------------- #

class HttpFulfillmentClient(_ServiceClient, FulfillmentPort):
    """HTTP client for the print partner's order API."""

    breaker = _fulfillment_cb

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(base_url or settings.FULFILLMENT_BASE_URL, timeout)

    def auth_headers(self) -> dict:
        key = getattr(settings, "FULFILLMENT_API_KEY", "")
        return {"X-API-Key": key} if key else {}

    def create_order(self, request: dict) -> PartnerOrder:
        data = self._send("POST", "/orders", request, idempotency_key=request.get("idempotencyKey")).json()
        order = data.get("order") or {}
        stage = (order.get("status") or {}).get("stage") or data.get("outcome", "")
        return PartnerOrder(id=order.get("id", ""), status=stage)

    def get_actions(self, partner_order_id: str) -> OrderActions:
        data = self._send("GET", f"/orders/{partner_order_id}/actions").json()
        return OrderActions.from_payload(data)

    def cancel(self, partner_order_id: str) -> None:
        self._send("POST", f"/orders/{partner_order_id}/actions/cancel")

    def update_recipient(self, partner_order_id: str, recipient: dict) -> None:
        self._send("POST", f"/orders/{partner_order_id}/actions/updateRecipient", {"recipient": recipient})

    def update_shipping_method(self, partner_order_id: str, method: str) -> None:
        self._send("POST", f"/orders/{partner_order_id}/actions/updateShippingMethod", {"shippingMethod": method})

    def update_metadata(self, partner_order_id: str, metadata: dict) -> None:
        self._send("POST", f"/orders/{partner_order_id}/actions/updateMetadata", {"metadata": metadata})


# ---------------- Asset upscaler ---------------- #

class HttpUpscalerClient(_ServiceClient, UpscalerPort):
    """HTTP client for the asset upscaling service."""

    breaker = _assets_cb

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(base_url or settings.ASSETS_BASE_URL, timeout)

    def needs_upscaling(self, url: str) -> bool:
        return needs_upscaling(url)

    def upscale(self, source_url: str, context: UpscaleContext) -> UpscaleResult:
        payload = {
            "source_url": source_url,
            "order_id": context.order_id,
            "item_index": context.item_index,
            "product_code": context.product_code,
        }
        data = self._send("POST", "/upscale", payload).json()
        return UpscaleResult(print_ready_url=data.get("print_ready_url", ""), size_bytes=data.get("size_bytes", 0))
