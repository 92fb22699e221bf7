import pytest
from django.core.cache import caches

from apps.orders import http_adapters
from apps.orders.providers import reset_stubs


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.PAYMENT_WEBHOOK_SIGNATURE_KEY = "test-signature-key"
    settings.PAYMENT_WEBHOOK_URL = "https://shop.test/api/webhooks/payments/"
    reset_stubs()
    for alias in ("default", settings.WEBHOOK_DEDUP_CACHE):
        caches[alias].clear()
    for breaker in (http_adapters._payments_cb, http_adapters._fulfillment_cb, http_adapters._assets_cb):
        breaker.on_success()
    yield
    reset_stubs()
