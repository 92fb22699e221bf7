"""Service provider helpers wiring the completion pipeline with ports.

``USE_HTTP_ADAPTERS`` selects the httpx clients; otherwise in-process stubs
are used (tests, local development). Stubs are process singletons so their
idempotency bookkeeping survives across requests, the way the real
services' does.
"""

from functools import lru_cache

from django.conf import settings

from .adapters import FulfillmentStub, PaymentGatewayStub, UpscalerStub
from .assets import AssetPreparationService
from .compensation import CompensatingActions
from .completion import CompletionPipeline, DirectCompletionHandler, WebhookCompletionHandler
from .dedup import WebhookEventDedup
from .fulfillment import FulfillmentSubmitter
from .http_adapters import HttpFulfillmentClient, HttpPaymentGatewayClient, HttpUpscalerClient
from .repository import OrderRepository


@lru_cache(maxsize=1)
def _stubs():
    return PaymentGatewayStub(), FulfillmentStub(), UpscalerStub()


def get_ports():
    """Return ``(gateway, partner, upscaler)`` for the current settings."""
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        return HttpPaymentGatewayClient(), HttpFulfillmentClient(), HttpUpscalerClient()
    return _stubs()


def reset_stubs() -> None:
    _stubs.cache_clear()


def get_pipeline() -> CompletionPipeline:
    _, partner, upscaler = get_ports()
    repository = OrderRepository()
    return CompletionPipeline(
        repository=repository,
        assets=AssetPreparationService(upscaler),
        submitter=FulfillmentSubmitter(partner, repository),
    )


def get_direct_handler() -> DirectCompletionHandler:
    return DirectCompletionHandler(get_pipeline())


def get_webhook_handler() -> WebhookCompletionHandler:
    gateway, _, _ = get_ports()
    return WebhookCompletionHandler(
        pipeline=get_pipeline(),
        gateway=gateway,
        repository=OrderRepository(),
        dedup=WebhookEventDedup(),
        currency=getattr(settings, "ORDER_CURRENCY", "USD"),
    )


def get_compensating_actions() -> CompensatingActions:
    gateway, partner, _ = get_ports()
    return CompensatingActions(partner, gateway, OrderRepository(), pipeline=get_pipeline())
