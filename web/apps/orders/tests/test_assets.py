import pytest

from apps.orders.adapters import UpscalerStub
from apps.orders.assets import AssetPreparationService, needs_upscaling
from apps.orders.domain import AssetOutcome, UpscaleContext
from apps.orders.models import OrderItemModel

from .factories import create_order


def test_needs_upscaling_markers():
    assert needs_upscaling("https://cdn.test/designs/tmp/abc.png")
    assert not needs_upscaling("https://cdn.test/orders/1/item-0-300dpi.png")
    assert not needs_upscaling("https://cdn.test/print-ready/abc.png")


def test_prepare_passthrough_does_not_call_upscaler():
    upscaler = UpscalerStub()
    out = AssetPreparationService(upscaler).prepare("https://cdn.test/x-300dpi.png", UpscaleContext(1, 0))
    assert out.outcome == AssetOutcome.PASSTHROUGH
    assert upscaler.calls == []


def test_prepare_falls_back_to_source_on_failure():
    service = AssetPreparationService(UpscalerStub(fail=True))
    out = service.prepare("https://cdn.test/designs/a.png", UpscaleContext(1, 0))
    assert out.outcome == AssetOutcome.FALLBACK
    assert out.url == "https://cdn.test/designs/a.png"


@pytest.mark.django_db
def test_prepare_order_records_outcome_and_is_not_repeated(repository):
    upscaler = UpscalerStub()
    service = AssetPreparationService(upscaler)
    order = create_order()

    urls = service.prepare_order(repository.get(order.pk), repository)
    item = OrderItemModel.objects.get(order=order)
    assert item.asset_outcome == "UPSCALED"
    assert urls == {item.pk: item.print_ready_url}
    assert item.print_ready_url.endswith("-300dpi.png")

    again = service.prepare_order(repository.get(order.pk), repository)
    assert again == urls
    assert len(upscaler.calls) == 1
