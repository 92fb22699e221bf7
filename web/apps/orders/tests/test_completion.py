import httpx
import pytest

from apps.orders.adapters import FulfillmentStub, UpscalerStub
from apps.orders.assets import AssetPreparationService
from apps.orders.completion import CompletionPipeline, DirectCompletionHandler
from apps.orders.domain import (
    CLAIM_KEY_FIELD,
    ChargeResult,
    CompletionOutcome,
)
from apps.orders.fulfillment import FulfillmentSubmitter
from apps.orders.models import DiscountCode, DiscountUsage, OrderModel, ProcessingError

from .factories import create_order, paid


def _pipeline(repository, partner, upscaler):
    return CompletionPipeline(repository, AssetPreparationService(upscaler), FulfillmentSubmitter(partner, repository))


@pytest.mark.django_db
def test_order_42_direct_then_webhook(repository, partner):
    order = create_order()
    assert order.total_cents == 5000
    pipeline = _pipeline(repository, partner, UpscalerStub(fail=True))

    direct = DirectCompletionHandler(pipeline).handle(order.pk, ChargeResult("pay_42", "COMPLETED"))
    webhook = pipeline.run(paid(order.pk, payment_id="pay_42", source="webhook"))

    assert direct.outcome == CompletionOutcome.FULFILLED
    assert webhook.outcome == CompletionOutcome.ALREADY_FULFILLED
    assert len(partner.create_calls) == 1
    line = partner.create_calls[0]["items"][0]
    assert line["sku"] == "TEE-SS-ABC"
    assert line["assets"][0]["url"] == "https://cdn.test/designs/tmp/abc.png"

    stored = OrderModel.objects.get(pk=order.pk)
    assert stored.status == "COMPLETED"
    assert stored.fulfillment_order_id == direct.fulfillment_order_id
    assert stored.metadata["gatewayPaymentId"] == "pay_42"
    assert CLAIM_KEY_FIELD not in stored.metadata
    assert stored.items.get().asset_outcome == "FALLBACK"


@pytest.mark.django_db
def test_concurrent_trigger_during_submission_sees_claim(repository, upscaler):
    inner = {}

    class ReentrantPartner(FulfillmentStub):
        def create_order(self, request):
            # The second trigger arrives while the first is mid-submission.
            inner["result"] = pipeline.run(paid(order.pk, source="webhook"))
            return super().create_order(request)

    partner = ReentrantPartner()
    pipeline = _pipeline(repository, partner, upscaler)
    order = create_order()

    outer = pipeline.run(paid(order.pk))

    assert outer.outcome == CompletionOutcome.FULFILLED
    assert inner["result"].outcome == CompletionOutcome.ALREADY_CLAIMED
    assert len(partner.create_calls) == 1


@pytest.mark.django_db
def test_failure_is_recorded_and_claim_released_then_retry_succeeds(repository, upscaler):
    class FlakyPartner(FulfillmentStub):
        fail = True

        def create_order(self, request):
            if self.fail:
                raise httpx.ConnectError("partner down")
            return super().create_order(request)

    partner = FlakyPartner()
    pipeline = _pipeline(repository, partner, upscaler)
    order = create_order()

    first = pipeline.run(paid(order.pk))
    stored = OrderModel.objects.get(pk=order.pk)
    assert first.outcome == CompletionOutcome.FAILED
    assert stored.status == "COMPLETED"
    assert stored.fulfillment_order_id is None
    assert CLAIM_KEY_FIELD not in stored.metadata
    assert "partner down" in stored.metadata["fulfillmentError"]
    assert ProcessingError.objects.filter(order=order).count() == 1

    partner.fail = False
    second = pipeline.run(paid(order.pk, source="webhook"))
    stored.refresh_from_db()
    assert second.outcome == CompletionOutcome.FULFILLED
    assert stored.fulfillment_order_id == second.fulfillment_order_id
    assert "fulfillmentError" not in stored.metadata
    # The upscaled asset from the failed attempt is reused.
    assert len(upscaler.calls) == 1


@pytest.mark.django_db
def test_validation_error_does_not_reach_partner(repository, partner, upscaler):
    order = create_order(items=[{"sku": "US-TEE-SS-ABC", "price_cents": 100, "color": "rainbow", "design_url": "https://cdn.test/a.png"}])
    result = _pipeline(repository, partner, upscaler).run(paid(order.pk))
    assert result.outcome == CompletionOutcome.FAILED
    assert "Unsupported color" in result.error
    assert partner.create_calls == []


@pytest.mark.django_db
def test_non_completed_payment_stamps_refs_only(pipeline, partner):
    order = create_order()
    result = pipeline.run(paid(order.pk, status="APPROVED"))
    stored = OrderModel.objects.get(pk=order.pk)
    assert result.outcome == CompletionOutcome.PAYMENT_NOT_COMPLETED
    assert stored.status == "PENDING"
    assert stored.metadata["gatewayPaymentStatus"] == "APPROVED"
    assert partner.create_calls == []


@pytest.mark.django_db
def test_late_failed_status_does_not_downgrade_completed_order(pipeline):
    order = create_order()
    pipeline.run(paid(order.pk))
    pipeline.run(paid(order.pk, status="FAILED", source="webhook"))
    stored = OrderModel.objects.get(pk=order.pk)
    assert stored.status == "COMPLETED"
    assert stored.metadata["gatewayPaymentStatus"] == "COMPLETED"


@pytest.mark.django_db
def test_canceled_order_is_not_fulfilled(pipeline, partner):
    order = create_order()
    OrderModel.objects.filter(pk=order.pk).update(status="CANCELED")
    result = pipeline.run(paid(order.pk))
    assert result.outcome == CompletionOutcome.ORDER_CANCELED
    assert partner.create_calls == []


@pytest.mark.django_db
def test_discount_usage_recorded_once_across_both_paths(pipeline):
    DiscountCode.objects.create(code="SAVE10", kind="PERCENTAGE", value=10)
    order = create_order(discount_code="save10")
    assert order.discount_cents == 400
    assert order.total_cents == 4600

    pipeline.run(paid(order.pk))
    pipeline.run(paid(order.pk, source="webhook"))

    assert DiscountUsage.objects.filter(order=order).count() == 1
    assert DiscountCode.objects.get(code="SAVE10").used_count == 1
