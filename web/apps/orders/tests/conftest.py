import pytest

from apps.orders.adapters import FulfillmentStub, PaymentGatewayStub, UpscalerStub
from apps.orders.assets import AssetPreparationService
from apps.orders.compensation import CompensatingActions
from apps.orders.completion import CompletionPipeline
from apps.orders.fulfillment import FulfillmentSubmitter
from apps.orders.repository import OrderRepository

from .factories import create_order, paid


@pytest.fixture
def repository():
    return OrderRepository()


@pytest.fixture
def gateway():
    return PaymentGatewayStub()


@pytest.fixture
def partner():
    return FulfillmentStub()


@pytest.fixture
def upscaler():
    return UpscalerStub()


@pytest.fixture
def pipeline(repository, partner, upscaler):
    return CompletionPipeline(
        repository=repository,
        assets=AssetPreparationService(upscaler),
        submitter=FulfillmentSubmitter(partner, repository),
    )


@pytest.fixture
def actions(partner, gateway, repository, pipeline):
    return CompensatingActions(partner, gateway, repository, pipeline=pipeline)


@pytest.fixture
def fulfilled_order(db, pipeline, repository):
    order = create_order()
    result = pipeline.run(paid(order.pk))
    assert result.fulfillment_order_id
    return repository.get(order.pk)
