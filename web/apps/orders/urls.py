from django.urls import path

from .views import (
    CancelOrderView,
    OrderActionsView,
    OrdersCollectionView,
    OrdersPingView,
    PatchMetadataView,
    RetrieveOrderView,
    RetryFulfillmentView,
    UpdateAddressView,
    UpdateShippingView,
)

app_name = "orders"

urlpatterns = [
    path("ping/", OrdersPingView.as_view(), name="ping"),
    path("", OrdersCollectionView.as_view(), name="orders-collection"),
    path("<int:order_id>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("<int:order_id>/actions/", OrderActionsView.as_view(), name="orders-actions"),
    path("<int:order_id>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("<int:order_id>/address/", UpdateAddressView.as_view(), name="orders-address"),
    path("<int:order_id>/shipping/", UpdateShippingView.as_view(), name="orders-shipping"),
    path("<int:order_id>/metadata/", PatchMetadataView.as_view(), name="orders-metadata"),
    path("<int:order_id>/retry-fulfillment/", RetryFulfillmentView.as_view(), name="orders-retry-fulfillment"),
]
