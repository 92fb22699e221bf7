from django.urls import include, path

from apps.orders import views

urlpatterns = [
    path("", include("apps.monitoring.urls")),
    path("api/orders/", include("apps.orders.urls")),
    path("api/checkout/complete-payment/", views.CompletePaymentView.as_view(), name="complete-payment"),
    path("api/webhooks/payments/", views.PaymentWebhookView.as_view(), name="payments-webhook"),
    path("api/webhooks/fulfillment/", views.FulfillmentCallbackView.as_view(), name="fulfillment-webhook"),
]
