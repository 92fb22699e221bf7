from django.db import models


class DiscountCode(models.Model):
    class Kind(models.TextChoices):
        PERCENTAGE = "PERCENTAGE"
        FIXED = "FIXED"

    code = models.CharField(max_length=64, unique=True)
    kind = models.CharField(max_length=16, choices=Kind.choices, default=Kind.PERCENTAGE)
    # percent (0-100) for PERCENTAGE, minor units for FIXED
    value = models.PositiveIntegerField()
    max_uses = models.PositiveIntegerField(null=True, blank=True)
    used_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "discount_codes"

    def is_usable(self) -> bool:
        if not self.is_active:
            return False
        return self.max_uses is None or self.used_count < self.max_uses

    def discount_for(self, subtotal_cents: int) -> int:
        """Discount in minor units for a subtotal, never above the subtotal."""
        if self.kind == self.Kind.PERCENTAGE:
            amount = subtotal_cents * min(self.value, 100) // 100
        else:
            amount = self.value
        return max(0, min(amount, subtotal_cents))


class OrderModel(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        COMPLETED = "COMPLETED"
        CANCELED = "CANCELED"

    class Shipping(models.TextChoices):
        BUDGET = "Budget"
        STANDARD = "Standard"
        EXPRESS = "Express"
        OVERNIGHT = "Overnight"

    user_id = models.CharField(max_length=64, default="guest")
    customer_email = models.EmailField(blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    total_cents = models.PositiveIntegerField(default=0)
    discount_cents = models.PositiveIntegerField(default=0)
    currency = models.CharField(max_length=3, default="USD")
    discount_code = models.ForeignKey(
        DiscountCode, null=True, blank=True, on_delete=models.PROTECT, related_name="orders"
    )
    shipping_method = models.CharField(max_length=16, choices=Shipping.choices, default=Shipping.STANDARD)

    # Present once the partner order exists; never overwritten.
    fulfillment_order_id = models.CharField(max_length=64, unique=True, null=True, blank=True)
    # Gateway-side order id, unique so webhook redeliveries cannot create twins.
    gateway_order_id = models.CharField(max_length=64, unique=True, null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)
    available_actions = models.JSONField(null=True, blank=True)
    last_action_check = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-id"]

    def __str__(self):
        return f"Order #{self.pk} ({self.status})"


class RecipientModel(models.Model):
    order = models.OneToOneField(OrderModel, on_delete=models.CASCADE, related_name="recipient")
    name = models.CharField(max_length=200)
    email = models.EmailField(blank=True, default="")
    phone_number = models.CharField(max_length=32, blank=True, default="")
    address_line1 = models.CharField(max_length=200)
    address_line2 = models.CharField(max_length=200, blank=True, default="")
    city = models.CharField(max_length=100)
    state = models.CharField(max_length=100, blank=True, default="")
    postal_code = models.CharField(max_length=20)
    country_code = models.CharField(max_length=2)

    class Meta:
        db_table = "order_recipients"


class OrderItemModel(models.Model):
    class AssetOutcome(models.TextChoices):
        PASSTHROUGH = "PASSTHROUGH"
        UPSCALED = "UPSCALED"
        FALLBACK = "FALLBACK"

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="items")
    product_id = models.IntegerField(null=True, blank=True)
    sku = models.CharField(max_length=64)
    copies = models.PositiveIntegerField(default=1)
    price_cents = models.PositiveIntegerField(default=0)
    attributes = models.JSONField(default=dict, blank=True)
    design_url = models.CharField(max_length=1024, blank=True, default="")
    print_ready_url = models.CharField(max_length=1024, null=True, blank=True)
    asset_outcome = models.CharField(max_length=16, choices=AssetOutcome.choices, null=True, blank=True)

    class Meta:
        db_table = "order_items"
        ordering = ["id"]


class DiscountUsage(models.Model):
    discount_code = models.ForeignKey(DiscountCode, on_delete=models.PROTECT, related_name="usages")
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="discount_usages")
    user_id = models.CharField(max_length=64, null=True, blank=True)
    amount_cents = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "discount_usages"
        constraints = [
            models.UniqueConstraint(fields=["discount_code", "order"], name="uniq_discount_usage_per_order"),
        ]


class RefundModel(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="refunds")
    gateway_refund_id = models.CharField(max_length=64, unique=True)
    amount_cents = models.PositiveIntegerField()
    currency = models.CharField(max_length=3)
    reason = models.CharField(max_length=255)
    status = models.CharField(max_length=32, default="PENDING")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "refunds"
        ordering = ["id"]


class ProcessingError(models.Model):
    """Append-only log of fulfillment/refund failures for reconciliation."""

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="processing_errors")
    # fulfillment, refund or partner
    stage = models.CharField(max_length=32, default="fulfillment")
    error = models.TextField()
    retry_count = models.PositiveIntegerField(default=0)
    last_attempt = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_processing_errors"
        ordering = ["id"]


class IdempotencyKey(models.Model):
    key = models.CharField(max_length=200, primary_key=True)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
