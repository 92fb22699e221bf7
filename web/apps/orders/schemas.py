"""Pydantic schemas for the orders API.

Request bodies (checkout, compensating actions) and the guest order data
carried in the gateway order's metadata are validated here; views never
read raw request dicts past these models.
"""

import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .domain import ShippingMethod

SKU_RE = re.compile(r"^[A-Z0-9_-]{3,64}$")
COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


class ShippingAddressIn(BaseModel):
    """Recipient of the shipment.

    Attributes:
        country: ISO 3166-1 alpha-2 code, normalized to uppercase.
    """

    full_name: str = Field(min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    address_line1: str = Field(min_length=1, max_length=200)
    address_line2: Optional[str] = Field(default=None, max_length=200)
    city: str = Field(min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=2)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        v2 = v.upper()
        if not COUNTRY_RE.match(v2):
            raise ValueError("Invalid country code")
        return v2


class CheckoutItemIn(BaseModel):
    """One line of the checkout.

    Attributes:
        sku: Internal SKU, may carry a region prefix (``US-``, ``GLOBAL-``).
            Normalized to uppercase.
        copies: Units of this item.
        price_cents: Unit price in minor units.
        design_url: Customer design as uploaded (screen resolution).
        print_ready_url: Already print-ready asset, when the storefront has one.
    """

    sku: str = Field(min_length=3, max_length=64)
    product_id: Optional[int] = None
    copies: int = Field(default=1, gt=0, le=100)
    price_cents: int = Field(ge=0)
    color: Optional[str] = Field(default=None, max_length=50)
    size: Optional[str] = Field(default=None, max_length=10)
    design_url: Optional[str] = Field(default=None, max_length=1024)
    print_ready_url: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("sku")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        v2 = v.strip().upper()
        if not SKU_RE.match(v2):
            raise ValueError("Invalid SKU format")
        return v2

    def attributes(self) -> dict:
        return {k: v for k, v in (("color", self.color), ("size", self.size)) if v}


class CompletePaymentDTO(BaseModel):
    """Checkout body for ``POST /api/checkout/complete-payment/``."""

    source_token: str = Field(min_length=1, max_length=255)
    items: list[CheckoutItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    discount_code: Optional[str] = Field(default=None, max_length=64)


class GuestOrderData(BaseModel):
    """Order data a guest checkout stores in the gateway order's metadata."""

    items: list[CheckoutItemIn] = Field(min_length=1)
    shipping_address: ShippingAddressIn
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    discount_code: Optional[str] = None


class AddressUpdateDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=32)
    address_line1: Optional[str] = Field(default=None, min_length=1, max_length=200)
    address_line2: Optional[str] = Field(default=None, max_length=200)
    city: Optional[str] = Field(default=None, min_length=1, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=2)


class ShippingUpdateDTO(BaseModel):
    shipping_method: ShippingMethod


class CancelOrderDTO(BaseModel):
    reason: str = Field(default="Order canceled", min_length=1, max_length=255)


class MetadataPatchDTO(BaseModel):
    metadata: dict = Field(min_length=1)


class OrderItemReadDTO(BaseModel):
    id: int
    sku: str
    copies: int
    price_cents: int
    attributes: dict
    print_ready_url: Optional[str] = None
    asset_outcome: Optional[str] = None


class OrderReadDTO(BaseModel):
    id: int
    status: str
    total_cents: int
    discount_cents: int
    currency: str
    shipping_method: str
    fulfillment_order_id: Optional[str] = None
    metadata: Optional[dict] = None
    items: Optional[list[OrderItemReadDTO]] = None
    created_at: datetime

    @classmethod
    def from_model(cls, order, detail: bool = False) -> "OrderReadDTO":
        data = {
            "id": order.pk,
            "status": order.status,
            "total_cents": order.total_cents,
            "discount_cents": order.discount_cents,
            "currency": order.currency,
            "shipping_method": order.shipping_method,
            "fulfillment_order_id": order.fulfillment_order_id,
            "created_at": order.created_at,
        }
        if detail:
            data["metadata"] = order.metadata
            data["items"] = [
                {
                    "id": i.pk,
                    "sku": i.sku,
                    "copies": i.copies,
                    "price_cents": i.price_cents,
                    "attributes": i.attributes or {},
                    "print_ready_url": i.print_ready_url,
                    "asset_outcome": i.asset_outcome,
                }
                for i in order.items.all()
            ]
        return cls.model_validate(data)
