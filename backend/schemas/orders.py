# schemas/orders.py
# ============================================================================
# STOREFRONT CHECKOUT — ORDER SCHEMAS
# ============================================================================
# Wire payloads for the checkout endpoint and the persisted Order / Order Item
# records. Amounts are integer minor-currency units throughout.
# ============================================================================

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# ============================================================================
# SECTION 2: CHECKOUT REQUEST
# ============================================================================

class Address(BaseModel):
    """Postal address. Keys are camelCase on the wire, as the storefront sends them."""
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(alias="firstName", min_length=1)
    last_name: str = Field(alias="lastName", min_length=1)
    address: str = Field(min_length=1)
    address_complement: Optional[str] = Field(default=None, alias="addressComplement")
    city: str = Field(min_length=1)
    postal_code: str = Field(alias="postalCode", min_length=1)
    country: str = Field(min_length=1)
    phone: Optional[str] = None


class OrderItemInput(BaseModel):
    """One submitted cart line"""
    product_id: str = Field(min_length=1)
    product_variant_id: Optional[str] = None
    product_name: str = Field(min_length=1)
    variant_name: Optional[str] = None
    quantity: int = Field(ge=1)
    unit_price: int = Field(ge=0)
    total_price: int = Field(ge=0)

    @model_validator(mode="after")
    def check_line_total(self) -> "OrderItemInput":
        if self.total_price != self.unit_price * self.quantity:
            raise ValueError(
                f"total_price {self.total_price} != unit_price * quantity "
                f"({self.unit_price} * {self.quantity}) for product {self.product_id}"
            )
        return self


class OrderData(BaseModel):
    user_id: str = Field(min_length=1)
    total_amount: int = Field(ge=0)
    shipping_address: Address
    billing_address: Optional[Address] = None
    notes: Optional[str] = None
    order_items: List[OrderItemInput] = Field(min_length=1)

    @model_validator(mode="after")
    def check_total(self) -> "OrderData":
        items_total = sum(item.total_price for item in self.order_items)
        if self.total_amount != items_total:
            raise ValueError(
                f"total_amount {self.total_amount} does not match sum of item totals {items_total}"
            )
        return self


class CheckoutRequest(BaseModel):
    """Body of POST /functions/v1/create-payment-session"""
    model_config = ConfigDict(populate_by_name=True)

    order_data: OrderData = Field(alias="orderData")
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)


class CheckoutSession(BaseModel):
    """Checkout session creation result"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(serialization_alias="sessionId")
    url: str
    order_id: str = Field(serialization_alias="orderId")


# ============================================================================
# SECTION 3: PERSISTED RECORDS
# ============================================================================

class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: str
    product_variant_id: Optional[str] = None
    product_name: str
    variant_name: Optional[str] = None
    quantity: int
    unit_price: int
    total_price: int
    created_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        if self.variant_name:
            return f"{self.product_name} - {self.variant_name}"
        return self.product_name


class Order(BaseModel):
    id: str
    user_id: str
    order_number: Optional[str] = None
    total_amount: int
    currency: str = "eur"
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    notes: Optional[str] = None
    stripe_session_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItem] = Field(default_factory=list)


class StatusUpdate(BaseModel):
    """Body of PATCH /api/orders/{order_id}/status"""
    status: OrderStatus
