from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ApiModel(BaseModel):
    """Accepts both the storefront's camelCase keys and snake_case."""

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


# -----------------------------
# Cart / checkout payloads
# -----------------------------


class CartItemIn(ApiModel):
    id: str = Field(..., min_length=1, description="Product ID")
    variant_id: Optional[str] = None
    quantity: int = Field(..., gt=0, description="Requested quantity")
    price: Decimal = Field(Decimal("0"), ge=0, description="Unit price")
    size: Optional[str] = None
    color: Optional[str] = None


class ShippingAddress(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class PaymentMethodChoice(ApiModel):
    type: str = Field("card", description="card | paypal (stripe is read as card)")
    token: Optional[str] = None
    saved_method_id: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return "card" if value == "stripe" else value
        return value


class CheckoutData(ApiModel):
    # userId stays optional so a missing user maps to 401 instead of 400
    user_id: Optional[str] = None
    items: List[CartItemIn] = []
    shipping_address: ShippingAddress = Field(default_factory=ShippingAddress)
    payment_method: Optional[PaymentMethodChoice] = None
    subtotal: Decimal = Field(Decimal("0"), ge=0)
    shipping: Decimal = Field(Decimal("0"), ge=0)
    tax: Decimal = Field(Decimal("0"), ge=0)
    total: Decimal = Field(Decimal("0"), ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: Decimal = Field(Decimal("0"), ge=0)

    @field_validator("payment_method", mode="before")
    @classmethod
    def payment_method_from_string(cls, value):
        # The storefront may send just "stripe" or "paypal"
        if isinstance(value, str):
            return {"type": value}
        return value


class ConfirmPaymentRequest(ApiModel):
    order_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class ConfirmStripeCheckoutRequest(ApiModel):
    payment_intent_id: Optional[str] = None
    checkout_data: Optional[CheckoutData] = None


class PayPalPaymentData(ApiModel):
    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "allow"}

    status: Optional[str] = None
    transaction_id: Optional[str] = None


class ConfirmPayPalCheckoutRequest(ApiModel):
    payment_data: Optional[PayPalPaymentData] = None
    checkout_data: Optional[CheckoutData] = None
    # Set when the pending order was created by POST /api/checkout
    order_id: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: Optional[OrderStatus] = None


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    variant_id: Optional[str] = None
    quantity: int
    price: float
    size: Optional[str] = None
    color: Optional[str] = None
    variant_name: Optional[str] = None
    total: float

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    user_id: str
    order_number: str
    status: str
    payment_status: str
    payment_method: str
    payment_intent_id: Optional[str] = None
    subtotal: float
    shipping: float
    tax: float
    discount: float
    total: float
    coupon_code: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


# -----------------------------
# Coupons
# -----------------------------


class CouponValidateRequest(ApiModel):
    code: Optional[str] = None
    cart_total: Optional[Decimal] = None


class CouponUsageRequest(ApiModel):
    coupon_id: Optional[str] = None
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    discount_amount: Optional[Decimal] = None


# -----------------------------
# Inventory
# -----------------------------


class StockCheckRequest(ApiModel):
    items: List[CartItemIn] = Field(..., min_length=1)


class ReservationRequest(ApiModel):
    user_id: Optional[str] = None
    items: List[CartItemIn] = Field(..., min_length=1)


class ReleaseRequest(ApiModel):
    user_id: Optional[str] = None


# -----------------------------
# Payment providers
# -----------------------------


class StripeIntentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = "usd"
    payment_method_id: Optional[str] = None
    customer_id: Optional[str] = None
    save_payment_method: bool = False


class SessionProduct(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    images: List[str] = []


class SessionCartItem(BaseModel):
    product: Optional[SessionProduct] = Field(
        None, validation_alias=AliasChoices("product", "producto")
    )
    quantity: int = 0


class CheckoutSessionRequest(ApiModel):
    cart_items: List[SessionCartItem] = []
    email: Optional[str] = None


class PaymentMethodLookup(ApiModel):
    payment_method_id: Optional[str] = None


class PayPalOrderRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: str = "USD"
    order_id: str = Field(..., min_length=1)


class PayPalCaptureRequest(BaseModel):
    order_id: Optional[str] = None


class SavedPaymentMethodCreate(BaseModel):
    user_id: Optional[str] = None
    type: Optional[str] = None
    provider: Optional[str] = None
    external_id: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    paypal_email: Optional[str] = None
    nickname: Optional[str] = None
    is_default: bool = False


class SavedPaymentMethodUpdate(BaseModel):
    payment_method_id: Optional[str] = None
    user_id: Optional[str] = None
    is_default: Optional[bool] = None
    nickname: Optional[str] = None


class SavedPaymentMethodOut(BaseModel):
    id: str
    user_id: str
    type: str
    provider: str
    external_id: str
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None
    paypal_email: Optional[str] = None
    nickname: Optional[str] = None
    is_default: bool
    active: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
