import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    variants = relationship("ProductVariant", back_populates="product")


class ProductVariant(Base):
    __tablename__ = "product_variants"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_variant_stock_non_negative"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    color = Column(String(50))
    size = Column(String(20))
    stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="variants")

    @property
    def label(self) -> str:
        return f"{self.color or ''} {self.size or ''}".strip()


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    order_number = Column(String(40), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_status = Column(String(20), nullable=False, default="pending")
    payment_method = Column(String(20), nullable=False, default="stripe")
    # Stripe PaymentIntent id or PayPal capture id
    payment_intent_id = Column(String(255), index=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    shipping = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    discount = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False)
    coupon_code = Column(String(50))

    address = Column(JSON)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), index=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    size = Column(String(20))
    color = Column(String(50))
    variant_name = Column(String(80))
    total = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(50), nullable=False, unique=True, index=True)
    discount_type = Column(String(20), nullable=False)  # percentage | fixed
    discount_value = Column(Numeric(10, 2), nullable=False)
    usage_limit = Column(Integer)
    used_count = Column(Integer, nullable=False, default=0)
    minimum_amount = Column(Numeric(10, 2))
    max_discount = Column(Numeric(10, 2))
    valid_from = Column(DateTime(timezone=True))
    valid_until = Column(DateTime(timezone=True))
    is_active = Column(Boolean, nullable=False, default=True)


class CouponUsage(Base):
    __tablename__ = "coupon_usage"

    id = Column(String(36), primary_key=True, default=_uuid)
    coupon_id = Column(String(36), ForeignKey("coupons.id"), nullable=False, index=True)
    order_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    discount_amount = Column(Numeric(10, 2))
    used_at = Column(DateTime(timezone=True), server_default=func.now())


class StockReservation(Base):
    """A short-lived hold on variant stock taken while the user checks out.

    Stock is not decremented when reserving; availability is
    variant.stock - sum(active reservations held by other users).
    """

    __tablename__ = "stock_reservations"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=False, index=True)
    color = Column(String(50))
    size = Column(String(20))
    quantity = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserPaymentMethod(Base):
    __tablename__ = "user_payment_methods"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # card | paypal
    provider = Column(String(20), nullable=False)  # stripe | paypal
    external_id = Column(String(255), nullable=False)
    card_last_four = Column(String(4))
    card_brand = Column(String(30))
    card_exp_month = Column(Integer)
    card_exp_year = Column(Integer)
    paypal_email = Column(String(255))
    nickname = Column(String(100))
    is_default = Column(Boolean, nullable=False, default=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
