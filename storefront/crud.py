import datetime as dt
import logging
import secrets
import string
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from .models import (
    Coupon,
    CouponUsage,
    Order,
    OrderItem,
    ProductVariant,
    StockReservation,
    UserPaymentMethod,
)
from .pricing import line_total, round_money
from .schemas import CartItemIn, CheckoutData

logger = logging.getLogger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    # Some drivers hydrate timestamptz as naive values; treat those as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


# -----------------------------
# Variants / stock
# -----------------------------


def get_variant(db: Session, variant_id: str) -> Optional[ProductVariant]:
    return db.query(ProductVariant).filter(ProductVariant.id == variant_id).first()


def validate_stock(db: Session, items: Sequence[CartItemIn]) -> None:
    """Raise ValueError with a readable message if any item cannot be served.

    Lines for the same variant are summed before the comparison. The whole
    cart is rejected on the first failing variant.
    """
    requested: Dict[str, int] = {}
    for item in items:
        if not item.variant_id:
            raise ValueError(f"Variant not specified for product {item.id}")
        requested[item.variant_id] = requested.get(item.variant_id, 0) + int(item.quantity)

    for variant_id, quantity in requested.items():
        variant = get_variant(db, variant_id)
        if variant is None:
            raise ValueError(f"Could not find variant {variant_id}")

        if variant.stock < quantity:
            raise ValueError(
                f"Insufficient stock for variant {variant.label}. "
                f"Available: {variant.stock}, requested: {quantity}"
            )


def check_items_stock(db: Session, items: Sequence[CartItemIn]) -> List[Dict[str, Any]]:
    checks = []
    for item in items:
        variant = get_variant(db, item.variant_id) if item.variant_id else None
        available = int(variant.stock) if variant is not None else 0
        checks.append(
            {
                "productId": item.id,
                "variantId": item.variant_id,
                "requestedQuantity": item.quantity,
                "availableStock": available,
                "isAvailable": variant is not None and available >= item.quantity,
            }
        )
    return checks


def decrement_variant_stock(db: Session, variant_id: str, quantity: int) -> bool:
    """Atomically subtract ``quantity`` from a variant, never going below zero.

    Returns False when the variant does not exist.
    """
    if quantity <= 0:
        raise ValueError("quantity must be > 0")

    updated = (
        db.query(ProductVariant)
        .filter(ProductVariant.id == variant_id)
        .update(
            {
                ProductVariant.stock: case(
                    (ProductVariant.stock > quantity, ProductVariant.stock - quantity),
                    else_=0,
                )
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def decrement_stock_for_order(db: Session, order: Order) -> List[str]:
    """Best-effort stock decrement for every item of a paid order.

    Returns the variant ids that could not be updated; failures are logged
    and never raised.
    """
    failed: List[str] = []
    for item in list(order.items or []):
        if not item.variant_id:
            continue
        try:
            if not decrement_variant_stock(db, item.variant_id, int(item.quantity)):
                logger.warning(
                    "Variant %s not found while decrementing stock for order %s",
                    item.variant_id,
                    order.id,
                )
                failed.append(item.variant_id)
        except Exception:
            db.rollback()
            logger.exception(
                "Failed to decrement stock for variant %s (order %s)", item.variant_id, order.id
            )
            failed.append(item.variant_id)
    return failed


# -----------------------------
# Orders
# -----------------------------


def _address_snapshot(data: CheckoutData) -> Dict[str, Any]:
    return data.shipping_address.model_dump()


def create_order(
    db: Session,
    data: CheckoutData,
    *,
    status: str = "pending",
    payment_status: str = "pending",
    payment_method: str = "stripe",
    payment_intent_id: Optional[str] = None,
) -> Order:
    """Insert an order and its items in a single transaction.

    If any item fails to insert, the order row is rolled back with it.
    """
    db_order = Order(
        user_id=data.user_id,
        order_number=generate_order_number(),
        status=status,
        payment_status=payment_status,
        payment_method=payment_method,
        payment_intent_id=payment_intent_id,
        subtotal=round_money(data.subtotal),
        shipping=round_money(data.shipping),
        tax=round_money(data.tax),
        discount=round_money(data.coupon_discount),
        total=round_money(data.total),
        coupon_code=data.coupon_code.upper() if data.coupon_code else None,
        address=_address_snapshot(data),
    )
    try:
        db.add(db_order)
        db.flush()  # Get order ID without committing

        for item in data.items:
            db.add(
                OrderItem(
                    order_id=db_order.id,
                    product_id=item.id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    price=round_money(item.price),
                    size=item.size,
                    color=item.color,
                    variant_name=f"{item.size} {item.color}".strip() if item.size and item.color else "",
                    total=line_total(item.price, item.quantity),
                )
            )
        db.flush()
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    return db_order


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_pending_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id, Order.status == "pending").first()


def get_order_by_payment_reference(db: Session, reference: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_intent_id == reference).first()


def get_orders_by_user(db: Session, user_id: str, skip: int = 0, limit: int = 100) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.user_id == user_id)
        .order_by(Order.created_at.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_user_order_count(db: Session, user_id: str) -> int:
    return db.query(Order).filter(Order.user_id == user_id).count()


def mark_order_paid(db: Session, order_id: str, payment_reference: str) -> bool:
    """Flip a pending order to paid. Returns False if it was no longer pending."""
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.status == "pending")
        .update(
            {
                Order.status: "paid",
                Order.payment_status: "completed",
                Order.payment_intent_id: payment_reference,
                Order.updated_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated == 1


def mark_order_failed(db: Session, order_id: str) -> None:
    db.query(Order).filter(Order.id == order_id, Order.status == "pending").update(
        {Order.status: "failed", Order.payment_status: "failed", Order.updated_at: utcnow()},
        synchronize_session=False,
    )
    db.commit()


def set_payment_reference(db: Session, order_id: str, payment_reference: str) -> None:
    db.query(Order).filter(Order.id == order_id).update(
        {Order.payment_intent_id: payment_reference}, synchronize_session=False
    )
    db.commit()


def update_order_status(db: Session, order_id: str, new_status: str) -> Optional[Order]:
    db_order = get_order(db, order_id)
    if not db_order:
        return None

    db_order.status = new_status
    db_order.updated_at = utcnow()
    db.commit()
    db.refresh(db_order)
    return db_order


# -----------------------------
# Coupons
# -----------------------------


def get_active_coupon(db: Session, code: str, *, now: Optional[dt.datetime] = None) -> Optional[Coupon]:
    """Return the active coupon for ``code`` if ``now`` falls in its validity window."""
    normalized = (code or "").strip().upper()
    if not normalized:
        return None

    coupon = (
        db.query(Coupon)
        .filter(Coupon.code == normalized, Coupon.is_active.is_(True))
        .first()
    )
    if coupon is None:
        return None

    # Window is checked in Python after normalizing to UTC.
    now = now or utcnow()
    valid_from = as_utc(coupon.valid_from)
    valid_until = as_utc(coupon.valid_until)
    if valid_from is not None and now < valid_from:
        return None
    if valid_until is not None and now > valid_until:
        return None
    return coupon


def get_coupon(db: Session, coupon_id: str) -> Optional[Coupon]:
    return db.query(Coupon).filter(Coupon.id == coupon_id).first()


def coupon_limit_reached(coupon: Coupon) -> bool:
    # A null or zero limit means unlimited.
    return bool(coupon.usage_limit) and coupon.used_count >= coupon.usage_limit


def increment_coupon_usage(db: Session, coupon_id: str) -> bool:
    """Increment used_count in one statement, only while under usage_limit."""
    updated = (
        db.query(Coupon)
        .filter(
            Coupon.id == coupon_id,
            or_(
                Coupon.usage_limit.is_(None),
                Coupon.usage_limit == 0,
                Coupon.used_count < Coupon.usage_limit,
            ),
        )
        .update({Coupon.used_count: Coupon.used_count + 1}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def record_coupon_usage(
    db: Session,
    *,
    coupon_id: str,
    order_id: str,
    user_id: str,
    discount_amount: Optional[Decimal],
    commit: bool = True,
) -> CouponUsage:
    usage = CouponUsage(
        coupon_id=coupon_id,
        order_id=order_id,
        user_id=user_id,
        discount_amount=round_money(discount_amount) if discount_amount is not None else None,
        used_at=utcnow(),
    )
    db.add(usage)
    if commit:
        db.commit()
        db.refresh(usage)
    return usage


# -----------------------------
# Reservations (checkout hold)
# -----------------------------


def purge_expired_reservations(db: Session) -> int:
    """Delete expired reservations and return deleted rows count."""
    now = utcnow()
    deleted = (
        db.query(StockReservation)
        .filter(StockReservation.expires_at <= now)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


def _reserved_qty_for_variant(
    db: Session, variant_id: str, *, now: dt.datetime, exclude_user_id: Optional[str] = None
) -> int:
    q = db.query(func.coalesce(func.sum(StockReservation.quantity), 0)).filter(
        StockReservation.variant_id == variant_id,
        StockReservation.expires_at > now,
    )
    if exclude_user_id is not None:
        q = q.filter(StockReservation.user_id != exclude_user_id)
    return int(q.scalar() or 0)


def create_reservations(
    db: Session,
    *,
    user_id: str,
    items: Sequence[CartItemIn],
    ttl_minutes: int = 30,
) -> Dict[str, Any]:
    """Reserve stock for a user's cart.

    Returns ``{"reserved": bool, "expires_at": datetime | None, "items": [...]}``.
    Nothing is inserted unless every item fits.
    """
    now = utcnow()
    expires_at = now + dt.timedelta(minutes=ttl_minutes)

    # Sweep expired holds and this user's previous holds (retried checkout)
    db.query(StockReservation).filter(StockReservation.expires_at <= now).delete(synchronize_session=False)
    db.query(StockReservation).filter(StockReservation.user_id == user_id).delete(synchronize_session=False)
    db.flush()

    # Merge duplicates
    merged: Dict[str, Dict[str, Any]] = {}
    for it in items:
        if not it.variant_id:
            raise ValueError(f"Variant not specified for product {it.id}")
        entry = merged.setdefault(
            it.variant_id,
            {"product_id": it.id, "color": it.color, "size": it.size, "quantity": 0},
        )
        entry["quantity"] += int(it.quantity)

    checks: List[Dict[str, Any]] = []
    try:
        # Lock variants in stable order to avoid deadlocks
        for vid in sorted(merged.keys()):
            qty = merged[vid]["quantity"]
            variant = (
                db.query(ProductVariant)
                .filter(ProductVariant.id == vid)
                .with_for_update()
                .first()
            )
            if variant is None:
                available = 0
            else:
                reserved = _reserved_qty_for_variant(db, vid, now=now, exclude_user_id=user_id)
                available = max(int(variant.stock) - reserved, 0)
            checks.append(
                {
                    "productId": merged[vid]["product_id"],
                    "variantId": vid,
                    "requestedQuantity": qty,
                    "availableStock": available,
                    "isAvailable": variant is not None and available >= qty,
                }
            )

        if not all(c["isAvailable"] for c in checks):
            db.rollback()
            return {"reserved": False, "expires_at": None, "items": checks}

        for vid, entry in merged.items():
            db.add(
                StockReservation(
                    user_id=user_id,
                    product_id=entry["product_id"],
                    variant_id=vid,
                    color=entry["color"],
                    size=entry["size"],
                    quantity=entry["quantity"],
                    expires_at=expires_at,
                )
            )

        db.commit()
        return {"reserved": True, "expires_at": expires_at, "items": checks}
    except Exception:
        db.rollback()
        raise


def release_reservations(db: Session, *, user_id: str) -> int:
    deleted = (
        db.query(StockReservation)
        .filter(StockReservation.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(deleted or 0)


# -----------------------------
# Saved payment methods
# -----------------------------


def get_payment_methods(db: Session, user_id: str) -> List[UserPaymentMethod]:
    return (
        db.query(UserPaymentMethod)
        .filter(UserPaymentMethod.user_id == user_id, UserPaymentMethod.active.is_(True))
        .order_by(UserPaymentMethod.is_default.desc(), UserPaymentMethod.created_at.desc())
        .all()
    )


def _clear_default_payment_method(db: Session, user_id: str) -> None:
    db.query(UserPaymentMethod).filter(UserPaymentMethod.user_id == user_id).update(
        {UserPaymentMethod.is_default: False}, synchronize_session=False
    )


def create_payment_method(db: Session, data: Dict[str, Any]) -> UserPaymentMethod:
    if data.get("is_default"):
        _clear_default_payment_method(db, data["user_id"])

    method = UserPaymentMethod(**data, active=True)
    db.add(method)
    db.commit()
    db.refresh(method)
    return method


def update_payment_method(
    db: Session, *, payment_method_id: str, user_id: str, update_data: Dict[str, Any]
) -> Optional[UserPaymentMethod]:
    method = (
        db.query(UserPaymentMethod)
        .filter(UserPaymentMethod.id == payment_method_id, UserPaymentMethod.user_id == user_id)
        .first()
    )
    if method is None:
        return None

    if update_data.get("is_default"):
        _clear_default_payment_method(db, user_id)

    for key, value in update_data.items():
        if value is not None:
            setattr(method, key, value)
    db.commit()
    db.refresh(method)
    return method


def deactivate_payment_method(db: Session, *, payment_method_id: str, user_id: str) -> bool:
    updated = (
        db.query(UserPaymentMethod)
        .filter(UserPaymentMethod.id == payment_method_id, UserPaymentMethod.user_id == user_id)
        .update({UserPaymentMethod.active: False}, synchronize_session=False)
    )
    db.commit()
    return bool(updated)
