import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..database import get_db
from ..pricing import compute_discount, round_money

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/coupons", tags=["Coupons"])


@router.post("/validate")
def validate_coupon(body: schemas.CouponValidateRequest, db: Session = Depends(get_db)) -> Dict:
    """Check a coupon against the cart subtotal and return the discount.

    A successful validation consumes one use of the coupon, whether or not the
    order is completed afterwards.
    """
    if not body.code or not body.cart_total:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Coupon code and cart total are required",
        )

    cart_total = round_money(body.cart_total)
    coupon = crud.get_active_coupon(db, body.code)
    if coupon is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not valid or expired")

    if coupon.minimum_amount and cart_total < coupon.minimum_amount:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"The minimum amount for this coupon is ${round_money(coupon.minimum_amount)}",
        )

    if crud.coupon_limit_reached(coupon):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This coupon has reached its usage limit")

    try:
        discount_amount = compute_discount(
            coupon.discount_type,
            coupon.discount_value,
            cart_total,
            max_discount=coupon.max_discount,
        )
    except ValueError:
        logger.error("Coupon %s has unknown discount type %r", coupon.code, coupon.discount_type)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Coupon not valid or expired")

    if not crud.increment_coupon_usage(db, coupon.id):
        # Another checkout took the last slot between the read and the update
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="This coupon has reached its usage limit")

    return {
        "isValid": True,
        "coupon": {
            "id": coupon.id,
            "code": coupon.code,
            "discount_type": coupon.discount_type,
            "discount_value": float(coupon.discount_value),
            "max_discount": float(coupon.max_discount) if coupon.max_discount is not None else None,
        },
        "discountAmount": float(discount_amount),
    }


@router.post("/record-usage")
def record_usage(body: schemas.CouponUsageRequest, db: Session = Depends(get_db)) -> Dict:
    """Write a coupon-usage ledger entry for a completed order."""
    if not body.coupon_id or not body.order_id or not body.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required parameters")

    if crud.get_coupon(db, body.coupon_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")

    crud.record_coupon_usage(
        db,
        coupon_id=body.coupon_id,
        order_id=body.order_id,
        user_id=body.user_id,
        discount_amount=body.discount_amount,
    )
    return {"success": True}


@router.post("/usage")
def register_usage(body: schemas.CouponUsageRequest, db: Session = Depends(get_db)) -> Dict:
    """Write a ledger entry and bump the coupon's used_count."""
    if not body.coupon_id or not body.order_id or not body.user_id or body.discount_amount is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required parameters")

    if crud.get_coupon(db, body.coupon_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Coupon not found")

    crud.record_coupon_usage(
        db,
        coupon_id=body.coupon_id,
        order_id=body.order_id,
        user_id=body.user_id,
        discount_amount=body.discount_amount,
    )
    if not crud.increment_coupon_usage(db, body.coupon_id):
        logger.warning("Coupon %s used past its usage limit by order %s", body.coupon_id, body.order_id)

    return {"success": True}
