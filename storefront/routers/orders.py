from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..checkout import CheckoutService, get_checkout_service
from ..database import get_db

router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)

FULFILMENT_STATUSES = {
    schemas.OrderStatus.PROCESSING,
    schemas.OrderStatus.SHIPPED,
    schemas.OrderStatus.DELIVERED,
    schemas.OrderStatus.CANCELLED,
}


@router.post("/create-pending")
def create_pending_order(
    order_data: schemas.CheckoutData,
    service: CheckoutService = Depends(get_checkout_service),
) -> Dict:
    """Create an order in `pending` state before the customer pays.

    The whole cart is rejected with 400 if any variant lacks stock; in that
    case no order row is written.
    """
    payment_method = "stripe"
    if order_data.payment_method and order_data.payment_method.type == "paypal":
        payment_method = "paypal"

    order = service.create_pending_order(order_data, payment_method=payment_method)
    return {
        "success": True,
        "orderId": order.id,
        "orderNumber": order.order_number,
        "message": "Pending order created successfully",
    }


@router.post("/confirm-payment")
def confirm_payment(
    body: schemas.ConfirmPaymentRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> Dict:
    """Mark a pending order as paid once Stripe reports the PaymentIntent succeeded."""
    return service.confirm_order_payment(body.order_id, body.payment_intent_id)


@router.get("", response_model=schemas.OrderListResponse)
def get_user_orders(
    user_id: str = Query(..., min_length=1),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    orders = crud.get_orders_by_user(db=db, user_id=user_id, skip=skip, limit=limit)
    total = crud.get_user_order_count(db=db, user_id=user_id)

    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(order_id: str, db: Session = Depends(get_db)):
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    return db_order


@router.patch("/{order_id}/status", response_model=schemas.OrderOut)
def update_order_status(
    order_id: str,
    status_update: schemas.OrderStatusUpdate,
    db: Session = Depends(get_db)
):
    if status_update.status is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="'status' is required",
        )
    if status_update.status not in FULFILMENT_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Payment states are set by payment confirmation only",
        )

    db_order = crud.update_order_status(
        db=db,
        order_id=order_id,
        new_status=status_update.status.value,
    )

    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )

    return db_order
