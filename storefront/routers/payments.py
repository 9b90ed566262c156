from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..config import Settings, get_settings
from ..database import get_db
from ..paypal_client import PayPalClient, approval_url, first_capture, get_paypal_client
from ..pricing import from_minor_units
from ..stripe_gateway import StripeGateway, get_stripe_gateway

router = APIRouter(prefix="/api/payments", tags=["Payments"])


# -----------------------------
# Stripe PaymentIntents
# -----------------------------


@router.post("/stripe")
def create_stripe_payment_intent(
    body: schemas.StripeIntentRequest,
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict:
    intent = gateway.create_payment_intent(
        amount=body.amount,
        currency=body.currency,
        payment_method_id=body.payment_method_id,
        customer_id=body.customer_id,
        save_payment_method=body.save_payment_method,
    )
    return {
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.id,
    }


@router.get("/stripe")
def get_stripe_payment_intent(
    payment_intent_id: str = Query(None),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict:
    if not payment_intent_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="payment_intent_id is required")

    intent = gateway.retrieve_payment_intent(payment_intent_id)
    return {
        "status": intent.status,
        "payment_method": intent.payment_method,
        "amount": from_minor_units(intent.amount),
        "currency": intent.currency,
    }


# -----------------------------
# PayPal Orders v2
# -----------------------------


@router.post("/paypal")
def create_paypal_order(
    body: schemas.PayPalOrderRequest,
    paypal: PayPalClient = Depends(get_paypal_client),
    settings: Settings = Depends(get_settings),
) -> Dict:
    order = paypal.create_order(
        amount=body.amount,
        currency=body.currency,
        reference_id=body.order_id,
        return_url=f"{settings.public_base_url}/orden-confirmada",
        cancel_url=f"{settings.public_base_url}/checkout",
    )
    return {
        "order_id": order.get("id"),
        "approval_url": approval_url(order),
    }


@router.get("/paypal")
def get_paypal_order(
    order_id: str = Query(None),
    paypal: PayPalClient = Depends(get_paypal_client),
) -> Dict:
    if not order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="order_id is required")

    order = paypal.get_order(order_id)
    unit = (order.get("purchase_units") or [{}])[0]
    amount = unit.get("amount") or {}
    return {
        "status": order.get("status"),
        "amount": amount.get("value"),
        "currency": amount.get("currency_code"),
        "payer": order.get("payer"),
    }


@router.post("/paypal/capture")
def capture_paypal_order(
    body: schemas.PayPalCaptureRequest,
    paypal: PayPalClient = Depends(get_paypal_client),
) -> Dict:
    if not body.order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="order_id is required")

    capture = first_capture(paypal.capture_order(body.order_id))
    amount = capture.get("amount") or {}
    return {
        "capture_id": capture.get("id"),
        "status": capture.get("status"),
        "amount": amount.get("value"),
        "currency": amount.get("currency_code"),
        "transaction_id": capture.get("id"),
    }


# -----------------------------
# Saved payment methods
# -----------------------------


@router.get("/methods")
def list_payment_methods(user_id: str = Query(None), db: Session = Depends(get_db)) -> Dict:
    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id is required")

    methods = crud.get_payment_methods(db, user_id)
    return {"payment_methods": [schemas.SavedPaymentMethodOut.model_validate(m) for m in methods]}


@router.post("/methods", status_code=status.HTTP_201_CREATED)
def save_payment_method(body: schemas.SavedPaymentMethodCreate, db: Session = Depends(get_db)) -> Dict:
    if not body.user_id or not body.type or not body.provider or not body.external_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing required fields")

    method = crud.create_payment_method(db, body.model_dump())
    return {"payment_method": schemas.SavedPaymentMethodOut.model_validate(method)}


@router.patch("/methods")
def update_payment_method(body: schemas.SavedPaymentMethodUpdate, db: Session = Depends(get_db)) -> Dict:
    if not body.payment_method_id or not body.user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="payment_method_id and user_id are required",
        )

    method = crud.update_payment_method(
        db,
        payment_method_id=body.payment_method_id,
        user_id=body.user_id,
        update_data={"is_default": body.is_default, "nickname": body.nickname},
    )
    if method is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment method not found")
    return {"payment_method": schemas.SavedPaymentMethodOut.model_validate(method)}


@router.delete("/methods")
def delete_payment_method(
    payment_method_id: str = Query(None),
    user_id: str = Query(None),
    db: Session = Depends(get_db),
) -> Dict:
    if not payment_method_id or not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="payment_method_id and user_id are required",
        )

    if not crud.deactivate_payment_method(db, payment_method_id=payment_method_id, user_id=user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment method not found")
    return {"message": "Payment method deleted successfully"}
