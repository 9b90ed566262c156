import re
import time
from decimal import Decimal
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from .. import schemas
from ..config import Settings, get_settings
from ..pricing import round_money, to_minor_units
from ..stripe_gateway import CHECKOUT_SESSION_TTL_SECONDS, StripeGateway, get_stripe_gateway

router = APIRouter(prefix="/api/stripe", tags=["Stripe"])

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _line_items(cart_items, currency: str):
    line_items = []
    total = Decimal("0")
    for index, item in enumerate(cart_items):
        product = item.product
        if product is None or not product.name or not product.price:
            raise HTTPException(status_code=400, detail=f"Invalid product data at index {index}")
        if item.quantity <= 0:
            raise HTTPException(status_code=400, detail=f"Invalid quantity at index {index}")
        if product.price <= 0:
            raise HTTPException(status_code=400, detail=f"Invalid price at index {index}")

        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": product.name,
                        "description": product.description or "",
                        "images": product.images[:1],
                    },
                    "unit_amount": to_minor_units(product.price),
                },
                "quantity": item.quantity,
            }
        )
        total += product.price * item.quantity
    return line_items, round_money(total)


@router.post("/checkout-session")
def create_checkout_session(
    body: schemas.CheckoutSessionRequest,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    settings: Settings = Depends(get_settings),
) -> Dict:
    """Create a Stripe-hosted Checkout Session for the cart (expires in 30 minutes)."""
    if not body.cart_items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cart items are required")

    email = (body.email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Valid email is required")

    line_items, total = _line_items(body.cart_items, gateway.currency)
    if total <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid total amount")

    session = gateway.create_checkout_session(
        line_items=line_items,
        email=email,
        success_url=f"{settings.public_base_url}/orden-confirmada?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.public_base_url}/checkout?cancelled=true",
        metadata={
            "email": email,
            "item_count": str(len(body.cart_items)),
            "total_amount": str(total),
        },
        expires_at=int(time.time()) + CHECKOUT_SESSION_TTL_SECONDS,
    )
    return {"id": session.id, "url": session.url, "session_id": session.id}


@router.get("/verify-session")
def verify_session(
    session_id: str = Query(None),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict:
    if not session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Session ID is required")

    session = gateway.retrieve_checkout_session(session_id)
    payment_intent = session.payment_intent
    return {
        "id": session.id,
        "status": session.status,
        "payment_status": session.payment_status,
        "amount_total": session.amount_total,
        "currency": session.currency,
        "customer_email": session.customer_email,
        "payment_intent": getattr(payment_intent, "id", payment_intent),
        "metadata": dict(session.metadata or {}),
    }


@router.post("/payment-method")
def get_payment_method(
    body: schemas.PaymentMethodLookup,
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> Dict:
    if not body.payment_method_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Payment method ID is required")

    payment_method = gateway.retrieve_payment_method(body.payment_method_id)
    card = getattr(payment_method, "card", None)
    return {
        "id": payment_method.id,
        "type": payment_method.type,
        "card": {
            "brand": card.brand,
            "last4": card.last4,
            "exp_month": card.exp_month,
            "exp_year": card.exp_year,
        } if card else None,
    }
