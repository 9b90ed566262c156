from typing import Dict

from fastapi import APIRouter, Depends

from .. import schemas
from ..checkout import CheckoutService, get_checkout_service

router = APIRouter(
    prefix="/api/checkout",
    tags=["Checkout"]
)


@router.post("")
def process_checkout(
    checkout_data: schemas.CheckoutData,
    service: CheckoutService = Depends(get_checkout_service),
) -> Dict:
    """Validate the cart, create a pending order and start the payment.

    Card payments return a Stripe client secret (or a paid order when a saved
    card was charged right away); PayPal payments return the approval URL.
    """
    return service.process(checkout_data)


@router.post("/confirm-stripe-payment")
def confirm_stripe_payment(
    body: schemas.ConfirmStripeCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> Dict:
    return service.confirm_stripe_checkout(body.payment_intent_id, body.checkout_data)


@router.post("/confirm-paypal-payment")
def confirm_paypal_payment(
    body: schemas.ConfirmPayPalCheckoutRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> Dict:
    return service.confirm_paypal_checkout(body.payment_data, body.checkout_data, order_id=body.order_id)
