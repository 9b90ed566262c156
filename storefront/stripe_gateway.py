"""
Thin wrapper around the Stripe SDK.

Routers receive a StripeGateway through ``Depends(get_stripe_gateway)`` so the
API key is never stored on the global ``stripe`` module and tests can swap in
a fake.
"""
import logging
from typing import Any, Dict, List, Optional

import stripe
from fastapi import Depends, HTTPException

from .config import Settings, get_settings
from .pricing import Number, to_minor_units

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_TTL_SECONDS = 30 * 60


class StripeGateway:
    def __init__(self, api_key: str, currency: str = "usd") -> None:
        self.api_key = api_key
        self.currency = currency

    def create_payment_intent(
        self,
        *,
        amount: Number,
        currency: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        payment_method_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        save_payment_method: bool = False,
        return_url: Optional[str] = None,
        description: Optional[str] = None,
    ):
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": (currency or self.currency).lower(),
            "metadata": metadata or {},
        }
        if payment_method_id:
            # A known payment method is confirmed server-side right away.
            params["payment_method"] = payment_method_id
            params["confirm"] = True
            if return_url:
                params["return_url"] = return_url
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if customer_id:
            params["customer"] = customer_id
        if save_payment_method:
            params["setup_future_usage"] = "off_session"
        if description:
            params["description"] = description

        intent = stripe.PaymentIntent.create(api_key=self.api_key, **params)
        logger.info("Created PaymentIntent %s (%s)", intent.id, intent.status)
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str):
        return stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self.api_key)

    def retrieve_payment_method(self, payment_method_id: str):
        return stripe.PaymentMethod.retrieve(payment_method_id, api_key=self.api_key)

    def create_checkout_session(
        self,
        *,
        line_items: List[Dict[str, Any]],
        email: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        expires_at: Optional[int] = None,
    ):
        return stripe.checkout.Session.create(
            api_key=self.api_key,
            payment_method_types=["card"],
            mode="payment",
            line_items=line_items,
            customer_email=email,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata or {},
            billing_address_collection="required",
            allow_promotion_codes=True,
            expires_at=expires_at,
        )

    def retrieve_checkout_session(self, session_id: str):
        return stripe.checkout.Session.retrieve(
            session_id,
            api_key=self.api_key,
            expand=["line_items", "payment_intent", "customer"],
        )


def get_stripe_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    if not settings.stripe_configured:
        raise HTTPException(
            status_code=500,
            detail="Stripe is not configured. Set STRIPE_SECRET_KEY.",
        )
    return StripeGateway(settings.stripe_secret_key, currency=settings.stripe_currency)


def stripe_error_to_http(exc: stripe.StripeError) -> HTTPException:
    """Translate a Stripe SDK error into the API's error response."""
    if isinstance(exc, stripe.CardError):
        return HTTPException(
            status_code=400,
            detail=exc.user_message or "Payment method was declined. Please try a different card.",
        )
    if isinstance(exc, stripe.InvalidRequestError):
        return HTTPException(
            status_code=400,
            detail="Invalid request. Please check your payment details.",
        )
    if isinstance(exc, (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)):
        return HTTPException(
            status_code=503,
            detail="Payment service temporarily unavailable. Please try again later.",
        )
    return HTTPException(
        status_code=500,
        detail="An unexpected error occurred. Please try again.",
    )
